"""Tests for the retry policy, the concurrency pool, the orchestrator and the batch runner."""

import asyncio
import threading
import time

import pytest

from capsules.batch import ENRICH_PREFIX, STATIC_PREFIX, BatchRunner, optimal_concurrency
from capsules.concurrency import ConcurrencyPool, run_concurrently_ordered
from capsules.errors import AnalysisError, ErrorCode
from capsules.models import AnalysisOptions
from capsules.retry import RetryPolicy

from conftest import CountingAnalyzer, FakeProvider, fast_policy, good_response, request_failed


class TestRetryPolicy:
    """Backoff schedule and retry decisions."""

    def test_schedule_is_exponential_and_capped(self):
        p = RetryPolicy(base_delay=0.3, multiplier=1.5, max_delay=0.5)
        assert p.delay_for(1) == pytest.approx(0.3)
        assert p.delay_for(2) == pytest.approx(0.45)
        assert p.delay_for(3) == pytest.approx(0.5)

    def test_retry_after_overrides_schedule(self):
        p = RetryPolicy(base_delay=0.3, max_delay=5.0)
        err = AnalysisError("slow down", ErrorCode.ENRICHMENT_RATE_LIMITED, retry_after=2.0)
        assert p.delay_for(1, err) == 2.0
        err.retry_after = 60.0
        assert p.delay_for(1, err) == 5.0

    def test_succeeds_on_third_attempt_after_backoff(self):
        attempts = []

        async def call():
            attempts.append(time.perf_counter())
            if len(attempts) < 3:
                raise request_failed()
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay=0.05, multiplier=2.0, timeout=1.0)
        t0 = time.perf_counter()
        assert asyncio.run(policy.run(call)) == "ok"
        assert len(attempts) == 3
        assert time.perf_counter() - t0 >= 0.05 + 0.10

    def test_non_retryable_stops_immediately(self):
        calls = []

        async def call():
            calls.append(1)
            raise AnalysisError("bad key", ErrorCode.ENRICHMENT_AUTH_FAILED)

        with pytest.raises(AnalysisError) as ei:
            asyncio.run(fast_policy().run(call))
        assert ei.value.code is ErrorCode.ENRICHMENT_AUTH_FAILED
        assert len(calls) == 1

    def test_gives_up_after_max_attempts(self):
        calls = []

        async def call():
            calls.append(1)
            raise RuntimeError("flaky")

        with pytest.raises(AnalysisError) as ei:
            asyncio.run(fast_policy(max_attempts=2).run(call))
        assert ei.value.code is ErrorCode.ENRICHMENT_REQUEST_FAILED
        assert ei.value.context["attempts"] == 2
        assert len(calls) == 2

    def test_per_attempt_timeout_is_classified(self):
        async def call():
            await asyncio.sleep(1.0)

        with pytest.raises(AnalysisError) as ei:
            asyncio.run(fast_policy(max_attempts=1, timeout=0.02).run(call))
        assert ei.value.code is ErrorCode.ENRICHMENT_TIMEOUT


class TestConcurrencyPool:
    """Bounded execution with drain semantics."""

    def test_never_exceeds_max_and_drains(self):
        state = {"active": 0, "peak": 0, "done": 0}

        async def task():
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.01)
            state["active"] -= 1
            state["done"] += 1

        async def main():
            pool = ConcurrencyPool(3)
            for _ in range(10):
                pool.run(task)
            assert pool.status()["active"] <= 3
            await pool.drain()
            return pool.status()

        status = asyncio.run(main())
        assert state["peak"] == 3
        assert state["done"] == 10
        assert status == {"active": 0, "queued": 0, "total": 0}

    def test_starts_in_fifo_order(self):
        order = []

        def make(i):
            async def t():
                order.append(i)
                await asyncio.sleep(0)

            return t

        async def main():
            pool = ConcurrencyPool(1)
            for i in range(5):
                pool.run(make(i))
            await pool.drain()

        asyncio.run(main())
        assert order == [0, 1, 2, 3, 4]

    def test_futures_carry_results_and_errors(self):
        async def ok():
            return 42

        async def bad():
            raise ValueError("nope")

        async def main():
            pool = ConcurrencyPool(2)
            f1, f2 = pool.run(ok), pool.run(bad)
            await pool.drain()
            return await f1, f2.exception()

        value, exc = asyncio.run(main())
        assert value == 42
        assert isinstance(exc, ValueError)

    def test_clear_drops_only_queued(self):
        async def slow():
            await asyncio.sleep(0.02)
            return "ran"

        async def main():
            pool = ConcurrencyPool(1)
            first = pool.run(slow)
            rest = [pool.run(slow) for _ in range(3)]
            await asyncio.sleep(0)
            dropped = pool.clear()
            await pool.drain()
            return dropped, await first, [f.cancelled() for f in rest]

        dropped, first, cancelled = asyncio.run(main())
        assert dropped == 3
        assert first == "ran"
        assert all(cancelled)

    def test_drain_on_idle_pool_returns(self):
        asyncio.run(ConcurrencyPool(2).drain())

    def test_ordered_helper_isolates_failures(self):
        async def worker(i):
            if i == 2:
                raise RuntimeError("boom")
            return i * 10

        results, failures = asyncio.run(run_concurrently_ordered([0, 1, 2, 3], worker, 2))
        assert results == [0, 10, None, 30]
        assert [(f["index"], f["key"]) for f in failures] == [(2, 2)]
        assert "boom" in failures[0]["error"]


class TestBaseAnalysis:
    """Phase A memoization and failure propagation."""

    def test_concrete_export_function_scenario(self, make_orchestrator, write_file):
        analyzer = CountingAnalyzer()
        orch = make_orchestrator(analyzer=analyzer)
        p = write_file("src/foo.ts", "export function foo(){}")

        first = asyncio.run(orch.base_analysis(p))
        assert [(a.name, a.kind) for a in first.api] == [("foo", "function")]
        texts = [f.text for f in first.facts]
        assert "exports 1 symbol" in texts and "contains 1 function" in texts
        assert first.inferences == []
        assert not first.is_enriched

        hits_before = orch.cache_stats().memory_hits
        second = asyncio.run(orch.base_analysis(p))
        assert orch.cache_stats().memory_hits == hits_before + 1
        assert analyzer.calls == 1
        assert second == first

    def test_memoized_across_many_calls(self, make_orchestrator, write_file):
        analyzer = CountingAnalyzer()
        orch = make_orchestrator(analyzer=analyzer)
        p = write_file("a.py", "def f():\n    pass\n")
        for _ in range(5):
            asyncio.run(orch.base_analysis(p))
        assert analyzer.calls == 1

    def test_force_bypasses_cache_read(self, make_orchestrator, write_file):
        analyzer = CountingAnalyzer()
        orch = make_orchestrator(analyzer=analyzer)
        p = write_file("a.py", "def f():\n    pass\n")
        asyncio.run(orch.base_analysis(p))
        asyncio.run(orch.base_analysis(p, AnalysisOptions(force=True)))
        assert analyzer.calls == 2
        assert orch.cache_stats().writes == 2

    def test_force_keeps_enriched_entry(self, make_orchestrator, write_file):
        analyzer = CountingAnalyzer()
        provider = FakeProvider([good_response("paid once"), request_failed()])
        orch = make_orchestrator(provider=provider, analyzer=analyzer)
        p = write_file("a.ts", "export function foo(){}")
        enriched = asyncio.run(orch.analyze(p))
        assert enriched.is_enriched

        again = asyncio.run(orch.analyze(p, AnalysisOptions(force=True)))
        assert analyzer.calls == 2
        assert again.is_enriched
        cached = orch.cache.peek(enriched.content_hash)
        assert cached.is_enriched
        assert [i.text for i in cached.inferences] == ["paid once"]
        assert cached.summary == enriched.summary

    def test_identical_content_shares_one_entry(self, make_orchestrator, write_file):
        analyzer = CountingAnalyzer()
        orch = make_orchestrator(analyzer=analyzer)
        a = write_file("one/x.ts", "export const A = 1\n")
        b = write_file("two/y.ts", "export const A = 1\n")
        ca = asyncio.run(orch.base_analysis(a))
        cb = asyncio.run(orch.base_analysis(b))
        assert ca.content_hash == cb.content_hash
        assert cb.file == str(b)
        assert analyzer.calls == 1

    def test_missing_file_propagates(self, make_orchestrator, tmp_path):
        orch = make_orchestrator()
        with pytest.raises(AnalysisError) as ei:
            asyncio.run(orch.base_analysis(tmp_path / "missing.ts"))
        assert ei.value.code is ErrorCode.FILE_NOT_FOUND

    def test_analyzer_crash_is_parse_error(self, make_orchestrator, write_file):
        class Broken:
            def analyze(self, path):
                raise ValueError("cannot parse")

        orch = make_orchestrator(analyzer=Broken())
        with pytest.raises(AnalysisError) as ei:
            asyncio.run(orch.base_analysis(write_file("a.ts", "x")))
        assert ei.value.code is ErrorCode.PARSE_ERROR

    def test_deep_deps_samples_inbound(self, make_orchestrator, write_file, tmp_path):
        orch = make_orchestrator(workspace_root=tmp_path)
        target = write_file("util.ts", "export const x = 1\n")
        write_file("main.ts", "import { x } from './util'\n")
        c = asyncio.run(orch.base_analysis(target, AnalysisOptions(deep_deps=True)))
        assert [d.file for d in c.deps.in_sample] == [str(tmp_path / "main.ts")]

    def test_invalidate_drops_entry(self, make_orchestrator, write_file):
        analyzer = CountingAnalyzer()
        orch = make_orchestrator(analyzer=analyzer)
        p = write_file("a.ts", "export const A = 1\n")
        asyncio.run(orch.base_analysis(p))
        assert orch.invalidate(p) is True
        asyncio.run(orch.base_analysis(p))
        assert analyzer.calls == 2


class TestEnrichment:
    """Phase B upgrade, degradation and sharing."""

    def test_enrich_stores_under_same_key(self, make_orchestrator, write_file):
        provider = FakeProvider([good_response("uses fetch")])
        orch = make_orchestrator(provider=provider)
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))

        enriched = asyncio.run(orch.enrich(base))
        assert len(enriched.inferences) == 1
        assert enriched.inferences[0].confidence == pytest.approx(0.8)
        assert enriched.is_enriched
        assert enriched.api == base.api and enriched.facts == base.facts
        assert orch.cache.get(base.content_hash).inferences == enriched.inferences
        assert provider.calls[0].static_analysis["api_count"] == 1

    def test_enrich_lookup_does_not_count_in_stats(self, make_orchestrator, write_file):
        orch = make_orchestrator(provider=FakeProvider())
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        before = orch.cache_stats()
        asyncio.run(orch.enrich(base))
        asyncio.run(orch.enrich(base))
        after = orch.cache_stats()
        assert (after.memory_hits, after.disk_hits, after.misses) == (before.memory_hits, before.disk_hits, before.misses)
        assert after.writes == before.writes + 1

    def test_enriched_write_runs_off_the_loop(self, make_orchestrator, write_file, monkeypatch):
        orch = make_orchestrator(provider=FakeProvider())
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        threads = []
        real_set = orch.cache.set

        def recording_set(key, capsule):
            threads.append(threading.get_ident())
            real_set(key, capsule)

        monkeypatch.setattr(orch.cache, "set", recording_set)
        assert asyncio.run(orch.enrich(base)).is_enriched
        assert threads and threading.get_ident() not in threads

    def test_always_failing_provider_degrades(self, make_orchestrator, write_file):
        provider = FakeProvider([request_failed()])
        orch = make_orchestrator(provider=provider)
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        snapshot = base.copy()

        result = asyncio.run(orch.enrich(base))
        assert result == snapshot
        assert len(provider.calls) == 3
        assert not orch.cache.get(base.content_hash).is_enriched

    def test_retry_then_success(self, make_orchestrator, write_file):
        provider = FakeProvider([request_failed(), request_failed(), good_response()])
        policy = RetryPolicy(max_attempts=3, base_delay=0.05, multiplier=1.5, timeout=2.0)
        orch = make_orchestrator(provider=provider, retry_policy=policy)
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))

        t0 = time.perf_counter()
        result = asyncio.run(orch.enrich(base))
        assert result.is_enriched
        assert len(provider.calls) == 3
        assert time.perf_counter() - t0 >= 0.05 + 0.075

    def test_cross_path_sharing_enriches_once(self, make_orchestrator, write_file):
        provider = FakeProvider()
        orch = make_orchestrator(provider=provider)
        a = write_file("one/x.ts", "export function foo(){}")
        b = write_file("two/y.ts", "export function foo(){}")

        ea = asyncio.run(orch.enrich(asyncio.run(orch.base_analysis(a))))
        cb = asyncio.run(orch.base_analysis(b))
        eb = asyncio.run(orch.enrich(cb))
        assert ea.is_enriched and cb.is_enriched and eb.is_enriched
        assert eb.file == str(b)
        assert eb.inferences == ea.inferences
        assert len(provider.calls) == 1

    def test_force_re_enriches(self, make_orchestrator, write_file):
        provider = FakeProvider([good_response("first"), good_response("second")])
        orch = make_orchestrator(provider=provider)
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        asyncio.run(orch.enrich(base))
        again = asyncio.run(orch.enrich(base, AnalysisOptions(force=True)))
        assert again.inferences[0].text == "second"
        assert len(provider.calls) == 2

    def test_single_flight_shares_one_call(self, make_orchestrator, write_file):
        provider = FakeProvider(delay=0.05)
        orch = make_orchestrator(provider=provider)
        a = write_file("one/x.ts", "export function foo(){}")
        b = write_file("two/y.ts", "export function foo(){}")
        ca = asyncio.run(orch.base_analysis(a))
        cb = asyncio.run(orch.base_analysis(b))

        async def both():
            return await asyncio.gather(orch.enrich(ca), orch.enrich(cb))

        ra, rb = asyncio.run(both())
        assert ra.is_enriched and rb.is_enriched
        assert (ra.file, rb.file) == (str(a), str(b))
        assert len(provider.calls) == 1

    def test_disabled_or_skipped(self, make_orchestrator, write_file):
        provider = FakeProvider()
        orch = make_orchestrator(provider=provider, config={"enrichment": {"enabled": False}})
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        assert asyncio.run(orch.enrich(base)) is base

        orch2 = make_orchestrator(provider=provider)
        assert asyncio.run(orch2.enrich(base, AnalysisOptions(include_ai=False))) is base
        assert provider.calls == []

    def test_provider_construction_failure_degrades_with_notice(self, make_orchestrator, write_file):
        notices = []

        def factory():
            raise AnalysisError("missing key", ErrorCode.CONFIG_ERROR, context={"api_key_env": "OPENAI_API_KEY"})

        orch = make_orchestrator(provider_factory=factory, on_user_action=notices.append)
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        assert asyncio.run(orch.enrich(base)) is base
        assert [n.code for n in notices] == [ErrorCode.CONFIG_ERROR]

    def test_auth_failure_is_not_retried(self, make_orchestrator, write_file):
        notices = []
        provider = FakeProvider([AnalysisError("401", ErrorCode.ENRICHMENT_AUTH_FAILED)])
        orch = make_orchestrator(provider=provider, on_user_action=notices.append)
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        assert asyncio.run(orch.enrich(base)) is base
        assert len(provider.calls) == 1
        assert len(notices) == 1

    def test_invalid_response_degrades(self, make_orchestrator, write_file):
        provider = FakeProvider(["not json at all"])
        orch = make_orchestrator(provider=provider)
        base = asyncio.run(orch.base_analysis(write_file("a.ts", "export function foo(){}")))
        assert asyncio.run(orch.enrich(base)) is base

    def test_changed_file_skips_enrichment(self, make_orchestrator, write_file):
        provider = FakeProvider()
        orch = make_orchestrator(provider=provider)
        p = write_file("a.ts", "export function foo(){}")
        base = asyncio.run(orch.base_analysis(p))
        p.write_text("export function bar(){}", encoding="utf-8")
        assert asyncio.run(orch.enrich(base)) is base
        assert provider.calls == []


class TestBatchRunner:
    """Batch isolation, bounds and progress."""

    def _files(self, write_file, n=10, missing=(5,)):
        paths = []
        for i in range(1, n + 1):
            name = f"f{i}.ts"
            if i in missing:
                paths.append(write_file("keep.txt", "").parent / name)
            else:
                paths.append(write_file(name, f"export const v{i} = {i}\n"))
        return paths

    def test_one_missing_file_is_isolated(self, make_orchestrator, write_file):
        runner = BatchRunner(make_orchestrator())
        paths = self._files(write_file)
        res = asyncio.run(runner.run_many(paths, concurrency=4))
        assert len(res.results) == 9
        assert [f.file for f in res.failed] == [str(paths[4])]
        assert res.failed[0].error.code is ErrorCode.FILE_NOT_FOUND
        assert (res.stats.total, res.stats.succeeded, res.stats.failed) == (10, 9, 1)

    def test_concurrency_is_bounded(self, make_orchestrator, write_file):
        analyzer = CountingAnalyzer(delay=0.02)
        runner = BatchRunner(make_orchestrator(analyzer=analyzer))
        paths = [write_file(f"m{i}.ts", f"export const v{i} = {i}\n") for i in range(20)]
        res = asyncio.run(runner.run_many(paths, concurrency=5))
        assert len(res.results) == 20
        assert 1 <= analyzer.peak <= 5

    def test_progress_fires_for_every_item(self, make_orchestrator, write_file):
        runner = BatchRunner(make_orchestrator())
        paths = self._files(write_file)
        seen = []
        asyncio.run(runner.run_many(paths, concurrency=3, on_progress=seen.append))
        assert [p.current for p in seen] == list(range(1, 11))
        assert all(p.total == 10 for p in seen)
        assert seen[-1].failed == [str(paths[4])]
        assert len(seen[-1].completed) == 9

    def test_analyze_and_enhance_sums_stats(self, make_orchestrator, write_file):
        provider = FakeProvider()
        runner = BatchRunner(make_orchestrator(provider=provider))
        paths = self._files(write_file, n=4, missing=(2,))
        seen = []
        res = asyncio.run(runner.analyze_and_enhance(paths, on_progress=seen.append))
        assert res.stats.total == 4
        assert res.stats.succeeded == 3
        assert res.stats.failed == 1
        assert all(c.is_enriched for c in res.results)
        assert sum(p.current_file.startswith(STATIC_PREFIX) for p in seen) == 4
        assert sum(p.current_file.startswith(ENRICH_PREFIX) for p in seen) == 3

    def test_optimal_concurrency(self):
        assert optimal_concurrency("static") >= 5
        assert optimal_concurrency("enrich") == 3
