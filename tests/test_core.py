"""Tests for hashing, the capsule model, the cache and the error taxonomy."""

import asyncio
import json

import httpx
import pytest

from capsules.cache import CapsuleCache
from capsules.errors import (
    AnalysisError,
    Err,
    ErrorCode,
    Ok,
    Severity,
    classify_error,
)
from capsules.hashing import content_hash, hash_file, snippet_hash
from capsules.models import Capsule, Evidence, Inference
from capsules.static_analyzer import RegexStaticAnalyzer


def _capsule(path="src/a.ts", text="export function foo(){}\n") -> Capsule:
    raw = text.encode("utf-8")
    static = RegexStaticAnalyzer().analyze_bytes(raw, path)
    return Capsule(
        file=path,
        language=static.language,
        content_hash=static.content_hash,
        summary={"en": "a", "zh": "a"},
        api=static.api,
        deps=static.deps,
        evidence=static.evidence,
    )


class TestHashing:
    """Content addressing."""

    def test_same_bytes_same_hash(self):
        data = b"export function foo(){}"
        assert content_hash(data) == content_hash(data)

    def test_different_bytes_different_hash(self):
        assert content_hash(b"a") != content_hash(b"b")

    def test_hash_file_matches_bytes(self, tmp_path):
        p = tmp_path / "x.py"
        p.write_bytes(b"x = 1\n")
        assert hash_file(p) == content_hash(b"x = 1\n")
        assert len(hash_file(p)) == 64

    def test_snippet_hash_is_sixteen_hex_chars(self):
        h = snippet_hash("def f(): pass")
        assert len(h) == 16
        int(h, 16)


class TestCapsuleModel:
    """Serialization of capsules."""

    def test_to_dict_from_dict_is_lossless(self):
        c = _capsule()
        c.inferences = [Inference(id="i1", text="t", confidence=0.7)]
        assert Capsule.from_dict(c.to_dict()) == c

    def test_with_file_keeps_identity(self):
        c = _capsule()
        other = c.with_file("elsewhere/a.ts")
        assert other.content_hash == c.content_hash
        assert other.file == "elsewhere/a.ts"
        assert c.file == "src/a.ts"


class TestCapsuleCache:
    """Two-tier cache behaviour."""

    def test_set_then_get_round_trip(self, tmp_path):
        cache = CapsuleCache(tmp_path)
        c = _capsule()
        cache.set(c.content_hash, c)
        assert cache.get(c.content_hash) == c

    def test_callers_receive_copies(self, tmp_path):
        cache = CapsuleCache(tmp_path)
        c = _capsule()
        cache.set(c.content_hash, c)
        got = cache.get(c.content_hash)
        got.summary["en"] = "mutated"
        assert cache.get(c.content_hash).summary["en"] == "a"

    def test_durable_tier_survives_new_instance(self, tmp_path):
        c = _capsule()
        CapsuleCache(tmp_path).set(c.content_hash, c)
        fresh = CapsuleCache(tmp_path)
        assert fresh.get(c.content_hash) == c
        assert fresh.get(c.content_hash) == c
        s = fresh.stats()
        assert (s.disk_hits, s.memory_hits, s.misses) == (1, 1, 0)

    def test_durable_entry_is_named_by_hash(self, tmp_path):
        c = _capsule()
        CapsuleCache(tmp_path).set(c.content_hash, c)
        assert (tmp_path / f"{c.content_hash}.json").exists()

    def test_miss_counts_and_hit_rate(self, tmp_path):
        cache = CapsuleCache(tmp_path)
        c = _capsule()
        assert cache.get("nope") is None
        cache.set(c.content_hash, c)
        cache.get(c.content_hash)
        s = cache.stats()
        assert s.misses == 1 and s.memory_hits == 1 and s.writes == 1
        assert s.hit_rate == pytest.approx(0.5)

    def test_version_mismatch_is_a_miss(self, tmp_path):
        c = _capsule()
        CapsuleCache(tmp_path).set(c.content_hash, c)
        p = tmp_path / f"{c.content_hash}.json"
        p.write_text(p.read_text(encoding="utf-8").replace('"version": "1.0"', '"version": "0.9"'), encoding="utf-8")
        fresh = CapsuleCache(tmp_path)
        assert fresh.get(c.content_hash) is None
        assert fresh.stats().misses == 1

    def test_corrupt_entry_is_a_miss(self, tmp_path):
        (tmp_path / "abc.json").write_text("{not json", encoding="utf-8")
        assert CapsuleCache(tmp_path).get("abc") is None

    @pytest.mark.parametrize("field,value", [("deps", ["x"]), ("summary", []), ("api", ["x"]), ("evidence", {"ev1": 3})])
    def test_wrong_shape_entry_is_a_miss(self, tmp_path, field, value):
        c = _capsule()
        CapsuleCache(tmp_path).set(c.content_hash, c)
        p = tmp_path / f"{c.content_hash}.json"
        data = json.loads(p.read_text(encoding="utf-8"))
        data[field] = value
        p.write_text(json.dumps(data), encoding="utf-8")
        fresh = CapsuleCache(tmp_path)
        assert fresh.get(c.content_hash) is None
        assert fresh.stats().misses == 1

    def test_write_failure_keeps_memory_copy(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("a file where a directory should be")
        cache = CapsuleCache(blocker / "cache")
        c = _capsule()
        cache.set(c.content_hash, c)
        assert cache.get(c.content_hash) == c

    def test_delete_removes_both_tiers(self, tmp_path):
        cache = CapsuleCache(tmp_path)
        c = _capsule()
        cache.set(c.content_hash, c)
        assert cache.delete(c.content_hash) is True
        assert cache.get(c.content_hash) is None
        assert not (tmp_path / f"{c.content_hash}.json").exists()

    def test_clear_resets_everything(self, tmp_path):
        cache = CapsuleCache(tmp_path)
        c = _capsule()
        cache.set(c.content_hash, c)
        cache.get(c.content_hash)
        cache.clear()
        assert cache.memory_size() == 0
        assert cache.stats().to_dict()["writes"] == 0
        assert not list(tmp_path.glob("*.json"))

    def test_lru_bound_evicts_oldest(self):
        cache = CapsuleCache(None, max_memory_entries=2)
        a, b, c = (_capsule(text=f"export const v{i} = {i}\n") for i in range(3))
        cache.set(a.content_hash, a)
        cache.set(b.content_hash, b)
        cache.get(a.content_hash)
        cache.set(c.content_hash, c)
        assert cache.memory_size() == 2
        assert cache.get(b.content_hash) is None
        assert cache.get(a.content_hash) is not None


class TestErrorTaxonomy:
    """Classification and policy flags."""

    @pytest.mark.parametrize(
        "code,severity,retryable,user_action",
        [
            (ErrorCode.FILE_NOT_FOUND, Severity.ERROR, False, False),
            (ErrorCode.PARSE_ERROR, Severity.ERROR, False, False),
            (ErrorCode.ENRICHMENT_REQUEST_FAILED, Severity.WARN, True, False),
            (ErrorCode.ENRICHMENT_TIMEOUT, Severity.WARN, True, False),
            (ErrorCode.ENRICHMENT_RATE_LIMITED, Severity.WARN, True, False),
            (ErrorCode.ENRICHMENT_AUTH_FAILED, Severity.ERROR, False, True),
            (ErrorCode.ENRICHMENT_INVALID_RESPONSE, Severity.WARN, True, False),
            (ErrorCode.CONFIG_ERROR, Severity.ERROR, False, True),
        ],
    )
    def test_defaults_per_code(self, code, severity, retryable, user_action):
        err = AnalysisError("x", code)
        assert err.severity is severity
        assert err.is_retryable() is retryable
        assert err.needs_user_action() is user_action

    def test_file_errors_do_not_degrade(self):
        assert not AnalysisError("x", ErrorCode.FILE_NOT_FOUND).needs_degradation()
        assert AnalysisError("x", ErrorCode.ENRICHMENT_TIMEOUT).needs_degradation()

    def test_classify_os_errors(self):
        assert classify_error(FileNotFoundError("gone")).code is ErrorCode.FILE_NOT_FOUND
        assert classify_error(PermissionError("denied")).code is ErrorCode.FILE_READ_ERROR

    def test_classify_timeouts_and_transport(self):
        assert classify_error(asyncio.TimeoutError()).code is ErrorCode.ENRICHMENT_TIMEOUT
        req = httpx.Request("POST", "https://example.invalid")
        assert classify_error(httpx.ConnectError("boom", request=req)).code is ErrorCode.NETWORK_ERROR

    def test_classify_http_status(self):
        req = httpx.Request("POST", "https://example.invalid")

        class StatusError(Exception):
            def __init__(self, status, headers=None):
                super().__init__(f"status {status}")
                self.response = httpx.Response(status, headers=headers or {}, request=req)

        assert classify_error(StatusError(401)).code is ErrorCode.ENRICHMENT_AUTH_FAILED
        assert classify_error(StatusError(503)).code is ErrorCode.ENRICHMENT_REQUEST_FAILED
        limited = classify_error(StatusError(429, {"Retry-After": "2"}))
        assert limited.code is ErrorCode.ENRICHMENT_RATE_LIMITED
        assert limited.retry_after == 2.0

    def test_classify_passes_analysis_errors_through(self):
        err = AnalysisError("x", ErrorCode.CONFIG_ERROR)
        assert classify_error(err) is err

    def test_unknown_falls_back_to_default(self):
        err = classify_error(RuntimeError("?"), ErrorCode.ENRICHMENT_REQUEST_FAILED)
        assert err.code is ErrorCode.ENRICHMENT_REQUEST_FAILED

    def test_config_error_names_the_env_var(self):
        err = AnalysisError("no key", ErrorCode.CONFIG_ERROR, context={"api_key_env": "OPENAI_API_KEY"})
        assert any("OPENAI_API_KEY" in a for a in err.user_actions())
        assert "OPENAI_API_KEY" in err.to_user_message()

    def test_result_tags(self):
        assert Ok(1).ok and Ok(1).value == 1
        e = Err(AnalysisError("x"))
        assert not e.ok and isinstance(e.error, AnalysisError)


def test_evidence_round_trip():
    ev = Evidence(file="a.py", lines=(3, 4), sha256="0" * 16)
    assert Evidence.from_dict(ev.to_dict()) == ev
