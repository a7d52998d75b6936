"""Shared test doubles and fixtures."""

import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from capsules.cache import CapsuleCache
from capsules.errors import AnalysisError, ErrorCode
from capsules.models import EnrichmentInput, StaticResult
from capsules.orchestrator import AnalysisOrchestrator
from capsules.retry import RetryPolicy
from capsules.static_analyzer import RegexStaticAnalyzer


class CountingAnalyzer:
    """Wraps the regex analyzer; counts calls and tracks peak concurrency."""

    def __init__(self, delay: float = 0.0):
        self.inner = RegexStaticAnalyzer()
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def analyze(self, path) -> StaticResult:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.inner.analyze(path)
        finally:
            with self._lock:
                self.active -= 1


def good_response(text: str = "detects things") -> Dict[str, Any]:
    return {
        "summary": {"en": "Exports a helper.", "zh": "导出一个辅助函数。"},
        "inferences": [{"id": "i1", "text": text, "confidence": 0.8}],
        "recommendations": [],
    }


class FakeProvider:
    """Scripted EnrichmentProvider: pops one outcome per call, repeating the last."""

    def __init__(self, outcomes: Optional[List[Any]] = None, delay: float = 0.0):
        self.outcomes = list(outcomes or [good_response()])
        self.delay = delay
        self.calls: List[EnrichmentInput] = []

    async def analyze(self, data: EnrichmentInput):
        import asyncio

        self.calls.append(data)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def request_failed() -> AnalysisError:
    return AnalysisError("upstream 502", ErrorCode.ENRICHMENT_REQUEST_FAILED)


def fast_policy(**kw) -> RetryPolicy:
    params = dict(max_attempts=3, base_delay=0.01, multiplier=1.5, max_delay=0.1, timeout=5.0)
    params.update(kw)
    return RetryPolicy(**params)


@pytest.fixture
def write_file(tmp_path):
    def _write(rel: str, content: str) -> Path:
        p = tmp_path / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
        return p

    return _write


@pytest.fixture
def cache(tmp_path) -> CapsuleCache:
    return CapsuleCache(tmp_path / ".capsules" / "cache")


@pytest.fixture
def make_orchestrator(cache):
    def _make(provider=None, analyzer=None, **kw) -> AnalysisOrchestrator:
        kw.setdefault("retry_policy", fast_policy())
        return AnalysisOrchestrator(
            cache,
            analyzer or CountingAnalyzer(),
            provider=provider,
            **kw,
        )

    return _make
