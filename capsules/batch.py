# capsules/batch.py
"""
Batch execution over many files.

Every item runs through a bounded ``ConcurrencyPool``; one item's failure is
recorded in ``failed`` and never aborts its siblings. ``on_progress`` fires once
per finished item (success or failure) in completion order.
"""
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from capsules.concurrency import run_concurrently_ordered
from capsules.errors import AnalysisError, ErrorCode, classify_error
from capsules.logger import get_logger
from capsules.models import AnalysisOptions, Capsule
from capsules.orchestrator import AnalysisOrchestrator

logger = get_logger("capsules.batch")

PathLike = Union[str, Path]

STATIC_PREFIX = "[static] "
ENRICH_PREFIX = "[enrich] "


@dataclass
class BatchProgress:
    current: int
    total: int
    current_file: str
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class BatchFailure:
    file: str
    error: AnalysisError

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "error": self.error.to_dict()}


@dataclass
class BatchStats:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: float = 0.0


@dataclass
class BatchResult:
    results: List[Capsule] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)
    stats: BatchStats = field(default_factory=BatchStats)


ProgressFn = Callable[[BatchProgress], None]


def optimal_concurrency(task_type: str = "static") -> int:
    """``static``: half the CPUs, at least 5. ``enrich``: a fixed 3 for remote rate limits."""
    if task_type == "static":
        return max(5, (os.cpu_count() or 1) // 2)
    return 3


class BatchRunner:
    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        *,
        static_concurrency: Optional[int] = None,
        enrich_concurrency: Optional[int] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.static_concurrency = static_concurrency or optimal_concurrency("static")
        self.enrich_concurrency = enrich_concurrency or optimal_concurrency("enrich")

    @classmethod
    def from_config(cls, orchestrator: AnalysisOrchestrator, cfg: Dict[str, Any]) -> "BatchRunner":
        b = cfg.get("batch") or {}
        return cls(
            orchestrator,
            static_concurrency=b.get("static_concurrency"),
            enrich_concurrency=b.get("enrich_concurrency"),
        )

    async def _run(
        self,
        label: str,
        items: Sequence[Any],
        keys: List[str],
        work: Callable[[Any], Any],
        concurrency: int,
        on_progress: Optional[ProgressFn],
    ) -> BatchResult:
        t0 = time.perf_counter()
        total = len(items)
        completed: List[str] = []
        failed_keys: List[str] = []

        logger.info(f"{label} started", ctx={"total": total, "concurrency": concurrency})

        def _done(idx: int, exc: Optional[BaseException]) -> None:
            key = keys[idx]
            if exc is None:
                completed.append(key)
            else:
                failed_keys.append(key)
                logger.warning(f"{label} item failed", ctx={"path": key}, exc=exc)
            if on_progress is not None:
                on_progress(
                    BatchProgress(
                        current=len(completed) + len(failed_keys),
                        total=total,
                        current_file=key,
                        completed=list(completed),
                        failed=list(failed_keys),
                    )
                )

        results, failures = await run_concurrently_ordered(
            list(range(total)),
            lambda i: work(items[i]),
            concurrency,
            on_done=lambda idx, _i, _res, exc: _done(idx, exc),
        )

        out = BatchResult(
            results=[r for r in results if r is not None],
            failed=[
                BatchFailure(
                    file=keys[f["index"]],
                    error=classify_error(f["exc"], ErrorCode.UNKNOWN_ERROR, {"path": keys[f["index"]]}),
                )
                for f in failures
            ],
        )
        out.stats = BatchStats(
            total=total,
            succeeded=len(out.results),
            failed=len(out.failed),
            duration_ms=round((time.perf_counter() - t0) * 1000.0, 2),
        )
        logger.info(
            f"{label} finished",
            ctx={"succeeded": out.stats.succeeded, "failed": out.stats.failed, "duration_ms": out.stats.duration_ms},
        )
        self.orchestrator.cache.log_stats()
        return out

    async def run_many(
        self,
        paths: Sequence[PathLike],
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressFn] = None,
        options: Optional[AnalysisOptions] = None,
    ) -> BatchResult:
        """Run Phase A for every path under a bounded pool.

        A failing path never aborts the batch: its error is recorded in
        ``failed`` (sorted by path) and the remaining paths still run.

        Args:
            paths: Files to analyze.
            concurrency: Pool size; defaults to ``static_concurrency``.
            on_progress: Called after each item completes with a ``BatchProgress``.
            options: Passed through to ``base_analysis``.

        Returns:
            ``BatchResult`` with successful capsules in input order.
        """
        opts = options or AnalysisOptions()
        return await self._run(
            "batch analysis",
            list(paths),
            [str(p) for p in paths],
            lambda p: self.orchestrator.base_analysis(p, opts),
            concurrency or self.static_concurrency,
            on_progress,
        )

    async def enhance_batch(
        self,
        capsules: Sequence[Capsule],
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressFn] = None,
        options: Optional[AnalysisOptions] = None,
    ) -> BatchResult:
        """Phase B for every capsule. Degraded items still count as succeeded."""
        opts = options or AnalysisOptions()
        return await self._run(
            "batch enrichment",
            list(capsules),
            [c.file for c in capsules],
            lambda c: self.orchestrator.enrich(c, opts),
            min(concurrency or self.enrich_concurrency, self.enrich_concurrency),
            on_progress,
        )

    async def analyze_and_enhance(
        self,
        paths: Sequence[PathLike],
        on_progress: Optional[ProgressFn] = None,
        options: Optional[AnalysisOptions] = None,
    ) -> BatchResult:
        """Phase A over ``paths`` then Phase B over the capsules that succeeded.

        Progress labels carry a phase prefix. Stats are the sum of both phases.
        """
        def _prefixed(prefix: str) -> Optional[ProgressFn]:
            if on_progress is None:
                return None

            def fn(p: BatchProgress) -> None:
                p.current_file = prefix + p.current_file
                on_progress(p)

            return fn

        base = await self.run_many(paths, on_progress=_prefixed(STATIC_PREFIX), options=options)
        enriched = await self.enhance_batch(base.results, on_progress=_prefixed(ENRICH_PREFIX), options=options)
        return BatchResult(
            results=enriched.results,
            failed=base.failed + enriched.failed,
            stats=BatchStats(
                total=len(paths),
                succeeded=enriched.stats.succeeded,
                failed=base.stats.failed + enriched.stats.failed,
                duration_ms=round(base.stats.duration_ms + enriched.stats.duration_ms, 2),
            ),
        )
