# capsules/retry.py
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from capsules.errors import AnalysisError, ErrorCode, classify_error
from capsules.logger import get_logger

logger = get_logger("capsules.retry")

T = TypeVar("T")


def _default_retryable(err: AnalysisError) -> bool:
    return err.is_retryable()


@dataclass
class RetryPolicy:
    """Exponential backoff around an async zero-argument call.

    Delay before attempt n+1 is ``base_delay * multiplier**(n-1)``, capped at
    ``max_delay``. A rate-limited error that carries ``retry_after`` waits that
    long instead (also capped). ``timeout`` bounds each attempt. Jitter is off
    unless ``jitter`` is set, which keeps the schedule predictable.
    """

    max_attempts: int = 3
    base_delay: float = 0.3
    multiplier: float = 1.5
    max_delay: float = 10.0
    timeout: Optional[float] = 30.0
    jitter: bool = False
    retryable: Callable[[AnalysisError], bool] = _default_retryable
    default_code: ErrorCode = ErrorCode.ENRICHMENT_REQUEST_FAILED

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "RetryPolicy":
        enr = cfg.get("enrichment") or {}
        return cls(
            max_attempts=max(1, int(enr.get("max_attempts", 3))),
            base_delay=float(enr.get("backoff_base_sec", 0.3)),
            multiplier=float(enr.get("backoff_multiplier", 1.5)),
            max_delay=float(enr.get("backoff_cap_sec", 10.0)),
            timeout=float(enr.get("timeout_sec", 30.0)),
        )

    def delay_for(self, attempt: int, err: Optional[AnalysisError] = None) -> float:
        """Sleep after failed ``attempt`` (1-based)."""
        if err is not None and err.retry_after:
            return min(float(err.retry_after), self.max_delay)
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** max(0, attempt - 1)))
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay

    async def run(self, call: Callable[[], Awaitable[T]], *, ctx: Optional[Dict[str, Any]] = None) -> T:
        """Run ``call`` until it succeeds or the policy gives up.

        Each attempt is bounded by ``timeout`` (when set) through ``asyncio.wait_for``.
        Between attempts the policy sleeps ``delay_for(attempt, err)``, which honours a
        server ``retry_after`` hint capped at ``max_delay``.

        Args:
            call: Zero-argument callable returning a fresh awaitable per attempt.
            ctx: Extra fields merged into the backoff log records and error context.

        Returns:
            The first successful result.

        Raises:
            AnalysisError: the classified error of the last attempt, with
                ``context["attempts"]`` set. Non-retryable errors are raised at once.
        """
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            t0 = time.perf_counter()
            try:
                if self.timeout:
                    return await asyncio.wait_for(call(), timeout=self.timeout)
                return await call()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                err = classify_error(e, self.default_code, ctx)
                if attempt >= attempts or not self.retryable(err):
                    err.context.setdefault("attempts", attempt)
                    raise err

                delay = self.delay_for(attempt, err)
                meta = dict(ctx or {})
                meta.update(
                    {
                        "attempt": attempt,
                        "of": attempts,
                        "code": err.code.value,
                        "err": err.message,
                        "elapsed_ms": round((time.perf_counter() - t0) * 1000.0, 2),
                        "sleep_s": round(delay, 3),
                    }
                )
                logger.warning("call failed; backing off", ctx=meta)
                await asyncio.sleep(delay)

        raise AnalysisError("retry loop exhausted", self.default_code, context=dict(ctx or {}))

