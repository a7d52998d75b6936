# capsules/concurrency.py
"""capsules.concurrency

Bounded asyncio task pool.

``ConcurrencyPool.run(task)`` accepts a zero-argument coroutine function and
returns a future for its result. Tasks start immediately while fewer than
``max_concurrency`` are active; the rest wait in a FIFO queue. ``drain()``
resolves once the queue is empty and nothing is active.

``run_concurrently_ordered`` is the per-item convenience on top of the pool:
it returns results in input order plus a deterministic failure list, and never
raises for a single item's failure.
"""

from __future__ import annotations

import asyncio
import traceback
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def _format_error(exc: BaseException) -> str:
    lines = traceback.format_exception_only(type(exc), exc)
    return "".join(lines).strip() or repr(exc)


class ConcurrencyPool:
    def __init__(self, max_concurrency: int = 5) -> None:
        self.max_concurrency = max(1, int(max_concurrency))
        self._queue: Deque[Tuple[Callable[[], Awaitable[Any]], asyncio.Future]] = deque()
        self._active = 0
        self._tasks: set[asyncio.Task] = set()
        self._idle: Optional[asyncio.Event] = None

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
        return self._idle

    def run(self, task: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        """Enqueue ``task``; must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._queue.append((task, fut))
        self._idle_event().clear()
        self._pump()
        return fut

    def _pump(self) -> None:
        while self._active < self.max_concurrency and self._queue:
            task, fut = self._queue.popleft()
            if fut.cancelled():
                continue
            self._active += 1
            t = asyncio.ensure_future(self._execute(task, fut))
            self._tasks.add(t)
            t.add_done_callback(self._tasks.discard)
        if self._active == 0 and not self._queue:
            self._idle_event().set()

    async def _execute(self, task: Callable[[], Awaitable[Any]], fut: asyncio.Future) -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            if not fut.done():
                fut.cancel()
            raise
        except Exception as e:
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(result)
        finally:
            self._active -= 1
            self._pump()

    async def drain(self) -> None:
        await self._idle_event().wait()

    def status(self) -> Dict[str, int]:
        return {
            "active": self._active,
            "queued": len(self._queue),
            "total": self._active + len(self._queue),
        }

    def clear(self) -> int:
        """Drop queued (not yet started) tasks; their futures are cancelled. Returns how many."""
        dropped = 0
        while self._queue:
            _task, fut = self._queue.popleft()
            if not fut.done():
                fut.cancel()
            dropped += 1
        if self._active == 0:
            self._idle_event().set()
        return dropped


async def run_concurrently_ordered(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    max_concurrency: int = 5,
    *,
    key_fn: Optional[Callable[[T], Any]] = None,
    on_done: Optional[Callable[[int, T, Optional[R], Optional[BaseException]], None]] = None,
) -> Tuple[List[Optional[R]], List[Dict[str, Any]]]:
    """Run ``worker(item)`` for each item through a ``ConcurrencyPool``.

    Returns ``(results, failures)``: ``results`` is aligned with ``items`` (None on
    failure); ``failures`` holds ``{index, key, error, exc}`` sorted by index.
    ``on_done`` fires once per item in completion order.
    """
    pool = ConcurrencyPool(max_concurrency)
    results: List[Optional[R]] = [None] * len(items)
    failures: List[Dict[str, Any]] = []

    def _make(idx: int, item: T) -> Callable[[], Awaitable[None]]:
        async def _one() -> None:
            try:
                res = await worker(item)
            except Exception as e:
                failures.append(
                    {
                        "index": idx,
                        "key": key_fn(item) if key_fn else idx,
                        "error": _format_error(e),
                        "exc": e,
                    }
                )
                if on_done:
                    on_done(idx, item, None, e)
            else:
                results[idx] = res
                if on_done:
                    on_done(idx, item, res, None)

        return _one

    for i, it in enumerate(items):
        pool.run(_make(i, it))
    await pool.drain()

    failures.sort(key=lambda f: f["index"])
    return results, failures
