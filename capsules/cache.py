# capsules/cache.py
"""
Two-tier capsule cache keyed by content hash.

Memory tier: a dict (optionally LRU-bounded) guarded by an RLock so the cache can
be shared between the asyncio loop and worker threads.
Durable tier: one JSON file per hash at ``<root>/<hash>.json``, written atomically
(tmp file + ``os.replace``) with stable key order.

Durable-tier failures never reach the caller: reads degrade to a miss, writes are
logged and the in-memory copy stays authoritative for the process lifetime.
Callers always receive copies; the cache owns the stored values.
"""
from __future__ import annotations

import json
import os
import random
import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from capsules.errors import AnalysisError, ErrorCode, log_analysis_error
from capsules.logger import get_logger
from capsules.models import CAPSULE_VERSION, Capsule

logger = get_logger("capsules.cache")


def _stable_json_text(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False, separators=(",", ": ")) + "\n"


@dataclass
class CacheStats:
    memory_hits: int = 0
    disk_hits: int = 0
    misses: int = 0
    writes: int = 0

    @property
    def total(self) -> int:
        return self.memory_hits + self.disk_hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total
        return (self.memory_hits + self.disk_hits) / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["hit_rate"] = round(self.hit_rate, 4)
        return d


class CapsuleCache:
    def __init__(self, root: Union[str, Path, None] = None, *, max_memory_entries: Optional[int] = None) -> None:
        self.root = Path(root) if root is not None else None
        self.max_memory_entries = int(max_memory_entries) if max_memory_entries else None
        self._mem: "OrderedDict[str, Capsule]" = OrderedDict()
        self._lock = threading.RLock()
        self._stats = CacheStats()

    # --------------- paths ---------------
    def _entry_path(self, content_hash: str) -> Optional[Path]:
        if self.root is None:
            return None
        return self.root / f"{content_hash}.json"

    # --------------- memory tier ---------------
    def _remember(self, content_hash: str, capsule: Capsule) -> None:
        with self._lock:
            self._mem[content_hash] = capsule
            self._mem.move_to_end(content_hash)
            if self.max_memory_entries is not None:
                while len(self._mem) > self.max_memory_entries:
                    evicted, _ = self._mem.popitem(last=False)
                    logger.debug("memory tier evicted entry", ctx={"content_hash": evicted})

    # --------------- durable tier ---------------
    def _read_disk(self, content_hash: str) -> Optional[Capsule]:
        p = self._entry_path(content_hash)
        if p is None or not p.exists():
            return None
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            err = AnalysisError(str(e), ErrorCode.CACHE_READ_ERROR, context={"path": str(p)})
            log_analysis_error(err, "cache entry unreadable; treating as miss")
            return None
        if not isinstance(data, dict) or data.get("version") != CAPSULE_VERSION:
            logger.info(
                "cache entry version mismatch; treating as miss",
                ctx={"content_hash": content_hash, "found": data.get("version") if isinstance(data, dict) else None},
            )
            return None
        try:
            return Capsule.from_dict(data)
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            err = AnalysisError(str(e), ErrorCode.CACHE_READ_ERROR, context={"path": str(p)})
            log_analysis_error(err, "cache entry malformed; treating as miss")
            return None

    def _write_disk(self, content_hash: str, capsule: Capsule) -> None:
        p = self._entry_path(content_hash)
        if p is None:
            return
        tmp = p.with_name(f".{p.name}.tmp_{os.getpid()}_{random.randint(1000, 9999)}")
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8", newline="") as f:
                f.write(_stable_json_text(capsule.to_dict()))
            os.replace(tmp, p)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            err = AnalysisError(str(e), ErrorCode.CACHE_WRITE_ERROR, context={"path": str(p)})
            log_analysis_error(err, "cache write failed; keeping in-memory copy")

    # --------------- public API ---------------
    def get(self, content_hash: str) -> Optional[Capsule]:
        with self._lock:
            hit = self._mem.get(content_hash)
            if hit is not None:
                self._mem.move_to_end(content_hash)
                self._stats.memory_hits += 1
                return hit.copy()

        loaded = self._read_disk(content_hash)
        with self._lock:
            if loaded is None:
                self._stats.misses += 1
                return None
            self._stats.disk_hits += 1
            self._remember(content_hash, loaded)
            return loaded.copy()

    def peek(self, content_hash: str) -> Optional[Capsule]:
        """Look up an entry without counting it in stats or promoting it."""
        with self._lock:
            hit = self._mem.get(content_hash)
            if hit is not None:
                return hit.copy()
        return self._read_disk(content_hash)

    def set(self, content_hash: str, capsule: Capsule) -> None:
        stored = capsule.copy()
        with self._lock:
            self._remember(content_hash, stored)
            self._stats.writes += 1
        self._write_disk(content_hash, stored)

    def delete(self, content_hash: str) -> bool:
        with self._lock:
            existed = self._mem.pop(content_hash, None) is not None
        p = self._entry_path(content_hash)
        if p is not None and p.exists():
            try:
                p.unlink()
                existed = True
            except OSError as e:
                logger.warning("cache delete failed", ctx={"path": str(p)}, exc=e)
        return existed

    def clear(self) -> None:
        with self._lock:
            self._mem.clear()
            self._stats = CacheStats()
        if self.root is not None and self.root.is_dir():
            for p in self.root.glob("*.json"):
                try:
                    p.unlink()
                except OSError as e:
                    logger.warning("cache clear could not remove entry", ctx={"path": str(p)}, exc=e)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(**asdict(self._stats))

    def memory_size(self) -> int:
        with self._lock:
            return len(self._mem)

    def log_stats(self) -> None:
        meta = self.stats().to_dict()
        meta["memory_size"] = self.memory_size()
        logger.info("capsule cache stats", ctx=meta)
