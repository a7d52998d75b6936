# capsules/logger.py
"""
Structured logging facade for the capsules package.

Every call takes a short human-readable message plus an optional ``ctx`` mapping;
the mapping travels on the LogRecord as ``meta`` so ``logging_utils.JsonFormatter``
can render it as one compact JSON line. Exceptions passed via ``exc=`` are folded
into the meta under ``exc``.

Exposes module-level helpers (info/debug/warning/warn/error/exception),
``start_action()`` (a timed context manager) and ``get_logger()`` which returns a
proxy bound to a logger name and an optional default context.
"""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

_BASE_NAME = "capsules"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _json_safe(obj: Any) -> Any:
    """Best-effort conversion of ctx values to JSON-serializable types."""
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, BaseException):
        return f"{type(obj).__name__}: {obj}"
    if isinstance(obj, Mapping):
        return {str(k): _json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_json_safe(x) for x in obj]
    try:
        json.dumps(obj)
        return obj
    except (TypeError, ValueError):
        return str(obj)


def _coerce_num(v: Optional[Any]) -> Optional[Any]:
    if v is None:
        return None
    try:
        if float(v).is_integer():
            return int(float(v))
        return float(v)
    except (TypeError, ValueError):
        return v


def _emit(
    level_name: str,
    msg: str,
    meta: Optional[Dict[str, Any]] = None,
    *,
    name: Optional[str] = None,
    exc: Optional[BaseException] = None,
    exc_info: bool = False,
) -> None:
    payload: Dict[str, Any] = dict(meta or {})
    if exc is not None:
        payload["exc"] = _json_safe(exc)
    lg = logging.getLogger(name or _BASE_NAME)
    lg.log(
        _LEVELS.get(level_name, logging.INFO),
        msg,
        extra={"meta": _json_safe(payload)},
        exc_info=exc_info,
    )


def info(msg: str, ctx: Optional[Dict[str, Any]] = None) -> None:
    _emit("info", msg, ctx)


def debug(msg: str, ctx: Optional[Dict[str, Any]] = None) -> None:
    _emit("debug", msg, ctx)


def warning(msg: str, ctx: Optional[Dict[str, Any]] = None, exc: Optional[BaseException] = None) -> None:
    _emit("warning", msg, ctx, exc=exc)


# Back-compat alias
warn = warning


def error(msg: str, ctx: Optional[Dict[str, Any]] = None, exc: Optional[BaseException] = None) -> None:
    _emit("error", msg, ctx, exc=exc)


def exception(msg: str, ctx: Optional[Dict[str, Any]] = None) -> None:
    _emit("error", msg, ctx, exc_info=True)


class Action:
    """Timed context manager: logs action_start, then action_stop or action_error with dur_ms."""

    def __init__(self, name: str, ctx: Optional[Dict[str, Any]] = None, *, logger_name: Optional[str] = None):
        self.name = name
        self.ctx = dict(ctx or {})
        self.logger_name = logger_name
        self._t0 = 0.0

    def _meta(self) -> Dict[str, Any]:
        meta = dict(self.ctx)
        meta["action"] = self.name
        return meta

    def __enter__(self) -> "Action":
        self._t0 = time.perf_counter()
        _emit("debug", "action_start", self._meta(), name=self.logger_name)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        meta = self._meta()
        meta["dur_ms"] = round((time.perf_counter() - self._t0) * 1000.0, 2)
        if exc is not None:
            _emit("error", "action_error", meta, name=self.logger_name, exc=exc)
        else:
            _emit("info", "action_stop", meta, name=self.logger_name)
        return False


def start_action(name: str, ctx: Optional[Dict[str, Any]] = None) -> Action:
    return Action(name, ctx=ctx)


def log_llm_call(
    phase: str,
    status: Optional[str],
    model: Optional[str],
    latency_ms: Optional[float],
    tokens_in: Optional[int] = None,
    tokens_out: Optional[int] = None,
    request_id: Optional[str] = None,
    extra_meta: Optional[Dict[str, Any]] = None,
    level: str = "info",
) -> None:
    """Emit a structured entry describing one remote model call."""
    meta: Dict[str, Any] = {
        "phase": phase,
        "status": status,
        "model": model,
        "latency_ms": _coerce_num(latency_ms),
        "tokens_in": _coerce_num(tokens_in),
        "tokens_out": _coerce_num(tokens_out),
        "request_id": request_id,
    }
    if extra_meta:
        meta["extra"] = dict(extra_meta)
    _emit(level, f"[llm_client] {status or 'done'} phase={phase}", meta)


class _Proxy:
    """Logger bound to a name and a default ctx that is merged under each call's ctx."""

    def __init__(self, name: Optional[str] = None, default_ctx: Optional[Dict[str, Any]] = None):
        self.name = name or _BASE_NAME
        self.default_ctx = dict(default_ctx or {})

    def _ctx(self, ctx: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = dict(self.default_ctx)
        merged.update(ctx or {})
        return merged

    def info(self, msg: str, ctx: Optional[Dict[str, Any]] = None) -> None:
        _emit("info", msg, self._ctx(ctx), name=self.name)

    def debug(self, msg: str, ctx: Optional[Dict[str, Any]] = None) -> None:
        _emit("debug", msg, self._ctx(ctx), name=self.name)

    def warning(self, msg: str, ctx: Optional[Dict[str, Any]] = None, exc: Optional[BaseException] = None) -> None:
        _emit("warning", msg, self._ctx(ctx), name=self.name, exc=exc)

    def warn(self, msg: str, ctx: Optional[Dict[str, Any]] = None, exc: Optional[BaseException] = None) -> None:
        self.warning(msg, ctx=ctx, exc=exc)  # alias

    def error(self, msg: str, ctx: Optional[Dict[str, Any]] = None, exc: Optional[BaseException] = None) -> None:
        _emit("error", msg, self._ctx(ctx), name=self.name, exc=exc)

    def exception(self, msg: str, ctx: Optional[Dict[str, Any]] = None) -> None:
        _emit("error", msg, self._ctx(ctx), name=self.name, exc_info=True)

    def log(self, level: str, msg: str, ctx: Optional[Dict[str, Any]] = None, exc: Optional[BaseException] = None) -> None:
        _emit(level, msg, self._ctx(ctx), name=self.name, exc=exc)

    def start_action(self, name: str, ctx: Optional[Dict[str, Any]] = None) -> Action:
        return Action(name, ctx=self._ctx(ctx), logger_name=self.name)

    def log_llm_call(self, *a, **k) -> None:
        log_llm_call(*a, **k)


def get_logger(name: Optional[str] = None, default_ctx: Optional[Dict[str, Any]] = None) -> _Proxy:
    return _Proxy(name, default_ctx)


logger = _Proxy()

__all__ = [
    "info", "debug", "warning", "warn", "error", "exception",
    "Action", "start_action", "get_logger", "logger", "log_llm_call",
]
