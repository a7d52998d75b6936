# capsules/logging_utils.py
from __future__ import annotations

import datetime
import json
import logging
import logging.handlers as lh
import os
import sys

LOG_FILE_NAME = "capsules.log"


class _HttpNoiseFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        noisy = (
            "HTTP Request:" in msg
            or "HTTP Response:" in msg
            or "httpx" in record.name
            or "httpcore" in record.name
        )
        return not noisy


class JsonFormatter(logging.Formatter):
    """Compact single-line JSON formatter for logs.

    Emits objects with keys: ts (ISO8601 UTC), level, module, msg, meta.
    meta is taken from record.__dict__.get('meta') (set by capsules.logger) and
    enriched with a few well-known fields that callers may attach via ``extra=``.
    """

    def _safe(self, v):
        try:
            json.dumps(v)
            return v
        except (TypeError, ValueError):
            return str(v)

    def format(self, record: logging.LogRecord) -> str:
        rec_ts = datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")
        meta = {}
        raw_meta = record.__dict__.get("meta")
        if isinstance(raw_meta, dict):
            meta.update(raw_meta)

        for k in ("phase", "path", "content_hash", "op", "latency_ms", "model", "status"):
            if k in record.__dict__ and record.__dict__[k] is not None:
                meta[k] = self._safe(record.__dict__[k])

        payload = {
            "ts": rec_ts,
            "level": record.levelname.lower(),
            "module": record.name,
            "msg": record.getMessage(),
            "meta": meta,
        }
        if record.exc_info:
            payload["meta"]["exc"] = self._safe(self.formatException(record.exc_info))

        return json.dumps(payload, separators=(",", ":"), default=str)


class HumanFormatter(logging.Formatter):
    """Plain-text formatter that appends the ctx mapping after the message."""

    def __init__(self):
        super().__init__("%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        meta = record.__dict__.get("meta")
        if isinstance(meta, dict) and meta:
            return f"{base} | {json.dumps(meta, default=str, ensure_ascii=False)}"
        return base


def configure_quiet_http(quiet_http: bool) -> None:
    """Reduce noisy HTTP-level logs from httpx/openai namespaces.

    Safe to call multiple times.
    """
    if not quiet_http:
        return
    for name in ("httpx", "httpcore", "openai"):
        lg = logging.getLogger(name)
        lg.setLevel(logging.WARNING)
        lg.propagate = False
    root = logging.getLogger()
    for h in root.handlers:
        if not any(isinstance(f, _HttpNoiseFilter) for f in h.filters):
            h.addFilter(_HttpNoiseFilter())
    os.environ.setdefault("OPENAI_LOG", "error")


def configure_logging(
    quiet_http: bool = True,
    verbose: bool = False,
    structured: bool = True,
    log_file: str | None = LOG_FILE_NAME,
    stream=None,
) -> None:
    """Configure global logging for the application.

    Installs (idempotently) a stream handler and, unless ``log_file`` is None, a
    rotating file handler. ``structured=True`` selects JSONL output; tests and
    interactive use may prefer ``structured=False``. ``stream`` defaults to
    stdout; the CLI passes stderr so its own output stays parseable.
    """
    lg = logging.getLogger()
    lg.setLevel(logging.DEBUG if verbose else logging.INFO)

    fmt: logging.Formatter = JsonFormatter() if structured else HumanFormatter()

    if log_file:
        log_path = os.path.abspath(log_file)
        add_fh = True
        for h in lg.handlers:
            base = getattr(h, "baseFilename", None)
            if base and os.path.abspath(base) == log_path:
                add_fh = False
                h.setFormatter(fmt)
                break
        if add_fh:
            fh = lh.RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
            fh.setFormatter(fmt)
            lg.addHandler(fh)

    stream = stream or sys.stdout
    add_sh = True
    for h in lg.handlers:
        if isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is stream:
            add_sh = False
            h.setFormatter(fmt)
            break
    if add_sh:
        sh = logging.StreamHandler(stream)
        sh.setFormatter(fmt)
        lg.addHandler(sh)

    configure_quiet_http(quiet_http)
