# capsules/errors.py
"""
Failure taxonomy for the analysis pipeline.

Every failure that crosses a component boundary is expressed as an
``AnalysisError`` carrying an ``ErrorCode`` and a ``Severity``. The code decides
what callers do with it:

- retryable errors are re-attempted by ``capsules.retry``;
- degradable errors end enrichment with the last-known-good capsule;
- user-action errors (auth / config) also raise an actionable notice.

``classify_error`` maps arbitrary exceptions (OS, asyncio, httpx, HTTP status
carriers such as the OpenAI SDK errors) onto the taxonomy. ``Ok``/``Err`` form
the tagged result used by enrichment internals, so degradation is an explicit
decision made in one place instead of a blanket ``except``.
"""
from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

import httpx

from capsules import logger as log


class ErrorCode(str, Enum):
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_READ_ERROR = "FILE_READ_ERROR"
    FILE_WRITE_ERROR = "FILE_WRITE_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    ENRICHMENT_CLIENT_INIT_FAILED = "ENRICHMENT_CLIENT_INIT_FAILED"
    ENRICHMENT_REQUEST_FAILED = "ENRICHMENT_REQUEST_FAILED"
    ENRICHMENT_TIMEOUT = "ENRICHMENT_TIMEOUT"
    ENRICHMENT_RATE_LIMITED = "ENRICHMENT_RATE_LIMITED"
    ENRICHMENT_AUTH_FAILED = "ENRICHMENT_AUTH_FAILED"
    ENRICHMENT_INVALID_RESPONSE = "ENRICHMENT_INVALID_RESPONSE"
    CACHE_READ_ERROR = "CACHE_READ_ERROR"
    CACHE_WRITE_ERROR = "CACHE_WRITE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Severity(str, Enum):
    INFO = "info"
    WARN = "warning"
    ERROR = "error"
    FATAL = "fatal"


_DEFAULT_SEVERITY: Dict[ErrorCode, Severity] = {
    ErrorCode.FILE_NOT_FOUND: Severity.ERROR,
    ErrorCode.FILE_READ_ERROR: Severity.ERROR,
    ErrorCode.FILE_WRITE_ERROR: Severity.ERROR,
    ErrorCode.PARSE_ERROR: Severity.ERROR,
    ErrorCode.ENRICHMENT_CLIENT_INIT_FAILED: Severity.WARN,
    ErrorCode.ENRICHMENT_REQUEST_FAILED: Severity.WARN,
    ErrorCode.ENRICHMENT_TIMEOUT: Severity.WARN,
    ErrorCode.ENRICHMENT_RATE_LIMITED: Severity.WARN,
    ErrorCode.ENRICHMENT_AUTH_FAILED: Severity.ERROR,
    ErrorCode.ENRICHMENT_INVALID_RESPONSE: Severity.WARN,
    ErrorCode.CACHE_READ_ERROR: Severity.INFO,
    ErrorCode.CACHE_WRITE_ERROR: Severity.WARN,
    ErrorCode.NETWORK_ERROR: Severity.WARN,
    ErrorCode.CONFIG_ERROR: Severity.ERROR,
    ErrorCode.UNKNOWN_ERROR: Severity.ERROR,
}

RETRYABLE_CODES = frozenset(
    {
        ErrorCode.ENRICHMENT_REQUEST_FAILED,
        ErrorCode.ENRICHMENT_TIMEOUT,
        ErrorCode.ENRICHMENT_RATE_LIMITED,
        ErrorCode.ENRICHMENT_INVALID_RESPONSE,
        ErrorCode.NETWORK_ERROR,
    }
)

DEGRADABLE_CODES = frozenset(
    {
        ErrorCode.ENRICHMENT_CLIENT_INIT_FAILED,
        ErrorCode.ENRICHMENT_REQUEST_FAILED,
        ErrorCode.ENRICHMENT_TIMEOUT,
        ErrorCode.ENRICHMENT_RATE_LIMITED,
        ErrorCode.ENRICHMENT_AUTH_FAILED,
        ErrorCode.ENRICHMENT_INVALID_RESPONSE,
        ErrorCode.CACHE_READ_ERROR,
        ErrorCode.CACHE_WRITE_ERROR,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.CONFIG_ERROR,
    }
)

USER_ACTION_CODES = frozenset({ErrorCode.ENRICHMENT_AUTH_FAILED, ErrorCode.CONFIG_ERROR})

_USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.FILE_NOT_FOUND: "File not found.",
    ErrorCode.FILE_READ_ERROR: "The file could not be read.",
    ErrorCode.FILE_WRITE_ERROR: "The file could not be written.",
    ErrorCode.PARSE_ERROR: "The file could not be analyzed.",
    ErrorCode.ENRICHMENT_CLIENT_INIT_FAILED: "AI enrichment is unavailable; showing static analysis only.",
    ErrorCode.ENRICHMENT_REQUEST_FAILED: "AI enrichment failed; showing static analysis only.",
    ErrorCode.ENRICHMENT_TIMEOUT: "AI enrichment timed out; showing static analysis only.",
    ErrorCode.ENRICHMENT_RATE_LIMITED: "AI enrichment is rate limited; try again shortly.",
    ErrorCode.ENRICHMENT_AUTH_FAILED: "AI provider rejected the credentials.",
    ErrorCode.ENRICHMENT_INVALID_RESPONSE: "AI provider returned an unusable response.",
    ErrorCode.CACHE_READ_ERROR: "Cache entry could not be read.",
    ErrorCode.CACHE_WRITE_ERROR: "Cache entry could not be saved.",
    ErrorCode.NETWORK_ERROR: "Network error while contacting the AI provider.",
    ErrorCode.CONFIG_ERROR: "Configuration is incomplete.",
    ErrorCode.UNKNOWN_ERROR: "Unexpected error.",
}


class AnalysisError(Exception):
    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        *,
        retry_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = ErrorCode(code)
        self.severity = severity or _DEFAULT_SEVERITY.get(self.code, Severity.ERROR)
        self.context: Dict[str, Any] = dict(context or {})
        self.retry_after = retry_after
        if cause is not None:
            self.__cause__ = cause

    def is_retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def needs_degradation(self) -> bool:
        return self.code in DEGRADABLE_CODES

    def needs_user_action(self) -> bool:
        return self.code in USER_ACTION_CODES

    def user_actions(self) -> List[str]:
        if self.code is ErrorCode.ENRICHMENT_AUTH_FAILED:
            return ["Check the API key for the configured provider", "Verify the account has model access"]
        if self.code is ErrorCode.CONFIG_ERROR:
            env = self.context.get("api_key_env")
            if env:
                return [f"Set {env} in the environment or .env", "Or disable enrichment (CAPSULES_ENABLE_AI=0)"]
            return ["Review .capsules/config.json"]
        return []

    def to_log_message(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_user_message(self) -> str:
        base = _USER_MESSAGES.get(self.code, self.message)
        actions = self.user_actions()
        if actions:
            return f"{base} " + "; ".join(actions) + "."
        return base

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "code": self.code.value,
            "severity": self.severity.value,
            "message": self.message,
            "retryable": self.is_retryable(),
            "needs_user_action": self.needs_user_action(),
        }
        if self.context:
            out["context"] = dict(self.context)
        if self.retry_after is not None:
            out["retry_after"] = self.retry_after
        return out

    def __repr__(self) -> str:
        return f"AnalysisError(code={self.code.value!r}, message={self.message!r})"


def _format_error(exc: BaseException) -> str:
    """Return a compact error string without the traceback."""
    lines = traceback.format_exception_only(type(exc), exc)
    return "".join(lines).strip() or repr(exc)


def _status_of(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        resp = getattr(exc, "response", None)
        status = getattr(resp, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def retry_after_seconds(exc: BaseException) -> Optional[float]:
    resp = getattr(exc, "response", None)
    headers = getattr(resp, "headers", None)
    if not headers:
        return None
    raw = headers.get("Retry-After") or headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def classify_error(
    exc: BaseException,
    default_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
    context: Optional[Dict[str, Any]] = None,
) -> AnalysisError:
    """Convert any exception into an ``AnalysisError``."""
    if isinstance(exc, AnalysisError):
        if context:
            merged = dict(context)
            merged.update(exc.context)
            exc.context = merged
        return exc

    msg = _format_error(exc)
    ctx = dict(context or {})

    if isinstance(exc, FileNotFoundError):
        return AnalysisError(msg, ErrorCode.FILE_NOT_FOUND, context=ctx, cause=exc)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return AnalysisError(msg, ErrorCode.ENRICHMENT_TIMEOUT, context=ctx, cause=exc)
    if isinstance(exc, httpx.TransportError):
        return AnalysisError(msg, ErrorCode.NETWORK_ERROR, context=ctx, cause=exc)
    if isinstance(exc, OSError):
        return AnalysisError(msg, ErrorCode.FILE_READ_ERROR, context=ctx, cause=exc)

    status = _status_of(exc)
    if status is not None:
        ctx.setdefault("status", status)
        if status in (401, 403):
            return AnalysisError(msg, ErrorCode.ENRICHMENT_AUTH_FAILED, context=ctx, cause=exc)
        if status == 429:
            return AnalysisError(
                msg,
                ErrorCode.ENRICHMENT_RATE_LIMITED,
                context=ctx,
                retry_after=retry_after_seconds(exc),
                cause=exc,
            )
        if 500 <= status < 600:
            return AnalysisError(msg, ErrorCode.ENRICHMENT_REQUEST_FAILED, context=ctx, cause=exc)

    return AnalysisError(msg, default_code, context=ctx, cause=exc)


def log_analysis_error(err: AnalysisError, msg: Optional[str] = None, ctx: Optional[Dict[str, Any]] = None) -> None:
    """Log at the level dictated by the error's severity."""
    meta = dict(ctx or {})
    meta.update(err.to_dict())
    level = "error" if err.severity in (Severity.ERROR, Severity.FATAL) else err.severity.value
    log.logger.log(level, msg or err.to_log_message(), ctx=meta)


T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]
