# capsules/llm_client.py
"""
OpenAI-backed EnrichmentProvider.

One ``analyze`` call is one chat completion: the SDK's own retries are disabled
(``max_retries=0``) because retry policy lives in ``capsules.retry``. SDK and
transport exceptions are mapped onto the ``AnalysisError`` taxonomy here so the
orchestrator can decide to retry, degrade or ask the user to act.

The blocking SDK call runs in a worker thread (``asyncio.to_thread``) and shares
one ``httpx.Client`` for connection reuse.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
)

from capsules.config import DEFAULT_CONFIG, resolve_api_key
from capsules.errors import AnalysisError, ErrorCode, retry_after_seconds
from capsules.logger import get_logger, log_llm_call
from capsules.models import EnrichmentInput

logger = get_logger("capsules.llm_client")

SYSTEM_PROMPT = """You are a senior code reviewer. Analyze one source file and answer with JSON only:
{
  "summary": {"en": "2-3 sentences on the file's core responsibility", "zh": "同样内容的中文摘要"},
  "inferences": [{"id": "i1", "text": "an inference grounded in the code", "confidence": 0.85}],
  "recommendations": [{"id": "r1", "text": "an actionable suggestion", "reason": "why", "priority": "high|medium|low"}]
}
Rules: be accurate and concise; confidence is between 0 and 1; recommendations must be actionable.
Return the JSON object and nothing else."""


def build_user_prompt(data: EnrichmentInput, content_char_limit: int = 4000) -> str:
    content = data.content
    if len(content) > content_char_limit:
        content = content[:content_char_limit] + "\n\n... (content truncated)"
    s = data.static_analysis
    return (
        "Analyze the following file.\n\n"
        f"- Path: {data.file_path}\n"
        f"- Language: {data.language}\n"
        f"- API count: {s.get('api_count', 0)}\n"
        f"- API summary: {s.get('api_summary', 'none')}\n"
        f"- Dependency count: {s.get('deps_count', 0)}\n"
        f"- Dependency summary: {s.get('deps_summary', 'none')}\n\n"
        f"```{data.language}\n{content}\n```\n"
    )


def map_openai_error(exc: BaseException, *, model: Optional[str] = None) -> AnalysisError:
    """Translate SDK/transport exceptions into the taxonomy."""
    ctx: Dict[str, Any] = {"model": model} if model else {}
    msg = str(exc) or type(exc).__name__
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return AnalysisError(msg, ErrorCode.ENRICHMENT_AUTH_FAILED, context=ctx, cause=exc)
    if isinstance(exc, RateLimitError):
        return AnalysisError(
            msg, ErrorCode.ENRICHMENT_RATE_LIMITED, context=ctx, retry_after=retry_after_seconds(exc), cause=exc
        )
    # APITimeoutError subclasses APIConnectionError; check it first.
    if isinstance(exc, (APITimeoutError, httpx.TimeoutException)):
        return AnalysisError(msg, ErrorCode.ENRICHMENT_TIMEOUT, context=ctx, cause=exc)
    if isinstance(exc, (APIConnectionError, httpx.TransportError)):
        return AnalysisError(msg, ErrorCode.NETWORK_ERROR, context=ctx, cause=exc)
    if isinstance(exc, APIStatusError):
        ctx["status"] = exc.status_code
        if exc.status_code in (401, 403):
            return AnalysisError(msg, ErrorCode.ENRICHMENT_AUTH_FAILED, context=ctx, cause=exc)
        if exc.status_code == 429:
            return AnalysisError(
                msg, ErrorCode.ENRICHMENT_RATE_LIMITED, context=ctx, retry_after=retry_after_seconds(exc), cause=exc
            )
        if exc.status_code >= 500:
            return AnalysisError(msg, ErrorCode.ENRICHMENT_REQUEST_FAILED, context=ctx, cause=exc)
        return AnalysisError(msg, ErrorCode.ENRICHMENT_INVALID_RESPONSE, context=ctx, cause=exc)
    return AnalysisError(msg, ErrorCode.ENRICHMENT_REQUEST_FAILED, context=ctx, cause=exc)


class OpenAIEnrichmentProvider:
    def __init__(
        self,
        model: str = "gpt-4o-mini",
        *,
        api_key: Optional[str] = None,
        api_key_env: str = "OPENAI_API_KEY",
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        max_output_tokens: int = 2000,
        content_char_limit: int = 4000,
        timeout: float = 30.0,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.temperature = float(temperature)
        self.max_output_tokens = int(max_output_tokens)
        self.content_char_limit = int(content_char_limit)
        self.timeout = float(timeout)
        self._http_client: Optional[httpx.Client] = None
        self._closed = False

        if client is not None:
            self._client = client
        else:
            if not api_key:
                raise AnalysisError(
                    f"missing API key (set {api_key_env})",
                    ErrorCode.CONFIG_ERROR,
                    context={"api_key_env": api_key_env},
                )
            self._http_client = httpx.Client(timeout=httpx.Timeout(timeout=self.timeout, connect=10.0))
            try:
                kwargs: Dict[str, Any] = {"api_key": api_key, "http_client": self._http_client, "max_retries": 0}
                if base_url:
                    kwargs["base_url"] = base_url
                self._client = OpenAI(**kwargs)
            except Exception as e:
                self.close()
                raise AnalysisError(
                    "failed to initialize OpenAI client",
                    ErrorCode.ENRICHMENT_CLIENT_INIT_FAILED,
                    context={"base_url": base_url or "default"},
                    cause=e,
                ) from e

        logger.info(
            "enrichment provider ready",
            ctx={"vendor": "openai", "model": self.model, "base_url": self.base_url or "default"},
        )

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "OpenAIEnrichmentProvider":
        llm = dict(DEFAULT_CONFIG["llm"])
        llm.update(cfg.get("llm") or {})
        api_key, env_name = resolve_api_key(cfg)
        enr = cfg.get("enrichment") or {}
        return cls(
            model=str(llm.get("model")),
            api_key=api_key,
            api_key_env=env_name,
            base_url=llm.get("base_url"),
            temperature=float(llm.get("temperature", 0.3)),
            max_output_tokens=int(llm.get("max_output_tokens") or 2000),
            content_char_limit=int(llm.get("content_char_limit") or 4000),
            timeout=float(enr.get("timeout_sec", 30.0)),
        )

    def close(self) -> None:
        if self._closed:
            return
        if self._http_client is not None:
            self._http_client.close()
        self._closed = True

    def __enter__(self) -> "OpenAIEnrichmentProvider":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _messages(self, data: EnrichmentInput) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(data, self.content_char_limit)},
        ]

    def complete(self, data: EnrichmentInput) -> str:
        """Blocking single attempt; returns the raw model text."""
        t0 = time.perf_counter()
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=self._messages(data),
                temperature=self.temperature,
                max_tokens=self.max_output_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            err = map_openai_error(e, model=self.model)
            log_llm_call(
                "enrich",
                "error",
                self.model,
                (time.perf_counter() - t0) * 1000.0,
                extra_meta={"code": err.code.value, "file": data.file_path},
                level="warning",
            )
            raise err from e

        usage = getattr(resp, "usage", None)
        log_llm_call(
            "enrich",
            "ok",
            self.model,
            (time.perf_counter() - t0) * 1000.0,
            tokens_in=getattr(usage, "prompt_tokens", None),
            tokens_out=getattr(usage, "completion_tokens", None),
            request_id=getattr(resp, "id", None),
            extra_meta={"file": data.file_path},
        )
        choices = getattr(resp, "choices", None) or []
        text = choices[0].message.content if choices else None
        if not text:
            raise AnalysisError("empty completion", ErrorCode.ENRICHMENT_INVALID_RESPONSE, context={"model": self.model})
        return text

    async def analyze(self, data: EnrichmentInput) -> str:
        return await asyncio.to_thread(self.complete, data)
