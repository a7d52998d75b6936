# capsules/enrichment.py
"""
Enrichment (Phase B) contract and response handling.

An ``EnrichmentProvider`` turns the structural summary plus raw content of one
file into narrative fields. Providers make exactly one attempt per call; retry
and degradation belong to the orchestrator.

``parse_enrichment_response`` accepts whatever a provider hands back (model
text, a mapping, or an ``EnrichmentResult``), validates it against
``ENRICHMENT_RESPONSE_SCHEMA`` and returns ``Ok(EnrichmentResult)`` or
``Err(AnalysisError(ENRICHMENT_INVALID_RESPONSE))``.
"""
from __future__ import annotations

from typing import Any, Awaitable, Dict, List, Mapping, Protocol, Union

from jsonschema import Draft202012Validator

from capsules.errors import AnalysisError, Err, ErrorCode, Ok, Result
from capsules.llm_utils import ParseError, parse_json_object
from capsules.models import Capsule, EnrichmentInput, EnrichmentResult, Inference, Recommendation

ProviderOutput = Union[str, Mapping[str, Any], EnrichmentResult]


class EnrichmentProvider(Protocol):
    def analyze(self, data: EnrichmentInput) -> Awaitable[ProviderOutput]:
        ...


ENRICHMENT_RESPONSE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "summary": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "inferences": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "null"]},
                    "text": {"type": "string"},
                    "confidence": {"type": ["number", "null"]},
                    "evidence": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["text"],
            },
        },
        "recommendations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "null"]},
                    "text": {"type": "string"},
                    "reason": {"type": ["string", "null"]},
                    "priority": {"type": ["string", "null"]},
                    "evidence": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["text"],
            },
        },
    },
    "required": ["summary"],
}

_VALIDATOR = Draft202012Validator(ENRICHMENT_RESPONSE_SCHEMA)

_FALLBACK_SUMMARY = {
    "en": "No English summary available",
    "zh": "暂无中文摘要",
}


def build_enrichment_input(capsule: Capsule, content: str) -> EnrichmentInput:
    s = capsule.structural_summary()
    return EnrichmentInput(
        file_path=capsule.file,
        language=capsule.language,
        content=content,
        static_analysis={
            "api_count": s["api_count"],
            "api_summary": ", ".join(s["api_summary"]) or "none",
            "deps_count": s["deps_count"],
            "deps_summary": ", ".join(s["deps_summary"]) or "none",
        },
    )


def _clamp(v: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, v))


def normalize_priority(priority: Any) -> str:
    p = str(priority or "").strip().lower()
    if p in ("high", "h"):
        return "high"
    if p in ("low", "l"):
        return "low"
    return "medium"


def _inferences(items: List[Dict[str, Any]]) -> List[Inference]:
    out: List[Inference] = []
    for idx, it in enumerate(items, start=1):
        conf = it.get("confidence")
        out.append(
            Inference(
                id=str(it.get("id") or f"i{idx}"),
                text=str(it.get("text") or ""),
                confidence=_clamp(float(conf)) if conf is not None else 0.5,
                evidence=list(it.get("evidence") or []),
            )
        )
    return out


def _recommendations(items: List[Dict[str, Any]]) -> List[Recommendation]:
    return [
        Recommendation(
            id=str(it.get("id") or f"r{idx}"),
            text=str(it.get("text") or ""),
            reason=str(it.get("reason") or ""),
            evidence=list(it.get("evidence") or []),
            priority=normalize_priority(it.get("priority")),
        )
        for idx, it in enumerate(items, start=1)
    ]


def parse_enrichment_response(raw: ProviderOutput) -> Result[EnrichmentResult, AnalysisError]:
    if isinstance(raw, EnrichmentResult):
        return Ok(raw)

    if isinstance(raw, str):
        parsed = parse_json_object(raw)
        if isinstance(parsed, ParseError):
            return Err(
                AnalysisError(
                    parsed.message,
                    ErrorCode.ENRICHMENT_INVALID_RESPONSE,
                    context=parsed.context(),
                )
            )
        data: Any = parsed
    elif isinstance(raw, Mapping):
        data = dict(raw)
    else:
        return Err(
            AnalysisError(
                f"unsupported provider output type: {type(raw).__name__}",
                ErrorCode.ENRICHMENT_INVALID_RESPONSE,
            )
        )

    errors = sorted(_VALIDATOR.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        where = "/".join(str(p) for p in first.path) or "<root>"
        return Err(
            AnalysisError(
                f"response failed schema validation at {where}: {first.message}",
                ErrorCode.ENRICHMENT_INVALID_RESPONSE,
                context={"error_count": len(errors)},
            )
        )

    summary = {k: v for k, v in (data.get("summary") or {}).items() if v}
    for locale, text in _FALLBACK_SUMMARY.items():
        summary.setdefault(locale, text)

    return Ok(
        EnrichmentResult(
            summary=summary,
            inferences=_inferences(data.get("inferences") or []),
            recommendations=_recommendations(data.get("recommendations") or []),
        )
    )
