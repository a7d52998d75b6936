# capsules/models.py
"""
Capsule data model.

A Capsule is the cached record for one unique file content. The structural part
(facts, api, deps, evidence) is fixed by the content hash; the narrative part
(summary, inferences, recommendations) is replaced as a whole by enrichment.

All types serialize to plain JSON-compatible dicts via ``to_dict`` and load back
with ``from_dict``; the capsule carries ``version`` so stale records on disk can
be recognized.
"""
from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

CAPSULE_VERSION = "1.0"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _lines(v: Any) -> Tuple[int, int]:
    if isinstance(v, (list, tuple)) and len(v) == 2:
        return int(v[0]), int(v[1])
    return 1, 1


@dataclass
class Evidence:
    file: str
    lines: Tuple[int, int]
    sha256: str

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "lines": [self.lines[0], self.lines[1]], "sha256": self.sha256}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Evidence":
        return cls(file=str(d.get("file") or ""), lines=_lines(d.get("lines")), sha256=str(d.get("sha256") or ""))


@dataclass
class ApiSymbol:
    name: str
    kind: str
    signature: str = ""
    evidence: List[str] = field(default_factory=list)
    exported: bool = True
    doc: Optional[str] = None


@dataclass
class OutDependency:
    module: str
    count: int = 1
    evidence: List[str] = field(default_factory=list)
    is_relative: bool = False


@dataclass
class InDependency:
    file: str
    line: int
    evidence: List[str] = field(default_factory=list)


@dataclass
class Dependencies:
    out: List[OutDependency] = field(default_factory=list)
    in_sample: List[InDependency] = field(default_factory=list)


@dataclass
class Fact:
    id: str
    text: str
    evidence: List[str] = field(default_factory=list)


@dataclass
class Inference:
    id: str
    text: str
    confidence: float = 0.5
    evidence: List[str] = field(default_factory=list)


@dataclass
class Recommendation:
    id: str
    text: str
    reason: str = ""
    evidence: List[str] = field(default_factory=list)
    priority: str = "medium"


@dataclass
class Capsule:
    file: str
    language: str
    content_hash: str
    summary: Dict[str, str] = field(default_factory=dict)
    api: List[ApiSymbol] = field(default_factory=list)
    deps: Dependencies = field(default_factory=Dependencies)
    facts: List[Fact] = field(default_factory=list)
    inferences: List[Inference] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)
    evidence: Dict[str, Evidence] = field(default_factory=dict)
    stale: bool = False
    last_verified_at: str = field(default_factory=now_iso)
    enriched_at: Optional[str] = None
    version: str = CAPSULE_VERSION

    @property
    def is_enriched(self) -> bool:
        return self.enriched_at is not None

    def copy(self) -> "Capsule":
        return copy.deepcopy(self)

    def with_file(self, file: str) -> "Capsule":
        """Deep copy relabeled to another path; identity (content_hash) is unchanged."""
        out = self.copy()
        out.file = file
        return out

    def structural_summary(self) -> Dict[str, Any]:
        return {
            "api_count": len(self.api),
            "api_summary": [f"{a.kind} {a.name}" for a in self.api[:20]],
            "deps_count": len(self.deps.out),
            "deps_summary": [d.module for d in self.deps.out[:20]],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "file": self.file,
            "language": self.language,
            "content_hash": self.content_hash,
            "summary": dict(self.summary),
            "api": [asdict(a) for a in self.api],
            "deps": {
                "out": [asdict(d) for d in self.deps.out],
                "in_sample": [asdict(d) for d in self.deps.in_sample],
            },
            "facts": [asdict(f) for f in self.facts],
            "inferences": [asdict(i) for i in self.inferences],
            "recommendations": [asdict(r) for r in self.recommendations],
            "evidence": {k: v.to_dict() for k, v in self.evidence.items()},
            "stale": self.stale,
            "last_verified_at": self.last_verified_at,
            "enriched_at": self.enriched_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Capsule":
        deps = d.get("deps") or {}
        return cls(
            version=str(d.get("version") or ""),
            file=str(d.get("file") or ""),
            language=str(d.get("language") or "other"),
            content_hash=str(d.get("content_hash") or ""),
            summary={str(k): str(v) for k, v in (d.get("summary") or {}).items()},
            api=[ApiSymbol(**a) for a in d.get("api") or []],
            deps=Dependencies(
                out=[OutDependency(**o) for o in deps.get("out") or []],
                in_sample=[InDependency(**i) for i in deps.get("in_sample") or []],
            ),
            facts=[Fact(**f) for f in d.get("facts") or []],
            inferences=[Inference(**i) for i in d.get("inferences") or []],
            recommendations=[Recommendation(**r) for r in d.get("recommendations") or []],
            evidence={str(k): Evidence.from_dict(v) for k, v in (d.get("evidence") or {}).items()},
            stale=bool(d.get("stale", False)),
            last_verified_at=str(d.get("last_verified_at") or ""),
            enriched_at=d.get("enriched_at"),
        )


@dataclass
class StaticResult:
    """What a StaticAnalyzer returns for one file."""

    content_hash: str
    language: str
    api: List[ApiSymbol] = field(default_factory=list)
    deps: Dependencies = field(default_factory=Dependencies)
    evidence: Dict[str, Evidence] = field(default_factory=dict)
    doc: str = ""


@dataclass
class EnrichmentInput:
    file_path: str
    language: str
    content: str
    static_analysis: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EnrichmentResult:
    summary: Dict[str, str] = field(default_factory=dict)
    inferences: List[Inference] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)


@dataclass(frozen=True)
class AnalysisOptions:
    force: bool = False
    include_ai: bool = True
    deep_deps: bool = False
