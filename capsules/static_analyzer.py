# capsules/static_analyzer.py
"""
Static (Phase A) analysis: text -> exported symbols, outbound dependencies and
the evidence ledger that backs them.

The default ``RegexStaticAnalyzer`` understands TypeScript/JavaScript and Python
well enough for structural facts; other languages get dependency extraction
only. It is a pure function of the file bytes: no network, no caching.
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple, Union

from capsules.hashing import content_hash, snippet_hash
from capsules.logger import get_logger
from capsules.models import ApiSymbol, Dependencies, Evidence, InDependency, OutDependency, StaticResult

logger = get_logger("capsules.static_analyzer")

PathLike = Union[str, Path]


class StaticAnalyzer(Protocol):
    def analyze(self, path: PathLike) -> StaticResult:
        ...


# ---------- Language detection ----------

_LANG_BY_EXT: Tuple[Tuple[str, str], ...] = (
    (".py", "python"),
    (".pyi", "python"),
    (".ts", "typescript"),
    (".tsx", "typescript"),
    (".mts", "typescript"),
    (".cts", "typescript"),
    (".js", "javascript"),
    (".jsx", "javascript"),
    (".mjs", "javascript"),
    (".cjs", "javascript"),
    (".rs", "rust"),
    (".go", "go"),
    (".java", "java"),
    (".kt", "kotlin"),
    (".c", "c"),
    (".h", "c"),
    (".cpp", "cpp"),
    (".cc", "cpp"),
    (".hpp", "cpp"),
    (".cs", "csharp"),
    (".rb", "ruby"),
    (".php", "php"),
)


def detect_language(path: PathLike) -> str:
    low = str(path).lower()
    for ext, lang in _LANG_BY_EXT:
        if low.endswith(ext):
            return lang
    return "other"


# ---------- Extraction patterns ----------

_JS_EXPORT_RE = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
    r"(function\*?|class|interface|type|enum|const|let|var)\s+([A-Za-z_$][\w$]*)"
    r"(?:\s*(?:<[^>]*>)?\s*\(([^)]*)\))?"
)
_JS_NAMED_EXPORTS_RE = re.compile(r"^\s*export\s*\{\s*([^}]+)\s*\}")
_JS_IMPORT_FROM_RE = re.compile(r"""\bfrom\s+["']([^"']+)["']""")
_JS_IMPORT_BARE_RE = re.compile(r"""^\s*import\s+["']([^"']+)["']""")
_JS_REQUIRE_RE = re.compile(r"""\b(?:require|import)\(\s*["']([^"']+)["']\s*\)""")

_PY_DEF_RE = re.compile(r"^(async\s+def|def)\s+([A-Za-z_][A-Za-z0-9_]*)\s*\(([^)]*)\)?")
_PY_CLASS_RE = re.compile(r"^class\s+([A-Za-z_][A-Za-z0-9_]*)\s*(\([^)]*\))?")
_PY_IMPORT_RE = re.compile(r"^\s*import\s+([A-Za-z0-9_.]+(?:\s*,\s*[A-Za-z0-9_.]+)*)")
_PY_FROM_RE = re.compile(r"^\s*from\s+(\.*[A-Za-z0-9_.]*)\s+import\b")
_PY_DOC_RE = re.compile(r'^\s*[rRuU]?("""|\'\'\')(.*?)(\1|$)')

_GENERIC_IMPORT_RES = (
    re.compile(r'^\s*#\s*include\s*[<"]([^>"]+)[>"]'),
    re.compile(r"^\s*using\s+([A-Za-z0-9_.]+)\s*;"),
    re.compile(r"^\s*import\s+([A-Za-z0-9_.]+)\s*;"),
    re.compile(r'^\s*import\s+"([^"]+)"'),
    re.compile(r"^\s*use\s+([A-Za-z0-9_:]+)"),
    re.compile(r"""(?:require|include|require_once|include_once)\(?\s*["']([^"']+)["']"""),
)

_JS_KIND = {
    "function": "function",
    "function*": "function",
    "class": "class",
    "interface": "interface",
    "type": "type",
    "enum": "enum",
    "const": "variable",
    "let": "variable",
    "var": "variable",
}

_MAX_EVIDENCE_PER_DEP = 5


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _first_docblock_or_comment(text: str, language: str) -> str:
    if language == "python":
        m = re.search(r'^\s*(?:#[^\n]*\n\s*)*[rRuU]?"""(.*?)"""', text, re.S) or re.search(
            r"^\s*(?:#[^\n]*\n\s*)*[rRuU]?'''(.*?)'''", text, re.S
        )
        if m:
            return re.sub(r"\s+", " ", m.group(1)).strip()[:240]
        return ""
    m = re.match(r"\s*/\*\*?\s*(.*?)\s*\*/", text, re.S)
    if m:
        body = re.sub(r"^\s*\*\s?", "", m.group(1), flags=re.M)
        return re.sub(r"\s+", " ", body).strip()[:240]
    return ""


class _Ledger:
    """Per-call evidence allocator: ids ``ev1..evN`` in extraction order."""

    def __init__(self, file: str, lines: List[str]) -> None:
        self.file = file
        self.lines = lines
        self.entries: Dict[str, Evidence] = {}

    def cite(self, start: int, end: Optional[int] = None) -> str:
        end = end or start
        ev_id = f"ev{len(self.entries) + 1}"
        snippet = "\n".join(self.lines[start - 1 : end])
        self.entries[ev_id] = Evidence(file=self.file, lines=(start, end), sha256=snippet_hash(snippet))
        return ev_id


class _DepCollector:
    def __init__(self, ledger: _Ledger) -> None:
        self.ledger = ledger
        self._deps: Dict[str, OutDependency] = {}

    def add(self, module: str, line_no: int) -> None:
        module = module.strip()
        if not module:
            return
        dep = self._deps.get(module)
        if dep is None:
            dep = OutDependency(module=module, count=0, is_relative=module.startswith("."))
            self._deps[module] = dep
        dep.count += 1
        if len(dep.evidence) < _MAX_EVIDENCE_PER_DEP:
            dep.evidence.append(self.ledger.cite(line_no))

    def result(self) -> List[OutDependency]:
        return list(self._deps.values())


def _python_doc_after(lines: List[str], idx: int) -> Optional[str]:
    """Docstring on the line(s) following a def/class header at ``idx`` (0-based)."""
    j = idx + 1
    while j < len(lines) and not lines[j].strip():
        j += 1
    if j >= len(lines):
        return None
    m = _PY_DOC_RE.match(lines[j])
    if not m:
        return None
    doc = m.group(2).strip()
    return doc[:200] or None


def _extract_js(lines: List[str], ledger: _Ledger) -> Tuple[List[ApiSymbol], List[OutDependency]]:
    api: List[ApiSymbol] = []
    deps = _DepCollector(ledger)
    for n, line in enumerate(lines, start=1):
        m = _JS_EXPORT_RE.match(line)
        if m:
            keyword, name, params = m.group(1), m.group(2), m.group(3)
            kind = _JS_KIND.get(keyword, "variable")
            if kind == "function":
                signature = f"function {name}({(params or '').strip()})"
            elif kind == "variable":
                signature = f"{keyword} {name}"
            else:
                signature = f"{kind} {name}"
            api.append(ApiSymbol(name=name, kind=kind, signature=signature, evidence=[ledger.cite(n)]))
        else:
            m = _JS_NAMED_EXPORTS_RE.match(line)
            if m:
                ev = ledger.cite(n)
                for part in m.group(1).split(","):
                    part = part.strip()
                    if not part:
                        continue
                    alias = part.split(" as ")[-1].strip()
                    api.append(ApiSymbol(name=alias, kind="export", signature=f"export {{ {part} }}", evidence=[ev]))

        for rx in (_JS_IMPORT_FROM_RE, _JS_IMPORT_BARE_RE, _JS_REQUIRE_RE):
            for dm in rx.finditer(line):
                deps.add(dm.group(1), n)
    return api, deps.result()


def _extract_python(lines: List[str], ledger: _Ledger) -> Tuple[List[ApiSymbol], List[OutDependency]]:
    api: List[ApiSymbol] = []
    deps = _DepCollector(ledger)
    for idx, line in enumerate(lines):
        n = idx + 1
        m = _PY_DEF_RE.match(line)
        if m:
            name = m.group(2)
            prefix = "async def" if m.group(1).startswith("async") else "def"
            api.append(
                ApiSymbol(
                    name=name,
                    kind="function",
                    signature=f"{prefix} {name}({(m.group(3) or '').strip()})",
                    evidence=[ledger.cite(n)],
                    exported=not name.startswith("_"),
                    doc=_python_doc_after(lines, idx),
                )
            )
            continue
        m = _PY_CLASS_RE.match(line)
        if m:
            name = m.group(1)
            api.append(
                ApiSymbol(
                    name=name,
                    kind="class",
                    signature=f"class {name}{m.group(2) or ''}",
                    evidence=[ledger.cite(n)],
                    exported=not name.startswith("_"),
                    doc=_python_doc_after(lines, idx),
                )
            )
            continue

        m = _PY_FROM_RE.match(line)
        if m:
            deps.add(m.group(1), n)
            continue
        m = _PY_IMPORT_RE.match(line)
        if m:
            for mod in m.group(1).split(","):
                deps.add(mod.strip(), n)
    return api, deps.result()


def _extract_generic(lines: List[str], ledger: _Ledger) -> Tuple[List[ApiSymbol], List[OutDependency]]:
    deps = _DepCollector(ledger)
    for n, line in enumerate(lines, start=1):
        for rx in _GENERIC_IMPORT_RES:
            m = rx.search(line)
            if m:
                deps.add(m.group(1), n)
                break
    return [], deps.result()


class RegexStaticAnalyzer:
    """Default StaticAnalyzer. Deterministic for identical bytes and path.

    The language tag comes from the path extension, so byte-identical files with
    different extensions share one capsule tagged with the language of whichever
    path was analyzed first for that content.
    """

    def analyze(self, path: PathLike) -> StaticResult:
        p = Path(path)
        raw = p.read_bytes()
        return self.analyze_bytes(raw, str(p))

    def analyze_bytes(self, raw: bytes, file: str) -> StaticResult:
        language = detect_language(file)
        text = _normalize_newlines(raw.decode("utf-8", errors="replace"))
        lines = text.split("\n")
        ledger = _Ledger(file, lines)

        if language in ("typescript", "javascript"):
            api, out = _extract_js(lines, ledger)
        elif language == "python":
            api, out = _extract_python(lines, ledger)
        else:
            api, out = _extract_generic(lines, ledger)

        return StaticResult(
            content_hash=content_hash(raw),
            language=language,
            api=api,
            deps=Dependencies(out=out, in_sample=[]),
            evidence=ledger.entries,
            doc=_first_docblock_or_comment(text, language),
        )


# ---------- Inbound reference sampling (best effort) ----------

_SKIP_DIRS = {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".capsules", "dist", "build"}
_JS_RESOLVE_EXTS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts")


def _iter_source_files(root: Path, max_files: int) -> Iterable[Path]:
    seen = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for name in sorted(filenames):
            if detect_language(name) == "other":
                continue
            yield Path(dirpath) / name
            seen += 1
            if seen >= max_files:
                return


def _python_module_name(root: Path, target: Path) -> Optional[str]:
    try:
        rel = target.resolve().relative_to(root.resolve())
    except ValueError:
        return None
    parts = list(rel.with_suffix("").parts)
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts) or None


def _js_specifier_hits(importer: Path, spec: str, target_noext: Path) -> bool:
    if not spec.startswith("."):
        return False
    cand = (importer.parent / spec).resolve()
    if cand == target_noext:
        return True
    if cand.suffix in _JS_RESOLVE_EXTS and cand.with_suffix("") == target_noext:
        return True
    return cand / "index" == target_noext


def sample_inbound(
    root: PathLike,
    target: PathLike,
    *,
    limit: int = 10,
    max_files: int = 2000,
) -> List[InDependency]:
    """Find up to ``limit`` files under ``root`` that import ``target``.

    Ordered by path then line; scanning stops after ``max_files`` candidates.
    """
    root_p = Path(root).resolve()
    target_p = Path(target).resolve()
    language = detect_language(target_p)
    target_noext = target_p.with_suffix("")
    py_mod = _python_module_name(root_p, target_p) if language == "python" else None

    found: List[InDependency] = []
    for f in _iter_source_files(root_p, max_files):
        if f.resolve() == target_p:
            continue
        try:
            text = _normalize_newlines(f.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            logger.debug("inbound scan skipped unreadable file", ctx={"path": str(f), "err": str(e)})
            continue
        lang = detect_language(f)
        for n, line in enumerate(text.split("\n"), start=1):
            hit = False
            if language in ("typescript", "javascript") and lang in ("typescript", "javascript"):
                for rx in (_JS_IMPORT_FROM_RE, _JS_IMPORT_BARE_RE, _JS_REQUIRE_RE):
                    if any(_js_specifier_hits(f, m.group(1), target_noext) for m in rx.finditer(line)):
                        hit = True
                        break
            elif py_mod and lang == "python":
                m = _PY_FROM_RE.match(line)
                if m and m.group(1) == py_mod:
                    hit = True
                else:
                    m = _PY_IMPORT_RE.match(line)
                    if m and py_mod in [s.strip() for s in m.group(1).split(",")]:
                        hit = True
            if hit:
                found.append(InDependency(file=str(f), line=n, evidence=[]))
                if len(found) >= limit:
                    return found
    return found
