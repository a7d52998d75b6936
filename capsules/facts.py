# capsules/facts.py
"""Deterministic facts and the heuristic (pre-enrichment) summary for a capsule."""
from __future__ import annotations

import os
from collections import OrderedDict
from typing import Dict, List

from capsules.models import ApiSymbol, Fact, StaticResult

_KIND_ZH = {
    "function": "函数",
    "class": "类",
    "interface": "接口",
    "type": "类型别名",
    "enum": "枚举",
    "variable": "变量",
    "export": "导出项",
}


def _plural(n: int, word: str, plural: str = "") -> str:
    if n == 1:
        return f"{n} {word}"
    return f"{n} {plural or word + 's'}"


def _exported(api: List[ApiSymbol]) -> List[ApiSymbol]:
    return [a for a in api if a.exported]


def build_facts(static: StaticResult) -> List[Fact]:
    """Ordered fact list: exports, per-kind counts, dependencies, language."""
    facts: List[Fact] = []

    def add(text: str, evidence: List[str]) -> None:
        facts.append(Fact(id=f"f{len(facts) + 1}", text=text, evidence=evidence))

    exported = _exported(static.api)
    if exported:
        add(
            f"exports {_plural(len(exported), 'symbol')}",
            [ev for a in exported[:3] for ev in a.evidence],
        )
        by_kind: "OrderedDict[str, List[ApiSymbol]]" = OrderedDict()
        for a in exported:
            by_kind.setdefault(a.kind, []).append(a)
        for kind, items in by_kind.items():
            noun = _plural(len(items), kind, "classes" if kind == "class" else "")
            add(
                f"contains {noun}",
                [ev for a in items[:2] for ev in a.evidence],
            )

    out = static.deps.out
    if out:
        add(
            f"depends on {_plural(len(out), 'module')}",
            [ev for d in out[:3] for ev in d.evidence],
        )
        internal = [d for d in out if d.is_relative]
        external = [d for d in out if not d.is_relative]
        if internal:
            add(
                f"references {_plural(len(internal), 'internal module')}",
                [ev for d in internal[:2] for ev in d.evidence],
            )
        if external:
            add(
                f"references {_plural(len(external), 'external library', 'external libraries')}",
                [ev for d in external[:2] for ev in d.evidence],
            )

    add(f"language: {static.language}", [])
    return facts


def build_base_summary(file: str, static: StaticResult) -> Dict[str, str]:
    """Summary in ``en`` and ``zh`` built from structure alone."""
    api_count = len(static.api)
    deps_count = len(static.deps.out)
    lang = static.language
    base = os.path.basename(file)

    if api_count == 0 and deps_count == 0:
        en = f"{base} is a {lang} file with no detected exports or dependencies."
        zh = f"这是一个 {lang} 文件,暂未检测到导出符号或依赖关系。"
    else:
        kinds = list(OrderedDict.fromkeys(a.kind for a in static.api))
        en_parts = [f"{base} is a {lang} module"]
        zh_parts = [f"这是一个 {lang} 模块"]
        if api_count:
            en_parts.append(f"exporting {_plural(api_count, 'symbol')} ({', '.join(kinds)})")
            zh_parts.append(f"导出了 {api_count} 个符号({'、'.join(_KIND_ZH.get(k, k) for k in kinds)})")
        if deps_count:
            en_parts.append(f"with {_plural(deps_count, 'dependency', 'dependencies')}")
            zh_parts.append(f"依赖 {deps_count} 个外部模块")
        en = " ".join(en_parts) + "."
        zh = ",".join(zh_parts) + "。"

    if static.doc:
        en = f"{en} {static.doc}"
    return {"en": en, "zh": zh}
