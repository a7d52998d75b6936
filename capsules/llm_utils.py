# capsules/llm_utils.py
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


def extract_json_block(text: str) -> str:
    """
    Best-effort extraction of the JSON-looking region from a model response.

    - Prefers ```json``` fenced blocks.
    - Otherwise, finds the first '[' or '{' and returns from there.
    """
    if not text:
        return ""
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, flags=re.S)
    if fenced:
        return fenced.group(1).strip()
    start = None
    for i, ch in enumerate(text):
        if ch in "[{":
            start = i
            break
    return text[start:].strip() if start is not None else text.strip()


@dataclass(frozen=True)
class ParseError:
    """Deterministic, user-displayable parse failure for model JSON output."""

    message: str
    offset: Optional[int]
    snippet: str
    raw_block: str
    suggestion: str

    def context(self) -> Dict[str, Any]:
        """Fields worth attaching to a logged error (the raw block is left out)."""
        return {"offset": self.offset, "snippet": self.snippet, "suggestion": self.suggestion}


def _trim_to_balanced_json(block: str) -> str:
    """Trim a candidate JSON block to the first balanced top-level object/array.

    Handles models that append commentary after valid JSON. Returns the block
    unchanged when no balanced end is found.
    """
    if not block:
        return block

    start = None
    for i, ch in enumerate(block):
        if ch in "[{":
            start = i
            break
    if start is None:
        return block

    depth = 0
    in_str = False
    escape = False
    for j in range(start, len(block)):
        ch = block[j]
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "[{":
            depth += 1
        elif ch in "]}":
            depth -= 1
            if depth == 0:
                return block[start : j + 1].strip()
            if depth < 0:
                break
    return block.strip()


def _make_snippet(raw_block: str, offset: Optional[int], radius: int = 40) -> str:
    """Window of the block around ``offset`` with a caret line under the failure."""
    if not raw_block:
        return ""
    if offset is None:
        return raw_block[: radius * 2] + ("…" if len(raw_block) > radius * 2 else "")

    off = max(0, min(int(offset), len(raw_block) - 1))
    lo, hi = max(0, off - radius), min(len(raw_block), off + radius)
    window = ("…" if lo else "") + raw_block[lo:hi] + ("…" if hi < len(raw_block) else "")
    return window + "\n" + " " * (off - lo + (1 if lo else 0)) + "^"


def parse_json_object(text: str) -> Union[Dict[str, Any], ParseError]:
    """Parse model output into a JSON object or return a ParseError. Never raises."""
    trimmed = _trim_to_balanced_json(extract_json_block(text))
    try:
        data = json.loads(trimmed)
    except json.JSONDecodeError as e:
        err = ParseError(
            message="Invalid JSON in model output.",
            offset=e.pos,
            snippet=_make_snippet(trimmed, e.pos),
            raw_block=trimmed,
            suggestion="Ensure output is strict JSON only (no trailing text) with a single top-level object.",
        )
        logging.debug("ParseError while parsing model JSON (offset=%s, msg=%s)", err.offset, e.msg)
        return err

    if isinstance(data, dict):
        return data
    return ParseError(
        message="Expected a top-level JSON object.",
        offset=None,
        snippet=_make_snippet(trimmed, None),
        raw_block=trimmed,
        suggestion="Return a single JSON object with summary, inferences and recommendations.",
    )
