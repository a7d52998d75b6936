# capsules/hashing.py
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Union

SNIPPET_HASH_LEN = 16


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes. This is the cache identity of a capsule."""
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def hash_file(path: Union[str, Path]) -> str:
    return content_hash(Path(path).read_bytes())


def snippet_hash(text: str) -> str:
    h = hashlib.sha256()
    h.update(text.encode("utf-8", errors="replace"))
    return h.hexdigest()[:SNIPPET_HASH_LEN]
