# capsules/config.py
from __future__ import annotations
"""
Configuration loader for the capsule analysis pipeline.

Environment variables:

# Enrichment provider (OpenAI-compatible)
- OPENAI_API_KEY=...                 # read from the env var named by llm.api_key_env
- OPENAI_BASE_URL=...                # optional, for custom/proxy base URL
- CAPSULES_MODEL=gpt-4o-mini         # default enrichment model
- CAPSULES_TEMP=0.3
- CAPSULES_MAX_TOKENS=2000

# Enrichment (Phase B)
- CAPSULES_ENABLE_AI=1               # set 0 to disable enrichment entirely
- CAPSULES_ENRICH_TIMEOUT_SEC=30
- CAPSULES_ENRICH_MAX_ATTEMPTS=3

# Cache / batch
- CAPSULES_CACHE_DIR=...             # durable tier directory
- CAPSULES_CACHE_MAX_ENTRIES=...     # optional LRU bound for the memory tier
- CAPSULES_STATIC_CONCURRENCY=...
- CAPSULES_ENRICH_CONCURRENCY=3

Notes:
- Secrets are never written to config.json; only the *name* of the key env var is.
- A project file `.capsules/config.json` is deep-merged over the defaults, then env
  overrides are applied, then the result is soft-validated against CONFIG_SCHEMA.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import jsonschema
from dotenv import load_dotenv

CONFIG_DIR_NAME = ".capsules"
CONFIG_FILE_NAME = "config.json"


def load_env_variables() -> None:
    """Load a local .env if present (non-destructive)."""
    load_dotenv(override=False)


def _env_int(name: str, default: Optional[int], min_value: int | None = None) -> Optional[int]:
    val = os.getenv(name)
    if val is None or not str(val).strip():
        return default
    try:
        ival = int(val)
    except ValueError:
        return default
    if min_value is not None and ival < min_value:
        return default
    return ival


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or not str(val).strip():
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    """Read an environment variable as a boolean.

    Accepts (case-insensitive): '1','true','yes','on' -> True; '0','false','no','off' -> False.
    Unset or unrecognized values return the provided default.
    """
    val = os.getenv(name)
    if val is None:
        return default
    v = str(val).strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


# ---------- Defaults ----------

DEFAULT_CONFIG: Dict[str, Any] = {
    "llm": {
        "model": "gpt-4o-mini",
        "temperature": 0.3,
        "max_output_tokens": 2000,
        "base_url": None,
        # Which env var to read the key from (do NOT write secrets to config.json)
        "api_key_env": "OPENAI_API_KEY",
        # Raw content sent to the model is truncated to this many characters.
        "content_char_limit": 4000,
    },
    "enrichment": {
        "enabled": True,
        "timeout_sec": 30.0,
        "max_attempts": 3,
        "backoff_base_sec": 0.3,
        "backoff_multiplier": 1.5,
        "backoff_cap_sec": 10.0,
        "single_flight": True,
    },
    "cache": {
        "dir": f"{CONFIG_DIR_NAME}/cache/filecapsules",
        # None keeps the memory tier unbounded.
        "max_memory_entries": None,
    },
    "batch": {
        # None resolves to half the CPU count (at least 5) at run time.
        "static_concurrency": None,
        "enrich_concurrency": 3,
    },
    "analysis": {
        "inbound_sample_limit": 10,
        "inbound_scan_max_files": 2000,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 8787,
    },
}


CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "llm": {
            "type": "object",
            "properties": {
                "model": {"type": "string"},
                "temperature": {"type": "number"},
                "max_output_tokens": {"type": "integer"},
                "base_url": {"type": ["string", "null"]},
                "api_key_env": {"type": "string"},
                "content_char_limit": {"type": "integer", "minimum": 1},
            },
            "required": ["model", "api_key_env"],
        },
        "enrichment": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "timeout_sec": {"type": "number", "exclusiveMinimum": 0},
                "max_attempts": {"type": "integer", "minimum": 1},
                "backoff_base_sec": {"type": "number", "minimum": 0},
                "backoff_multiplier": {"type": "number", "minimum": 1},
                "backoff_cap_sec": {"type": "number", "minimum": 0},
                "single_flight": {"type": "boolean"},
            },
        },
        "cache": {
            "type": "object",
            "properties": {
                "dir": {"type": "string"},
                "max_memory_entries": {"type": ["integer", "null"], "minimum": 1},
            },
        },
        "batch": {
            "type": "object",
            "properties": {
                "static_concurrency": {"type": ["integer", "null"], "minimum": 1},
                "enrich_concurrency": {"type": "integer", "minimum": 1},
            },
        },
        "analysis": {"type": "object"},
        "server": {
            "type": "object",
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer"},
            },
        },
    },
    "additionalProperties": True,
}


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in b.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _validate(cfg: Dict[str, Any]) -> None:
    try:
        jsonschema.validate(cfg, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        logging.getLogger(__name__).warning("config schema validation failed: %s", e.message)


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    llm = cfg.setdefault("llm", {})
    if os.getenv("CAPSULES_MODEL"):
        llm["model"] = os.environ["CAPSULES_MODEL"].strip()
    llm["temperature"] = _env_float("CAPSULES_TEMP", float(llm.get("temperature", 0.3)))
    llm["max_output_tokens"] = _env_int("CAPSULES_MAX_TOKENS", llm.get("max_output_tokens"), min_value=1)
    if os.getenv("OPENAI_BASE_URL"):
        llm["base_url"] = os.environ["OPENAI_BASE_URL"].strip()
    if os.getenv("CAPSULES_API_KEY_ENV"):
        llm["api_key_env"] = os.environ["CAPSULES_API_KEY_ENV"].strip()

    enr = cfg.setdefault("enrichment", {})
    enr["enabled"] = _env_bool("CAPSULES_ENABLE_AI", bool(enr.get("enabled", True)))
    enr["timeout_sec"] = _env_float("CAPSULES_ENRICH_TIMEOUT_SEC", float(enr.get("timeout_sec", 30.0)))
    enr["max_attempts"] = _env_int("CAPSULES_ENRICH_MAX_ATTEMPTS", enr.get("max_attempts", 3), min_value=1)

    cache = cfg.setdefault("cache", {})
    if os.getenv("CAPSULES_CACHE_DIR"):
        cache["dir"] = os.environ["CAPSULES_CACHE_DIR"].strip()
    cache["max_memory_entries"] = _env_int("CAPSULES_CACHE_MAX_ENTRIES", cache.get("max_memory_entries"), min_value=1)

    batch = cfg.setdefault("batch", {})
    batch["static_concurrency"] = _env_int("CAPSULES_STATIC_CONCURRENCY", batch.get("static_concurrency"), min_value=1)
    batch["enrich_concurrency"] = _env_int("CAPSULES_ENRICH_CONCURRENCY", batch.get("enrich_concurrency", 3), min_value=1)


def load_project_config(project_root: Path, explicit_path: str | None = None) -> Tuple[Dict[str, Any], Path]:
    """
    Load `.capsules/config.json` if present, deep-merge onto defaults,
    then apply CAPSULES_* env overrides and soft-validate.
    Returns (config, path_used).
    """
    root = Path(project_root).resolve()
    path = Path(explicit_path).resolve() if explicit_path else (root / CONFIG_DIR_NAME / CONFIG_FILE_NAME)

    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logging.getLogger(__name__).warning("ignoring unreadable config %s: %s", path, e)
        else:
            if isinstance(data, dict):
                cfg = _deep_merge(cfg, data)

    _apply_env_overrides(cfg)
    _validate(cfg)
    return cfg, path


def save_default_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(DEFAULT_CONFIG, indent=2, ensure_ascii=False)
    path.write_text(text, encoding="utf-8")


def resolve_cache_dir(cfg: Dict[str, Any], project_root: Path) -> Path:
    raw = str((cfg.get("cache") or {}).get("dir") or DEFAULT_CONFIG["cache"]["dir"])
    p = Path(raw).expanduser()
    return p if p.is_absolute() else (Path(project_root).resolve() / p)


def resolve_api_key(cfg: Dict[str, Any]) -> Tuple[Optional[str], str]:
    """Return (api_key_or_None, env_var_name) for the configured provider."""
    env_name = str((cfg.get("llm") or {}).get("api_key_env") or "OPENAI_API_KEY")
    val = os.getenv(env_name)
    return (val.strip() if val and val.strip() else None), env_name


# Load .env early when this module is imported
load_env_variables()
