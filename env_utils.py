"""Environment helpers for tradesync (loads .env + typed accessors)."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterable, Optional

from dotenv import load_dotenv


# Load .env early for any module importing env_utils.
load_dotenv(Path(__file__).parent / ".env")


def _env_lookup(name: str) -> Optional[str]:
    return os.getenv(name)


def env_present(name: str) -> bool:
    value = _env_lookup(name)
    return value is not None and str(value).strip() != ""


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    if not env_present(name):
        return default
    return str(_env_lookup(name) or "").strip()


def env_float(name: str, default: float) -> float:
    if not env_present(name):
        return default
    try:
        return float(str(_env_lookup(name) or "").strip())
    except (TypeError, ValueError):
        return default


def env_json(name: str, default: Any) -> Any:
    if not env_present(name):
        return default
    raw = str(_env_lookup(name) or "").strip()
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def env_list(name: str, default: Iterable[str]) -> list:
    if not env_present(name):
        return list(default)
    raw = str(_env_lookup(name) or "").strip()
    if not raw:
        return list(default)
    if raw.startswith("["):
        parsed = env_json(name, list(default))
        return list(parsed) if isinstance(parsed, list) else list(default)
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts if parts else list(default)


def join_url(base_url: Optional[str], path: str) -> str:
    base = (str(base_url or "").strip().rstrip("/"))
    if not base:
        return ""
    if not path:
        return base
    if not path.startswith("/"):
        path = "/" + path
    return f"{base}{path}"


TRADESYNC_ROOT = str(Path(__file__).resolve().parent)
TRADESYNC_CONFIG_FILE = env_str(
    "TRADESYNC_CONFIG_FILE", str(Path(TRADESYNC_ROOT) / "tradesync.yaml")
)
