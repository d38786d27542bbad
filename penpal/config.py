"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REMOTE_BACKENDS = ("firestore", "memory")
DEFAULT_DB_PATH = Path("data") / "penpal_cache.sqlite3"


@dataclass(slots=True)
class Config:
    """Top-level sync layer configuration."""

    local_db_path: Path
    remote_backend: str
    firebase_credentials_json: Optional[Path]
    firebase_project_id: Optional[str]
    daily_swipe_limit: int
    match_cache_ttl_days: int
    cache_purge_interval_sec: int
    connectivity_probe_sec: int
    transaction_max_attempts: int


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        raise RuntimeError(f"Environment variable {name} is required")
    stripped = value.strip()
    if not stripped:
        raise RuntimeError(f"Environment variable {name} must not be empty")
    return stripped


def _optional_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    if not stripped:
        return default
    return stripped


def _parse_int_env(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer value") from None
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{name} must be greater than or equal to {minimum}")
    return value


def load_config(env_file: str | None = None) -> Config:
    """Load configuration from the provided .env file (or default location)."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    backend = (_optional_env("REMOTE_BACKEND", "firestore") or "firestore").lower()
    if backend not in REMOTE_BACKENDS:
        raise RuntimeError(f"REMOTE_BACKEND must be one of: {', '.join(REMOTE_BACKENDS)}")

    credentials_raw = _optional_env("FIREBASE_CREDENTIALS_JSON")
    credentials_path = Path(credentials_raw) if credentials_raw else None
    if backend == "firestore":
        project_id: Optional[str] = _require_env("FIREBASE_PROJECT_ID")
        if credentials_path is not None and not credentials_path.exists():
            raise RuntimeError(f"FIREBASE_CREDENTIALS_JSON file not found: {credentials_path}")
    else:
        project_id = _optional_env("FIREBASE_PROJECT_ID")

    db_raw = _optional_env("LOCAL_DB_PATH")
    local_db_path = Path(db_raw) if db_raw else DEFAULT_DB_PATH

    return Config(
        local_db_path=local_db_path,
        remote_backend=backend,
        firebase_credentials_json=credentials_path,
        firebase_project_id=project_id,
        daily_swipe_limit=_parse_int_env("DAILY_SWIPE_LIMIT", 40, minimum=0),
        match_cache_ttl_days=_parse_int_env("MATCH_CACHE_TTL_DAYS", 7, minimum=1),
        cache_purge_interval_sec=_parse_int_env("CACHE_PURGE_INTERVAL_SEC", 3600, minimum=1),
        connectivity_probe_sec=_parse_int_env("CONNECTIVITY_PROBE_SEC", 30, minimum=1),
        transaction_max_attempts=_parse_int_env("TRANSACTION_MAX_ATTEMPTS", 5, minimum=1),
    )


__all__ = ["Config", "DEFAULT_DB_PATH", "REMOTE_BACKENDS", "load_config"]
