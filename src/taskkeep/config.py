# src/taskkeep/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Tolerant parsing: a malformed value falls back to its default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "TASKKEEP"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv_if_available() -> None:
    """Load .env locally if python-dotenv is installed. Safe no-op otherwise."""
    try:
        from dotenv import load_dotenv  # type: ignore
    except Exception:
        return
    load_dotenv(override=False)


_load_dotenv_if_available()


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    kv_db_path: Path

    # ---- Persistence ----
    storage_key: str
    storage_capacity_bytes: int
    cache_ttl_seconds: float
    write_debounce_ms: int
    retention_days: int

    # ---- Sync / remote ----
    sync_enabled: bool
    remote_base_url: str
    remote_api_token: str | None
    sync_interval_seconds: float
    sync_max_attempts: int
    remote_connect_timeout_seconds: float
    remote_read_timeout_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskkeep") or "taskkeep"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskkeep"))
        kv_db_path = _env_path(_k("KV_DB_PATH"), data_dir / "storage.sqlite3")

        storage_key = _env(_k("STORAGE_KEY"), "taskkeep.tasks") or "taskkeep.tasks"
        storage_capacity_bytes = _env_int(_k("STORAGE_CAPACITY_BYTES"), 5 * 1024 * 1024)
        cache_ttl_seconds = _env_float(_k("CACHE_TTL_SECONDS"), 5.0)
        write_debounce_ms = _env_int(_k("WRITE_DEBOUNCE_MS"), 100)
        retention_days = _env_int(_k("RETENTION_DAYS"), 30)

        remote_base_url = (_first_env(_k("REMOTE_BASE_URL"), default="") or "").strip()
        remote_api_token = _first_env(_k("REMOTE_API_TOKEN"), default=None)
        # Sync defaults to on only when there is somewhere to sync to.
        sync_enabled = _env_bool(_k("SYNC_ENABLED"), bool(remote_base_url))

        sync_interval_seconds = _env_float(_k("SYNC_INTERVAL_SECONDS"), 30.0)
        sync_max_attempts = _env_int(_k("SYNC_MAX_ATTEMPTS"), 3)
        remote_connect_timeout_seconds = _env_float(_k("REMOTE_CONNECT_TIMEOUT_SECONDS"), 5.0)
        remote_read_timeout_seconds = _env_float(_k("REMOTE_READ_TIMEOUT_SECONDS"), 15.0)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            kv_db_path=kv_db_path,
            storage_key=storage_key,
            storage_capacity_bytes=storage_capacity_bytes,
            cache_ttl_seconds=cache_ttl_seconds,
            write_debounce_ms=write_debounce_ms,
            retention_days=retention_days,
            sync_enabled=sync_enabled,
            remote_base_url=remote_base_url,
            remote_api_token=remote_api_token,
            sync_interval_seconds=sync_interval_seconds,
            sync_max_attempts=sync_max_attempts,
            remote_connect_timeout_seconds=remote_connect_timeout_seconds,
            remote_read_timeout_seconds=remote_read_timeout_seconds,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
