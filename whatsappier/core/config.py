"""Runtime settings read from the environment."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class EngineSettings:
    """Configuration for the ingestion pipeline and its collaborators."""

    database_url: str | None = None
    db_connect_timeout_seconds: int = 5
    db_statement_timeout_ms: int = 5000
    redis_url: str | None = None
    worker_max_threads: int = 8
    worker_max_pending: int = 1000
    dedup_window_seconds: int = 600
    dispatch_max_attempts: int = 3
    dispatch_backoff_base_seconds: float = 1.0
    dispatch_backoff_max_seconds: float = 30.0
    http_timeout_seconds: float = 10.0
    reply_sweep_interval_seconds: float = 60.0
    reply_grace_seconds: int = 3600
    delayed_poll_interval_seconds: float = 5.0
    lightfunnels_api_url: str = "https://api.lightfunnels.com"
    google_sheets_api_url: str = "https://sheets.googleapis.com/v4"
    evolution_api_url: str | None = None
    evolution_api_key: str | None = None
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Load settings from ``.env`` and the process environment."""

    load_dotenv()
    return EngineSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        db_connect_timeout_seconds=_int_env("DB_CONNECT_TIMEOUT_SECONDS", 5),
        db_statement_timeout_ms=_int_env("DB_STATEMENT_TIMEOUT_MS", 5000),
        redis_url=os.getenv("REDIS_URL") or None,
        worker_max_threads=max(1, _int_env("WORKER_MAX_THREADS", 8)),
        worker_max_pending=max(1, _int_env("WORKER_MAX_PENDING", 1000)),
        dedup_window_seconds=max(1, _int_env("DEDUP_WINDOW_SECONDS", 600)),
        dispatch_max_attempts=max(1, _int_env("DISPATCH_MAX_ATTEMPTS", 3)),
        dispatch_backoff_base_seconds=_float_env("DISPATCH_BACKOFF_BASE_SECONDS", 1.0),
        dispatch_backoff_max_seconds=_float_env("DISPATCH_BACKOFF_MAX_SECONDS", 30.0),
        http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 10.0),
        reply_sweep_interval_seconds=_float_env("REPLY_SWEEP_INTERVAL_SECONDS", 60.0),
        reply_grace_seconds=_int_env("REPLY_GRACE_SECONDS", 3600),
        delayed_poll_interval_seconds=_float_env("DELAYED_POLL_INTERVAL_SECONDS", 5.0),
        lightfunnels_api_url=os.getenv("LF_URL", "https://api.lightfunnels.com").rstrip("/"),
        google_sheets_api_url=os.getenv(
            "GOOGLE_SHEETS_API_URL", "https://sheets.googleapis.com/v4"
        ).rstrip("/"),
        evolution_api_url=os.getenv("EVOLUTION_API_URL") or None,
        evolution_api_key=os.getenv("EVOLUTION_API_KEY") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
