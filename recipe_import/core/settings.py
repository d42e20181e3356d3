from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from recipe_import.core.imports import imports_root


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime configuration sourced from the process environment."""

    imports_root: Path
    completion_ttl_seconds: float = 6 * 60 * 60
    status_broadcast_url: str | None = None
    status_broadcast_timeout: float = 10.0
    cors_origins: tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")
    log_level: str = "INFO"
    worker_concurrency: int = 5
    job_max_attempts: int = 3


def load_settings() -> Settings:
    origins_env = os.getenv("API_CORS_ORIGINS", "")
    origins = tuple(origin.strip() for origin in origins_env.split(",") if origin.strip())
    defaults = Settings(imports_root=imports_root())
    return Settings(
        imports_root=defaults.imports_root,
        completion_ttl_seconds=_env_float("COMPLETION_TTL_SECONDS", defaults.completion_ttl_seconds),
        status_broadcast_url=os.getenv("STATUS_BROADCAST_URL") or None,
        status_broadcast_timeout=_env_float("STATUS_BROADCAST_TIMEOUT", defaults.status_broadcast_timeout),
        cors_origins=origins or defaults.cors_origins,
        log_level=(os.getenv("LOG_LEVEL") or defaults.log_level).upper(),
        worker_concurrency=max(1, _env_int("WORKER_CONCURRENCY", defaults.worker_concurrency)),
        job_max_attempts=max(1, _env_int("JOB_MAX_ATTEMPTS", defaults.job_max_attempts)),
    )
