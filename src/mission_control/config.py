# src/mission_control/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time.
- Every component receives settings explicitly; tests pass their own object.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

ENV_PREFIX = "MC"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv() -> None:
    """Load .env from the working directory; real environment variables win."""
    load_dotenv(find_dotenv(usecwd=True), override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


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

    # ---- HTTP ----
    host: str
    port: int

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path

    # ---- Archive scheduler ----
    archive_enabled: bool
    archive_delay_hours: float
    archive_interval_seconds: float
    archive_batch_limit: int

    # ---- Notification fan-out ----
    channel_queue_size: int

    # ---- Agent activity thresholds ----
    agent_active_minutes: int
    agent_idle_minutes: int

    @property
    def archive_retention_seconds(self) -> float:
        return self.archive_delay_hours * 3600.0

    @staticmethod
    def from_env() -> "Settings":
        _load_dotenv()

        app_name = _env(_k("APP_NAME"), "mission-control") or "mission-control"
        log_level = _env(_k("LOG_LEVEL"), "INFO").strip().upper() or "INFO"

        host = _env(_k("HOST"), "127.0.0.1")
        port = _env_int(_k("PORT"), 8000)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/mission_control"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "mission_control.sqlite3")

        archive_enabled = _env_bool(_k("ARCHIVE_ENABLED"), True)
        archive_delay_hours = max(0.0, _env_float(_k("ARCHIVE_DELAY_HOURS"), 24.0))
        archive_interval_seconds = max(1.0, _env_float(_k("ARCHIVE_INTERVAL_SECONDS"), 300.0))
        archive_batch_limit = max(1, _env_int(_k("ARCHIVE_BATCH_LIMIT"), 200))

        channel_queue_size = max(1, _env_int(_k("CHANNEL_QUEUE_SIZE"), 256))

        agent_active_minutes = max(1, _env_int(_k("AGENT_ACTIVE_MINUTES"), 5))
        agent_idle_minutes = max(agent_active_minutes, _env_int(_k("AGENT_IDLE_MINUTES"), 30))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            host=host,
            port=port,
            data_dir=data_dir,
            db_path=db_path,
            archive_enabled=archive_enabled,
            archive_delay_hours=archive_delay_hours,
            archive_interval_seconds=archive_interval_seconds,
            archive_batch_limit=archive_batch_limit,
            channel_queue_size=channel_queue_size,
            agent_active_minutes=agent_active_minutes,
            agent_idle_minutes=agent_idle_minutes,
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
