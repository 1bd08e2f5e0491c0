from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# SQLite file in the project root unless CLINIC_DATABASE_URL says otherwise
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "clinic.sqlite"
DEFAULT_DATABASE_URL = f"sqlite:///{DEFAULT_DB_PATH}"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    echo_sql: bool = False
    busy_timeout: float = 5.0
    audit_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("CLINIC_DATABASE_URL", DEFAULT_DATABASE_URL),
            echo_sql=_env_bool("CLINIC_SQL_ECHO", False),
            busy_timeout=float(os.getenv("CLINIC_DB_BUSY_TIMEOUT", "5")),
            audit_enabled=_env_bool("CLINIC_AUDIT_ENABLED", True),
            log_level=os.getenv("CLINIC_LOG_LEVEL", "INFO").upper(),
        )


def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str | None = None) -> None:
    """
    Console logging for scripts and services embedding the store.
    The root handler is added only when none exists; the clinic_store level always follows settings.
    """
    level = (level or get_settings().log_level).upper()
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("clinic_store").setLevel(level)
