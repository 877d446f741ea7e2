from __future__ import annotations

import logging.config
import os
from pathlib import Path
from typing import Any, Dict, Optional

from zoneinfo import ZoneInfo

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "BillTrack"
    environment: str = "development"
    host: str = os.getenv("BT_HOST", "127.0.0.1")
    port: int = int(os.getenv("BT_PORT", "8080"))

    storage_backend: str = os.getenv("BT_STORAGE", "sqlite")
    sqlite_path: Path = Path(os.getenv("BT_SQLITE_PATH", "./data/billtrack.db"))
    sqlite_busy_timeout_ms: int = int(os.getenv("BT_SQLITE_BUSY_TIMEOUT_MS", "5000"))
    export_dir: Path = Path(os.getenv("BT_EXPORT_DIR", "./data/exports"))

    timezone: str = os.getenv("TZ", "UTC")
    currency: str = os.getenv("BT_CURRENCY", "USD")

    log_level: str = os.getenv("BT_LOG_LEVEL", "INFO")
    log_file: Optional[Path] = Path(os.environ["BT_LOG_FILE"]) if os.getenv("BT_LOG_FILE") else None

    # Identity is resolved upstream; these headers carry the authenticated user and organization.
    user_header: str = os.getenv("BT_USER_HEADER", "X-User-Id")
    org_header: str = os.getenv("BT_ORG_HEADER", "X-Org-Id")

    idle_threshold_seconds: int = int(os.getenv("BT_IDLE_THRESHOLD", "300"))
    offline_threshold_seconds: int = int(os.getenv("BT_OFFLINE_THRESHOLD", "1800"))
    clock_skew_tolerance_ms: int = int(os.getenv("BT_CLOCK_SKEW_MS", "5000"))

    append_retries: int = Field(default=int(os.getenv("BT_APPEND_RETRIES", "3")), ge=1)
    event_page_size: int = Field(default=int(os.getenv("BT_EVENT_PAGE_SIZE", "200")), ge=1)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return str(value or "INFO").upper()


def build_logging_config(base_settings: Settings) -> Dict[str, Any]:
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "level": base_settings.log_level,
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    }
    if base_settings.log_file is not None:
        handlers["main_file"] = {
            "level": base_settings.log_level,
            "class": "logging.handlers.RotatingFileHandler",
            "filename": str(base_settings.log_file),
            "formatter": "verbose",
            "encoding": "utf-8",
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
        }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "verbose": {
                "format": "%(levelname)s %(asctime)s %(name)s %(process)d %(thread)d %(message)s",
            },
            "simple": {
                "format": "%(levelname)s %(message)s",
            },
        },
        "handlers": handlers,
        "loggers": {
            "billtrack": {
                "handlers": list(handlers),
                "level": base_settings.log_level,
                "propagate": False,
            },
        },
    }


def configure_logging(base_settings: Settings) -> None:
    if base_settings.log_file is not None:
        base_settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config(base_settings))


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
settings.export_dir.mkdir(parents=True, exist_ok=True)

LOCAL_TZ = ZoneInfo(settings.timezone)
