"""
Runtime configuration for X Digest.

Settings are built once at startup (from a JSON file, the environment, or
both) and passed explicitly to every component. The object is frozen.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Settings field -> environment variable
ENV_VARS: Dict[str, str] = {
    "x_access_token": "X_ACCESS_TOKEN",
    "x_user_id": "X_USER_ID",
    "feed_page_size": "FEED_PAGE_SIZE",
    "archive_db_path": "ARCHIVE_DB_PATH",
    "timezone": "DIGEST_TIMEZONE",
    "digest_recipient": "DIGEST_RECIPIENT",
    "smtp_host": "SMTP_HOST",
    "smtp_port": "SMTP_PORT",
    "smtp_user": "SMTP_USER",
    "smtp_password": "SMTP_PASSWORD",
    "smtp_from_email": "SMTP_FROM_EMAIL",
    "sync_interval": "SYNC_INTERVAL",
    "auto_sync": "AUTO_SYNC",
}


class Settings(BaseModel):
    """Immutable configuration shared by the engine and its collaborators."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    # Feed source
    x_access_token: Optional[str] = Field(default=None, description="OAuth 2.0 user-context token")
    x_user_id: Optional[str] = Field(default=None, description="Timeline owner id (resolved via /users/me if unset)")
    feed_page_size: int = Field(default=100, ge=5, le=100)

    # Archive
    archive_db_path: str = Field(default="data/archive.sqlite3")
    timezone: str = Field(default="UTC", description="IANA zone that defines calendar days")

    # Digest delivery
    digest_recipient: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: Optional[str] = None

    # Scheduling
    sync_interval: int = Field(default=900, ge=1, description="Seconds between automatic runs")
    auto_sync: bool = False

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def _env_values(cls) -> Dict[str, Any]:
        return {
            field: os.environ[var]
            for field, var in ENV_VARS.items()
            if os.environ.get(var) not in (None, "")
        }

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (and a .env file if present)."""
        load_dotenv()
        return cls.model_validate(cls._env_values())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Settings":
        """Build settings from a JSON file keyed by field name."""
        with open(path) as f:
            return cls.model_validate(json.load(f))

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Settings":
        """
        Build settings from an optional JSON file, with environment variables
        taking precedence over file values.
        """
        load_dotenv()
        values: Dict[str, Any] = {}
        if path and Path(path).exists():
            with open(path) as f:
                values.update(json.load(f))
        values.update(cls._env_values())
        return cls.model_validate(values)


__all__ = ["Settings", "ENV_VARS"]
