"""Pydantic-based configuration helpers for the Slack Application Engine."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Iterable, List

from pydantic import BaseModel, Field, ValidationError, field_validator


class AppSettings(BaseModel):
    """Settings required to initialise the Slack bot and its response source."""

    bot_token: str = Field(..., alias="SLACK_BOT_TOKEN")
    signing_secret: str = Field(..., alias="SLACK_SIGNING_SECRET")
    bot_user_id: str | None = Field(None, alias="SLACK_BOT_USER_ID")
    database_url: str = Field(..., alias="DATABASE_URL")
    spreadsheet_id: str | None = Field(None, alias="GOOGLE_SPREADSHEET_ID")
    sheet_name: str = Field("Form Responses 1", alias="GOOGLE_SHEET_NAME")
    google_api_key: str | None = Field(None, alias="GOOGLE_API_KEY")
    poll_interval_seconds: int = Field(30, alias="POLL_INTERVAL_SECONDS")
    default_track_key: str = Field("tester", alias="DEFAULT_TRACK_KEY")
    admin_user_ids: List[str] = Field(default_factory=list, alias="REVIEW_ADMIN_USER_IDS")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_format: str = Field("json", alias="LOG_FORMAT")

    @field_validator("admin_user_ids", mode="before")
    @classmethod
    def _split_ids(cls, value: str | list[str] | None) -> list[str]:
        if value is None:
            return []
        if isinstance(value, list):
            return [item.strip() for item in value if item.strip()]
        return [item.strip() for item in value.split(",") if item.strip()]

    @field_validator("poll_interval_seconds")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Poll interval must be greater than zero")
        return value

    @field_validator("default_track_key")
    @classmethod
    def _normalise_track(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if not cleaned:
            raise ValueError("Default track key must not be empty")
        return cleaned

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in ("json", "console"):
            raise ValueError("Log format must be json or console")
        return cleaned

    @field_validator("bot_user_id", "spreadsheet_id", "google_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        trimmed = str(value).strip()
        return trimmed or None


def _format_missing(fields: Iterable[str]) -> str:
    """Return a human-friendly comma-separated list of missing env vars."""

    unique: List[str] = []
    for field in fields:
        if field not in unique:
            unique.append(field)
    return ", ".join(unique)


@lru_cache()
def get_settings() -> AppSettings:
    """Fetch and cache settings from environment variables."""

    try:
        return AppSettings.model_validate(os.environ)
    except ValidationError as exc:
        missing = [str(error["loc"][0]) for error in exc.errors() if error["type"] == "missing"]
        if not missing:
            raise RuntimeError(f"Invalid configuration: {exc}") from exc
        message = (
            "Missing required environment variables: "
            f"{_format_missing(missing)}"
        )
        raise RuntimeError(message) from exc
