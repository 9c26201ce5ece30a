"""SQLAlchemy models and engine-wide exceptions."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from slack_application_engine.db import Base

STATE_DOCUMENT_NAME = "default"


class StateDocument(Base):
    """Single JSON document holding the engine's aggregate state."""

    __tablename__ = "state_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, default=STATE_DOCUMENT_NAME)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )


class OptimisticLockError(Exception):
    """Raised when the state document was written by someone else in between."""


class ChannelNotConfiguredError(Exception):
    """Raised when a track has no destination channel bound."""

    def __init__(self, track_labels: list[str]) -> None:
        self.track_labels = list(track_labels)
        joined = ", ".join(self.track_labels)
        super().__init__(f"Missing post channels for: {joined}.")


class ResponseSourceError(Exception):
    """Raised when the response source cannot be read."""
