"""Typed records tracked by the conversation history store."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class Session(RecordModel):
    """One stored conversation."""

    id: str
    title: str = ""
    message_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MemoryNote(RecordModel):
    """A free-form fact remembered across sessions."""

    id: int | None = None
    content: str
    created_at: datetime = Field(default_factory=utc_now)


__all__ = ["MemoryNote", "RecordModel", "Session", "utc_now"]
