"""Database models using SQLModel."""

from datetime import datetime, timezone

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class AudiobookBase(SQLModel):
    """Base audiobook model with common fields."""

    title: str = Field(index=True, description="Audiobook title")
    author: str | None = Field(default=None, description="Display author string")
    file_path: str = Field(description="Primary audio file (first file for multi-file books)")
    file_size: int | None = Field(default=None, sa_type=sa.BigInteger, description="Size in bytes")
    duration: float | None = Field(default=None, description="Duration in seconds")
    is_multi_file: bool = Field(default=False, description="Audio is split across chapter files")


class Audiobook(AudiobookBase, table=True):
    """Audiobook database table model."""

    __tablename__ = "audiobooks"

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=sa.DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=sa.DateTime(timezone=True))


class AudiobookRead(AudiobookBase):
    """Schema for reading an audiobook."""

    id: int
    created_at: datetime
    updated_at: datetime


class AudiobookChapter(SQLModel, table=True):
    """One source file of a multi-file audiobook."""

    __tablename__ = "audiobook_chapters"

    id: int | None = Field(default=None, primary_key=True)
    audiobook_id: int = Field(foreign_key="audiobooks.id", index=True)
    chapter_number: int
    file_path: str
    duration: float | None = None
    title: str | None = None
