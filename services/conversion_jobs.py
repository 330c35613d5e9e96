"""Conversion job records, status views and the in-memory job registry."""

import asyncio
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel

from db.models import utcnow


class ConverterError(Exception):
    """Base exception for converter errors."""

    pass


class ConversionError(ConverterError):
    """Raised when the transcoding process fails."""

    pass


class CommitError(ConverterError):
    """Raised when a finished transcode cannot be committed to the library."""

    pass


class JobStatus(str, Enum):
    """Conversion job status."""

    STARTING = "starting"
    QUEUED = "queued"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({JobStatus.STARTING, JobStatus.QUEUED, JobStatus.CONVERTING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Source extensions ffmpeg can read for conversion
SUPPORTED_EXTENSIONS = (".m4a", ".mp3", ".mp4", ".ogg", ".flac", ".opus", ".aac", ".wav", ".wma")
TARGET_EXTENSION = ".m4b"

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")


@dataclass
class SourceFile:
    """One input file of a conversion."""

    path: Path
    duration: float | None = None
    title: str | None = None


@dataclass
class ConversionTarget:
    """Library item to convert, as loaded from the database."""

    audiobook_id: int
    title: str | None
    file_path: Path
    author: str | None = None
    duration: float | None = None
    is_multi_file: bool = False
    chapters: list[SourceFile] = field(default_factory=list)


@dataclass
class JobPaths:
    """Filesystem locations owned by a job."""

    temp_output_path: Path
    final_output_path: Path
    temp_cover_path: Path
    concat_list_path: Path
    chapter_metadata_path: Path

    def temporary_files(self) -> list[Path]:
        return [
            self.temp_output_path,
            self.temp_cover_path,
            self.concat_list_path,
            self.chapter_metadata_path,
        ]


def sanitize_title(title: str | None) -> str:
    """Make a title safe to use as a file name."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("", title or "")
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()[:100].strip()
    return cleaned or "audiobook"


def build_job_paths(title: str | None, source_dir: Path, temp_dir: Path) -> JobPaths:
    """Derive every path a job touches from its title."""
    name = sanitize_title(title)
    return JobPaths(
        temp_output_path=temp_dir / f"{name}_converting{TARGET_EXTENSION}",
        final_output_path=source_dir / f"{name}{TARGET_EXTENSION}",
        temp_cover_path=temp_dir / f"{name}_temp_cover.jpg",
        concat_list_path=temp_dir / f"{name}_concat.txt",
        chapter_metadata_path=temp_dir / f"{name}_chapters.txt",
    )


@dataclass
class ConversionJob:
    """Mutable state of a single conversion."""

    audiobook_id: int
    audiobook_title: str | None
    source_files: list[SourceFile]
    is_multi_file: bool
    paths: JobPaths
    audiobook_author: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    status: JobStatus = JobStatus.STARTING
    progress: int = 0
    message: str = ""
    error: str | None = None
    process: asyncio.subprocess.Process | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    has_cover: bool = False
    committing: bool = False
    lock_dir: Path | None = None
    lock_held: bool = False

    @property
    def source_extension(self) -> str:
        return self.source_files[0].path.suffix.lower()

    @property
    def primary_source(self) -> Path:
        return self.source_files[0].path

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobStatusView(BaseModel):
    """Read-only projection of a conversion job."""

    job_id: str
    audiobook_id: int
    audiobook_title: str | None
    status: JobStatus
    progress: int
    message: str
    error: str | None = None
    is_multi_file: bool
    source_count: int
    started_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: ConversionJob) -> "JobStatusView":
        return cls(
            job_id=job.id,
            audiobook_id=job.audiobook_id,
            audiobook_title=job.audiobook_title,
            status=job.status,
            progress=job.progress,
            message=job.message,
            error=job.error,
            is_multi_file=job.is_multi_file,
            source_count=len(job.source_files),
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobRegistry:
    """
    Authoritative map of job id to job.

    Only the event loop that owns the conversion service mutates it.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ConversionJob] = {}

    def add(self, job: ConversionJob) -> None:
        self._jobs[job.id] = job

    def get(self, job_id: str) -> ConversionJob | None:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> ConversionJob | None:
        return self._jobs.pop(job_id, None)

    def active(self) -> list[ConversionJob]:
        return [job for job in self._jobs.values() if job.is_active]

    def active_for_audiobook(self, audiobook_id: int) -> ConversionJob | None:
        for job in self._jobs.values():
            if job.audiobook_id == audiobook_id and job.is_active:
                return job
        return None

    def clear(self) -> None:
        self._jobs.clear()

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[ConversionJob]:
        return iter(list(self._jobs.values()))

    def __len__(self) -> int:
        return len(self._jobs)
