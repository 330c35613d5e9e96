"""Services module."""

from .concurrency import ConcurrencyLimiter, SlotToken
from .conversion_commit import CommitCoordinator
from .conversion_jobs import (
    CommitError,
    ConversionError,
    ConversionJob,
    ConversionTarget,
    ConverterError,
    JobRegistry,
    JobStatus,
    JobStatusView,
    SourceFile,
)
from .conversion_service import ConversionService
from .cover_art import CoverArtPipeline
from .directory_locks import DirectoryLockSet
from .job_reaper import StaleJobReaper
from .library_store import LibraryStore, load_conversion_target
from .websocket_manager import WebSocketManager

__all__ = [
    # Jobs
    "ConversionJob",
    "ConversionTarget",
    "JobRegistry",
    "JobStatus",
    "JobStatusView",
    "SourceFile",
    # Errors
    "ConverterError",
    "ConversionError",
    "CommitError",
    # Pipeline
    "CommitCoordinator",
    "ConcurrencyLimiter",
    "ConversionService",
    "CoverArtPipeline",
    "DirectoryLockSet",
    "LibraryStore",
    "SlotToken",
    "StaleJobReaper",
    "load_conversion_target",
    # WebSocketManager
    "WebSocketManager",
]
