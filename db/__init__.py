"""Database module."""

from .models import Audiobook, AudiobookChapter, AudiobookRead
from .session import async_session_maker, create_db_and_tables, get_session

__all__ = [
    "Audiobook",
    "AudiobookChapter",
    "AudiobookRead",
    "async_session_maker",
    "create_db_and_tables",
    "get_session",
]
