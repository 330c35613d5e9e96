"""Library database access for conversions."""

import logging
from pathlib import Path

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from db.models import Audiobook, AudiobookChapter, utcnow
from services.conversion_jobs import CommitError, ConversionJob, ConversionTarget, SourceFile

logger = logging.getLogger(__name__)


async def load_conversion_target(session: AsyncSession, audiobook_id: int) -> ConversionTarget | None:
    """
    Load an audiobook and its ordered chapter files.

    Returns:
        ConversionTarget, or None if the audiobook does not exist.
    """
    audiobook = await session.get(Audiobook, audiobook_id)
    if audiobook is None:
        return None

    chapters: list[SourceFile] = []
    if audiobook.is_multi_file:
        result = await session.execute(
            select(AudiobookChapter)
            .where(AudiobookChapter.audiobook_id == audiobook_id)
            .order_by(AudiobookChapter.chapter_number)
        )
        chapters = [
            SourceFile(path=Path(row.file_path), duration=row.duration, title=row.title)
            for row in result.scalars().all()
        ]

    return ConversionTarget(
        audiobook_id=audiobook.id,
        title=audiobook.title,
        file_path=Path(audiobook.file_path),
        author=audiobook.author,
        duration=audiobook.duration,
        is_multi_file=audiobook.is_multi_file,
        chapters=chapters,
    )


class LibraryStore:
    """Writes conversion results to the library tables."""

    def __init__(self, session_maker: sessionmaker) -> None:
        self._session_maker = session_maker

    async def commit_conversion(self, job: ConversionJob, file_size: int) -> None:
        """
        Point the audiobook at its converted file in a single transaction.

        Multi-file books lose their chapter rows; the merged file carries the
        chapters itself.

        Raises:
            CommitError: If the audiobook row no longer exists.
        """
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(Audiobook)
                    .where(Audiobook.id == job.audiobook_id)
                    .values(
                        file_path=str(job.paths.final_output_path),
                        file_size=file_size,
                        is_multi_file=False,
                        updated_at=utcnow(),
                    )
                )
                if result.rowcount == 0:
                    raise CommitError(f"Audiobook {job.audiobook_id} no longer exists")

                if job.is_multi_file:
                    await session.execute(
                        delete(AudiobookChapter).where(AudiobookChapter.audiobook_id == job.audiobook_id)
                    )

        logger.info(
            "Library updated for audiobook %s: %s (%d bytes)",
            job.audiobook_id,
            job.paths.final_output_path,
            file_size,
        )
