"""Finalization of a successful transcode."""

import asyncio
import logging
import shutil
from pathlib import Path

from services.conversion_jobs import CommitError, ConversionJob
from services.cover_art import CoverArtPipeline, remove_file
from services.library_store import LibraryStore

logger = logging.getLogger(__name__)


def cleanup_job_files(job: ConversionJob) -> None:
    """Remove every temporary file a job may have produced."""
    for path in job.paths.temporary_files():
        remove_file(path)


class CommitCoordinator:
    """
    Moves a converted file into the library and retires the sources.

    Source files are only deleted after the database points at the new file,
    so a failure at any earlier step leaves the original book intact.
    """

    def __init__(self, cover_art: CoverArtPipeline, library_store: LibraryStore) -> None:
        self.cover_art = cover_art
        self.library_store = library_store

    async def finalize(self, job: ConversionJob) -> int:
        """
        Commit the job's output.

        Returns:
            Size of the committed file in bytes.

        Raises:
            CommitError: If the output is missing or the library update fails.
        """
        temp_output = job.paths.temp_output_path
        final_output = job.paths.final_output_path

        if not temp_output.exists():
            raise CommitError("Conversion completed but output file not found")

        if job.has_cover:
            await self.cover_art.embed(job)

        file_size = temp_output.stat().st_size

        move = asyncio.ensure_future(asyncio.to_thread(shutil.move, str(temp_output), str(final_output)))
        try:
            await asyncio.shield(move)
        except asyncio.CancelledError:
            # The copy keeps running in its thread; let it land before discarding it
            try:
                await move
            except OSError:
                pass
            self._discard_output(job)
            raise
        except OSError as e:
            raise CommitError(f"Failed to move output into place: {e}") from e
        logger.info("Moved converted file to %s", final_output)

        try:
            await self.library_store.commit_conversion(job, file_size)
        except asyncio.CancelledError:
            self._discard_output(job)
            raise
        except Exception as e:
            self._discard_output(job)
            if isinstance(e, CommitError):
                raise
            raise CommitError(f"Database update failed: {e}") from e

        self._delete_sources(job)
        cleanup_job_files(job)
        return file_size

    def _discard_output(self, job: ConversionJob) -> None:
        # The library still points at the sources; never remove one of them
        final_output = _resolved(job.paths.final_output_path)
        if any(_resolved(source.path) == final_output for source in job.source_files):
            return
        remove_file(job.paths.final_output_path)

    def _delete_sources(self, job: ConversionJob) -> None:
        final_output = _resolved(job.paths.final_output_path)
        seen: set[Path] = set()
        for source in job.source_files:
            path = _resolved(source.path)
            if path == final_output or path in seen:
                continue
            seen.add(path)
            try:
                path.unlink(missing_ok=True)
                logger.info("Deleted source file %s", path)
            except OSError as e:
                logger.warning("Failed to delete source file %s: %s", path, e)


def _resolved(path: Path) -> Path:
    try:
        return path.resolve()
    except OSError:
        return path.absolute()
