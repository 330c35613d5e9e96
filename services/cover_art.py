"""Cover art extraction and re-embedding around a conversion."""

import asyncio
import logging
from pathlib import Path

from services.conversion_jobs import ConversionJob
from services.process_runner import terminate_process

logger = logging.getLogger(__name__)


def remove_file(path: Path | None) -> None:
    """Delete a file if present; failures are logged, never raised."""
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)


class CoverArtPipeline:
    """
    Optional cover art steps.

    Both steps are time-boxed and resolve to a boolean; a missing or broken
    cover never fails a conversion.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        tone_path: str = "tone",
        extract_timeout: float = 30.0,
        embed_timeout: float = 60.0,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.tone_path = tone_path
        self.extract_timeout = extract_timeout
        self.embed_timeout = embed_timeout

    async def _run(self, cmd: list[str], timeout: float, job: ConversionJob | None = None) -> int | None:
        """Run a command and return its exit code, or None on spawn error/timeout."""
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Could not start %s: %s", cmd[0], e)
            return None

        if job is not None:
            job.process = process
        try:
            return await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.0fs", cmd[0], timeout)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return None
        except asyncio.CancelledError:
            terminate_process(process)
            raise
        finally:
            if job is not None and job.process is process:
                job.process = None

    async def extract(self, job: ConversionJob) -> bool:
        """
        Extract embedded cover art from the primary source file.

        Returns:
            True if a non-empty cover image was written to the temp cover path.
        """
        cover_path = job.paths.temp_cover_path
        code = await self._run(
            [
                self.ffmpeg_path,
                "-i", str(job.primary_source),
                "-an",
                "-vcodec", "copy",
                "-y", str(cover_path),
            ],
            self.extract_timeout,
            job=job,
        )
        has_cover = code == 0 and cover_path.exists() and cover_path.stat().st_size > 0
        if has_cover:
            logger.info("Extracted cover art from %s", job.primary_source.name)
        else:
            logger.info("No cover art extracted from %s", job.primary_source.name)
        return has_cover

    async def embed(self, job: ConversionJob) -> bool:
        """
        Embed the extracted cover into the converted file with tone.

        The temp cover file is removed whatever the outcome.
        """
        cover_path = job.paths.temp_cover_path
        try:
            code = await self._run(
                [
                    self.tone_path,
                    "tag",
                    str(job.paths.temp_output_path),
                    f"--meta-cover-file={cover_path}",
                ],
                self.embed_timeout,
            )
        finally:
            remove_file(cover_path)

        if code == 0:
            logger.info("Cover art embedded successfully")
            return True
        logger.warning("Cover art embedding failed for job %s (exit=%s)", job.id, code)
        return False
