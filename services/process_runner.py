"""Execution of ffmpeg for a conversion job."""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncGenerator, Callable

from services.conversion_jobs import ConversionError, ConversionJob, JobStatus
from services.ffmpeg_args import FFmpegInvocation
from services.progress_parser import FFmpegProgressParser, ProgressUpdate

logger = logging.getLogger(__name__)

# Diagnostic lines kept for the log when ffmpeg fails
STDERR_TAIL_LINES = 20


async def _read_lines(stream: asyncio.StreamReader) -> AsyncGenerator[str, None]:
    """Read lines from async stream."""
    while True:
        line = await stream.readline()
        if not line:
            break
        yield line.decode("utf-8", errors="replace").rstrip()


def terminate_process(process: asyncio.subprocess.Process | None) -> bool:
    """
    Send SIGTERM to a process if it is still running.

    Returns:
        True if a signal was sent.
    """
    if process is None or process.returncode is not None:
        return False
    try:
        process.terminate()
    except ProcessLookupError:
        return False
    return True


async def run_ffmpeg(
    job: ConversionJob,
    invocation: FFmpegInvocation,
    ffmpeg_path: str = "ffmpeg",
    on_progress: Callable[[ProgressUpdate], None] | None = None,
) -> None:
    """
    Run ffmpeg for a job and report progress.

    Side files are written before the process starts. ``job.process`` holds
    the running process so it can be signalled by cancellation.

    Raises:
        ConversionError: If ffmpeg cannot be started or exits non-zero.
    """
    for path, content in invocation.side_files.items():
        path.write_text(content, encoding="utf-8")

    parser = FFmpegProgressParser(
        start=job.progress,
        expected_duration=invocation.expected_duration,
    )
    stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    logger.info("Running ffmpeg for job %s: %s", job.id, " ".join(invocation.args))
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            *invocation.args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ConversionError(f"Failed to start ffmpeg: {e}") from e

    job.process = process
    if job.status is not JobStatus.CONVERTING:
        # Cancelled or timed out while the process was being spawned
        terminate_process(process)

    async def read_diagnostics() -> None:
        async for line in _read_lines(process.stderr):
            stderr_tail.append(line)
            if parser.feed_diagnostic(line):
                logger.info("Conversion duration: %ss", parser.duration_seconds)

    async def read_progress() -> None:
        async for line in _read_lines(process.stdout):
            update = parser.feed_progress(line)
            if update is not None and on_progress is not None:
                on_progress(update)

    try:
        await asyncio.gather(read_diagnostics(), read_progress())
        returncode = await process.wait()
    except asyncio.CancelledError:
        terminate_process(process)
        raise
    finally:
        job.process = None

    if returncode != 0:
        if stderr_tail:
            logger.warning("ffmpeg output for job %s:\n%s", job.id, "\n".join(stderr_tail))
        raise ConversionError(f"FFmpeg exited with code {returncode}")
