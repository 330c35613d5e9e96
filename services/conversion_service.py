"""Conversion job orchestration: admission, scheduling, execution and cancellation."""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.orm import sessionmaker

from core.config import Settings, get_settings
from db.models import utcnow
from db.session import async_session_maker
from services.concurrency import ConcurrencyLimiter, SlotToken
from services.conversion_commit import CommitCoordinator, cleanup_job_files
from services.conversion_jobs import (
    SUPPORTED_EXTENSIONS,
    TARGET_EXTENSION,
    ConversionJob,
    ConversionTarget,
    JobRegistry,
    JobStatus,
    JobStatusView,
    SourceFile,
    build_job_paths,
)
from services.cover_art import CoverArtPipeline
from services.directory_locks import DirectoryLockSet
from services.ffmpeg_args import build_ffmpeg_invocation
from services.job_reaper import StaleJobReaper
from services.library_store import LibraryStore
from services.process_runner import run_ffmpeg, terminate_process
from services.progress_parser import ProgressUpdate

logger = logging.getLogger(__name__)

JOB_KIND = "conversion"


class ConversionNotifier(Protocol):
    """Receiver of job and library change events."""

    def publish_job_status(self, kind: str, status: str, payload: dict[str, Any]) -> None:
        ...

    def publish_library_changed(self, entity: dict[str, Any]) -> None:
        ...


def format_timeout(seconds: float) -> str:
    """Render a timeout for humans, e.g. ``2 hours`` or ``90 minutes``."""
    total = int(seconds)
    if total >= 3600 and total % 3600 == 0:
        value, unit = total // 3600, "hour"
    elif total >= 60 and total % 60 == 0:
        value, unit = total // 60, "minute"
    else:
        value, unit = total, "second"
    return f"{value} {unit}{'' if value == 1 else 's'}"


class ConversionService:
    """
    Runs M4B conversions as background jobs.

    All job state is owned by the event loop the service runs on. Admission
    and cancellation are synchronous; the work itself happens on one task per
    job, bounded by a FIFO concurrency limiter.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        notifier: ConversionNotifier | None = None,
        session_maker: sessionmaker | None = None,
        cover_art: CoverArtPipeline | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._notifier = notifier

        self.jobs = JobRegistry()
        self.directory_locks = DirectoryLockSet()
        self.limiter = ConcurrencyLimiter(self.settings.max_convert_concurrent)
        self.cover_art = cover_art or CoverArtPipeline(
            ffmpeg_path=self.settings.ffmpeg_path,
            tone_path=self.settings.tone_path,
            extract_timeout=self.settings.cover_extract_timeout_seconds,
            embed_timeout=self.settings.cover_embed_timeout_seconds,
        )
        self.committer = CommitCoordinator(self.cover_art, LibraryStore(session_maker or async_session_maker))
        self._reaper = StaleJobReaper(
            self.cleanup_stale_jobs,
            interval=self.settings.stale_job_sweep_interval_seconds,
        )
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._shutting_down = False

        logger.info(
            "ConversionService initialized with max_concurrent=%d, concat_mode=%s",
            self.limiter.max_concurrent,
            self.settings.concat_mode,
        )

    # Admission

    def _validate(self, target: ConversionTarget) -> tuple[list[SourceFile], bool] | str:
        if self.jobs.active_for_audiobook(target.audiobook_id) is not None:
            return "Conversion already in progress for this audiobook"

        is_multi_file = target.is_multi_file and bool(target.chapters)
        if is_multi_file:
            sources = list(target.chapters)
        else:
            sources = [SourceFile(path=target.file_path, duration=target.duration, title=target.title)]

        for source in sources:
            ext = source.path.suffix.lower()
            if ext == TARGET_EXTENSION:
                # Multi-file M4B sets are merged into one file
                if not is_multi_file:
                    return "File is already M4B format"
            elif ext not in SUPPORTED_EXTENSIONS:
                return f"Unsupported format: {ext}. Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
            if not source.path.exists():
                return f"Audio file not found: {source.path.name}"

        return sources, is_multi_file

    def start_conversion(self, target: ConversionTarget) -> dict[str, Any]:
        """
        Validate a target and schedule its conversion.

        Returns:
            ``{"job_id", "status": "started"}`` or ``{"error"}``. No job is
            created when validation fails.
        """
        if self._shutting_down:
            return {"error": "Conversion service is shutting down"}

        validated = self._validate(target)
        if isinstance(validated, str):
            logger.info("Rejected conversion for audiobook %s: %s", target.audiobook_id, validated)
            return {"error": validated}
        sources, is_multi_file = validated

        paths = build_job_paths(target.title, sources[0].path.parent, self.settings.upload_dir)
        job = ConversionJob(
            audiobook_id=target.audiobook_id,
            audiobook_title=target.title,
            audiobook_author=target.author,
            source_files=sources,
            is_multi_file=is_multi_file,
            paths=paths,
            message="Starting conversion...",
        )
        job.lock_dir = paths.final_output_path.parent
        self.directory_locks.add(job.lock_dir)
        job.lock_held = True
        self.jobs.add(job)

        logger.info(
            "Queuing conversion job %s for audiobook %s (%d source file(s))",
            job.id,
            job.audiobook_id,
            len(sources),
        )
        self._broadcast(job)

        task = asyncio.create_task(self._run_with_limit(job), name=f"convert-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        return {"job_id": job.id, "status": "started"}

    # Execution

    async def _run_with_limit(self, job: ConversionJob) -> None:
        token: SlotToken | None = None
        try:
            if self.limiter.is_saturated or self.limiter.waiting:
                self._update(
                    job,
                    status=JobStatus.QUEUED,
                    message=(
                        f"Waiting for available slot "
                        f"({self.limiter.running}/{self.limiter.max_concurrent} running)..."
                    ),
                )
            token = await self.limiter.acquire()

            if job.status not in (JobStatus.STARTING, JobStatus.QUEUED):
                logger.info("Job %s is %s before starting; releasing slot", job.id, job.status.value)
                return

            await self._run_conversion(job)
        except asyncio.CancelledError:
            if not job.is_terminal:
                self._finish(
                    job,
                    JobStatus.FAILED,
                    message="Conversion interrupted by shutdown",
                    error="Conversion interrupted",
                )
            raise
        except Exception as e:
            logger.exception("Unexpected error in conversion job %s", job.id)
            if not job.is_terminal:
                self._finish(job, JobStatus.FAILED, message=f"Conversion failed: {e}", error=str(e))
        finally:
            if token is not None:
                self.limiter.release(token)
            self._release_lock(job)

    async def _run_conversion(self, job: ConversionJob) -> None:
        self._update(job, status=JobStatus.CONVERTING, progress=5, message="Extracting cover art...")
        try:
            self.settings.upload_dir.mkdir(parents=True, exist_ok=True)

            job.has_cover = await self.cover_art.extract(job)
            if job.status is not JobStatus.CONVERTING:
                return

            count = len(job.source_files)
            if job.is_multi_file and count > 1:
                message = f"Converting {count} files..."
            else:
                message = "Converting audio..."
            self._update(job, progress=10, message=message)

            invocation = build_ffmpeg_invocation(job, self.settings.concat_mode)
            await run_ffmpeg(
                job,
                invocation,
                ffmpeg_path=self.settings.ffmpeg_path,
                on_progress=lambda update: self._on_progress(job, update),
            )
            if job.status is not JobStatus.CONVERTING:
                return

            job.committing = True
            self._update(job, progress=90, message="Finalizing...")
            await self.committer.finalize(job)

            if job.is_multi_file and count > 1:
                message = f"Conversion completed - merged {count} files"
            else:
                message = "Conversion completed successfully"
            self._finish(job, JobStatus.COMPLETED, progress=100, message=message)
            self._publish_library_changed(job)
            logger.info("Conversion job %s completed: %s", job.id, job.paths.final_output_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if job.is_terminal:
                logger.info("Conversion job %s stopped after %s: %s", job.id, job.status.value, e)
                return
            logger.error("Conversion job %s failed: %s", job.id, e)
            self._finish(job, JobStatus.FAILED, message=f"Conversion failed: {e}", error=str(e))
        finally:
            job.committing = False
            if job.status is not JobStatus.COMPLETED:
                cleanup_job_files(job)

    def _on_progress(self, job: ConversionJob, update: ProgressUpdate) -> None:
        if job.status is not JobStatus.CONVERTING or job.committing:
            return
        self._update(job, progress=update.progress, message=f"Converting: {int(update.raw_percent + 0.5)}%")

    # State changes

    def _update(
        self,
        job: ConversionJob,
        *,
        status: JobStatus | None = None,
        progress: int | None = None,
        message: str | None = None,
    ) -> None:
        if status is not None:
            job.status = status
        if progress is not None:
            job.progress = max(job.progress, progress)
        if message is not None:
            job.message = message
        self._broadcast(job)

    def _finish(
        self,
        job: ConversionJob,
        status: JobStatus,
        *,
        message: str,
        progress: int | None = None,
        error: str | None = None,
    ) -> None:
        job.status = status
        job.message = message
        job.error = error
        if progress is not None:
            job.progress = progress
        job.completed_at = utcnow()
        self._release_lock(job)
        self._broadcast(job)

    def _release_lock(self, job: ConversionJob) -> None:
        if job.lock_held and job.lock_dir is not None:
            self.directory_locks.discard(job.lock_dir)
            job.lock_held = False

    def _broadcast(self, job: ConversionJob) -> None:
        if self._notifier is None:
            return
        payload = {
            "job_id": job.id,
            "audiobook_id": job.audiobook_id,
            "audiobook_title": job.audiobook_title,
            "progress": job.progress,
            "message": job.message,
            "error": job.error,
        }
        try:
            self._notifier.publish_job_status(JOB_KIND, job.status.value, payload)
        except Exception as e:
            logger.warning("Status notification failed for job %s: %s", job.id, e)

    def _publish_library_changed(self, job: ConversionJob) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.publish_library_changed(
                {"id": job.audiobook_id, "title": job.audiobook_title, "author": job.audiobook_author}
            )
        except Exception as e:
            logger.warning("Library notification failed for audiobook %s: %s", job.audiobook_id, e)

    # Queries and control

    def get_job_status(self, job_id: str) -> JobStatusView | None:
        job = self.jobs.get(job_id)
        return JobStatusView.from_job(job) if job else None

    def get_active_jobs(self) -> list[JobStatusView]:
        return [JobStatusView.from_job(job) for job in self.jobs.active()]

    def get_active_job_for_audiobook(self, audiobook_id: int) -> JobStatusView | None:
        job = self.jobs.active_for_audiobook(audiobook_id)
        return JobStatusView.from_job(job) if job else None

    def is_directory_locked(self, path: str | Path) -> bool:
        """True while a conversion writes into ``path``."""
        return self.directory_locks.is_directory_busy(path)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """
        Cancel a queued or running conversion.

        Returns:
            ``{"success": True}`` or ``{"error"}``.
        """
        job = self.jobs.get(job_id)
        if job is None:
            return {"error": "Job not found"}
        if job.is_terminal:
            return {"error": "Job already finished"}
        if job.committing:
            return {"error": "Job is finalizing and can no longer be cancelled"}

        logger.info("Cancelling conversion job %s (%s)", job.id, job.status.value)
        terminate_process(job.process)
        self._finish(job, JobStatus.CANCELLED, message="Conversion cancelled")
        return {"success": True}

    def cleanup_stale_jobs(self, now: datetime | None = None) -> dict[str, int]:
        """
        Evict old finished jobs and fail jobs that have run too long.

        Returns:
            Counts of ``evicted`` and ``timed_out`` jobs.
        """
        now = now or utcnow()
        retention = timedelta(seconds=self.settings.finished_job_retention_seconds)
        stuck_after = timedelta(seconds=self.settings.stuck_job_timeout_seconds)
        evicted = timed_out = 0

        for job in self.jobs:
            age = now - job.started_at
            if job.is_terminal:
                if age > retention:
                    self.jobs.remove(job.id)
                    evicted += 1
            elif age > stuck_after:
                logger.warning("Conversion job %s timed out after %s", job.id, age)
                terminate_process(job.process)
                self._finish(
                    job,
                    JobStatus.FAILED,
                    message=f"Conversion timed out after {format_timeout(self.settings.stuck_job_timeout_seconds)}",
                    error="Conversion timed out",
                )
                if job.committing:
                    # The job task discards a half-committed output when cancelled
                    task = self._tasks.get(job.id)
                    if task is not None:
                        task.cancel()
                else:
                    cleanup_job_files(job)
                timed_out += 1

        if evicted or timed_out:
            logger.info("Stale job sweep: evicted=%d timed_out=%d", evicted, timed_out)
        return {"evicted": evicted, "timed_out": timed_out}

    # Lifecycle

    async def start(self) -> None:
        self._shutting_down = False
        self._reaper.start()

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Stop the reaper and cancel every in-flight conversion.

        Args:
            timeout: Maximum time to wait for job tasks to finish (seconds).
        """
        if self._shutting_down:
            logger.warning("Shutdown already in progress")
            return
        self._shutting_down = True

        await self._reaper.stop()

        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            logger.info("No running conversions to shutdown")
            return

        logger.info("Shutting down %d conversion(s)...", len(tasks))
        for task in tasks:
            task.cancel()
        try:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Timeout waiting for conversions to stop. %d still running.",
                sum(1 for t in tasks if not t.done()),
            )
        logger.info("Conversion service shutdown complete")
