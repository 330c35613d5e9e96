"""Parsing of ffmpeg diagnostic and ``-progress`` output into job progress."""

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class ProgressUpdate:
    """A progress step worth reporting."""

    progress: int
    raw_percent: float
    elapsed_seconds: int


class FFmpegProgressParser:
    """
    Stateful parser for one ffmpeg run.

    The diagnostic stream (stderr) provides the total duration; the progress
    stream (``-progress pipe:1`` on stdout) provides the current position. The
    raw percentage is mapped into the ``[floor, floor + span]`` window of the
    job's overall progress and only strictly increasing values are reported.
    """

    DURATION_PATTERN = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2})")
    OUT_TIME_PATTERN = re.compile(r"out_time=(\d+):(\d{2}):(\d{2})")

    def __init__(
        self,
        start: int = 10,
        floor: int = 10,
        span: int = 80,
        expected_duration: float | None = None,
    ) -> None:
        self.floor = floor
        self.span = span
        self.last_progress = start
        self.duration_seconds: float | None = None
        if expected_duration and expected_duration > 0:
            self.duration_seconds = expected_duration

    @staticmethod
    def _to_seconds(match: re.Match[str]) -> int:
        hours, minutes, seconds = (int(g) for g in match.groups())
        return hours * 3600 + minutes * 60 + seconds

    def feed_diagnostic(self, line: str) -> bool:
        """
        Consume a diagnostic line.

        Returns:
            True if this line fixed the total duration.
        """
        if self.duration_seconds is not None:
            return False
        match = self.DURATION_PATTERN.search(line)
        if not match:
            return False
        self.duration_seconds = self._to_seconds(match)
        return True

    def feed_progress(self, line: str) -> ProgressUpdate | None:
        """
        Consume a progress line.

        Returns:
            ProgressUpdate when the displayed progress increased, else None.
        """
        if not self.duration_seconds:
            return None
        match = self.OUT_TIME_PATTERN.search(line)
        if not match:
            return None

        elapsed = self._to_seconds(match)
        raw_percent = min(elapsed / self.duration_seconds * 100, 100.0)
        # Halves round up
        displayed = int(self.floor + raw_percent * self.span / 100 + 0.5)

        if displayed <= self.last_progress:
            return None
        self.last_progress = displayed
        return ProgressUpdate(progress=displayed, raw_percent=raw_percent, elapsed_seconds=elapsed)
