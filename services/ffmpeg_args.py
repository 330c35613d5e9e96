"""FFmpeg argument construction for M4B conversions."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from services.conversion_jobs import ConversionJob, SourceFile

logger = logging.getLogger(__name__)

# Source codecs that are already AAC and can be remuxed without re-encoding
STREAM_COPY_EXTENSIONS = frozenset({".m4a", ".mp4", ".aac"})

# Fixed output preset for every re-encode: mono AAC, 128k, 44.1kHz
AAC_ENCODE_ARGS = ["-c:a", "aac", "-b:a", "128k", "-ar", "44100", "-ac", "1"]

# Characters with special meaning in an FFMETADATA file
_METADATA_SPECIAL = re.compile(r"([=;#\\\n])")

ConcatMode = Literal["filter", "demuxer"]


@dataclass
class FFmpegInvocation:
    """Arguments for one ffmpeg run plus the side files it reads."""

    args: list[str]
    side_files: dict[Path, str] = field(default_factory=dict)
    # Known total duration of the output, when the sources declare it
    expected_duration: float | None = None

    @property
    def is_stream_copy(self) -> bool:
        return "-c" in self.args and self.args[self.args.index("-c") + 1] == "copy"


def escape_metadata_value(value: str) -> str:
    """Escape a value for use in an FFMETADATA file."""
    return _METADATA_SPECIAL.sub(r"\\\1", value)


def build_chapter_metadata(
    source_files: list[SourceFile],
    title: str | None = None,
    artist: str | None = None,
) -> str:
    """
    Build an FFMETADATA payload with one chapter per source file.

    Chapter offsets are a running sum of source durations in milliseconds;
    sources without a duration contribute a zero-length chapter.
    """
    lines = [";FFMETADATA1"]
    if title:
        lines.append(f"title={escape_metadata_value(title)}")
    if artist:
        lines.append(f"artist={escape_metadata_value(artist)}")

    cumulative_ms = 0
    for index, source in enumerate(source_files):
        duration_ms = int(round((source.duration or 0) * 1000))
        start_ms = cumulative_ms
        end_ms = start_ms + duration_ms
        chapter_title = source.title or f"Chapter {index + 1}"
        lines.extend(
            [
                "[CHAPTER]",
                "TIMEBASE=1/1000",
                f"START={start_ms}",
                f"END={end_ms}",
                f"title={escape_metadata_value(chapter_title)}",
            ]
        )
        cumulative_ms = end_ms

    return "\n".join(lines) + "\n"


def build_concat_list(source_files: list[SourceFile]) -> str:
    """Build a concat demuxer list (one quoted ``file`` line per source)."""
    entries = []
    for source in source_files:
        quoted = str(source.path).replace("'", "'\\''")
        entries.append(f"file '{quoted}'")
    return "\n".join(entries) + "\n"


def _total_duration(source_files: list[SourceFile]) -> float | None:
    durations = [source.duration for source in source_files]
    if all(d is not None and d > 0 for d in durations):
        return float(sum(durations))  # type: ignore[arg-type]
    return None


def _output_args(output_path: Path) -> list[str]:
    return ["-f", "ipod", "-progress", "pipe:1", "-y", str(output_path)]


def build_ffmpeg_invocation(job: ConversionJob, concat_mode: ConcatMode = "filter") -> FFmpegInvocation:
    """
    Build the ffmpeg invocation for a conversion job.

    Args:
        job: The job to convert.
        concat_mode: How distinct multi-file sources are joined.

    Returns:
        FFmpegInvocation with ordered arguments and side file contents.
    """
    sources = job.source_files
    paths = job.paths

    if job.is_multi_file and len(sources) > 1:
        side_files = {
            paths.chapter_metadata_path: build_chapter_metadata(
                sources,
                title=job.audiobook_title,
                artist=job.audiobook_author,
            )
        }
        metadata_input = str(paths.chapter_metadata_path)
        unique_paths = {str(source.path) for source in sources}

        if len(unique_paths) == 1:
            # Chapters are time ranges inside one physical file
            logger.debug("Building single-input chapter args for %d chapters", len(sources))
            args = [
                "-i", str(sources[0].path),
                "-i", metadata_input,
                "-map", "0:a",
                "-map_metadata", "1",
                "-map_chapters", "1",
                "-vn",
            ]
            return FFmpegInvocation(
                args=args + AAC_ENCODE_ARGS + _output_args(paths.temp_output_path),
                side_files=side_files,
                expected_duration=None,
            )

        if concat_mode == "demuxer":
            logger.debug("Building concat demuxer args for %d files", len(sources))
            side_files[paths.concat_list_path] = build_concat_list(sources)
            args = [
                "-f", "concat",
                "-safe", "0",
                "-i", str(paths.concat_list_path),
                "-i", metadata_input,
                "-map", "0:a",
                "-map_metadata", "1",
                "-map_chapters", "1",
                "-vn",
            ]
        else:
            logger.debug("Building concat filter args for %d files", len(sources))
            count = len(sources)
            args = []
            for source in sources:
                args.extend(["-i", str(source.path)])
            args.extend(["-i", metadata_input])
            pads = "".join(f"[{i}:a]" for i in range(count))
            args.extend(
                [
                    "-filter_complex", f"{pads}concat=n={count}:v=0:a=1[out]",
                    "-map", "[out]",
                    "-map_metadata", str(count),
                    "-map_chapters", str(count),
                ]
            )

        return FFmpegInvocation(
            args=args + AAC_ENCODE_ARGS + _output_args(paths.temp_output_path),
            side_files=side_files,
            expected_duration=_total_duration(sources),
        )

    source_path = str(sources[0].path)

    if job.source_extension in STREAM_COPY_EXTENSIONS:
        # Already AAC: repackage into the M4B container
        return FFmpegInvocation(
            args=["-i", source_path, "-c", "copy"] + _output_args(paths.temp_output_path),
        )

    return FFmpegInvocation(
        args=["-i", source_path, "-vn"] + AAC_ENCODE_ARGS + _output_args(paths.temp_output_path),
    )
