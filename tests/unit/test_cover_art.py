"""Unit tests for CoverArtPipeline."""

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from services.conversion_jobs import ConversionJob, SourceFile, build_job_paths
from services.cover_art import CoverArtPipeline


@pytest.fixture
def job(tmp_path: Path) -> ConversionJob:
    (tmp_path / "tmp").mkdir()
    return ConversionJob(
        audiobook_id=1,
        audiobook_title="Cover Book",
        source_files=[SourceFile(path=tmp_path / "book.mp3")],
        is_multi_file=False,
        paths=build_job_paths("Cover Book", tmp_path, tmp_path / "tmp"),
    )


class TestExtract:
    """Tests for cover extraction."""

    @pytest.mark.asyncio
    async def test_extract_success(self, job: ConversionJob, fake_process: Any) -> None:
        pipeline = CoverArtPipeline(ffmpeg_path="ffmpeg")

        async def spawn(*cmd: str, **kwargs: Any) -> Any:
            job.paths.temp_cover_path.write_bytes(b"\xff\xd8jpeg")
            return fake_process()

        with patch("asyncio.create_subprocess_exec", side_effect=spawn) as mock_exec:
            assert await pipeline.extract(job) is True

        assert list(mock_exec.call_args.args) == [
            "ffmpeg",
            "-i", str(job.primary_source),
            "-an",
            "-vcodec", "copy",
            "-y", str(job.paths.temp_cover_path),
        ]

    @pytest.mark.asyncio
    async def test_extract_without_cover(self, job: ConversionJob, fake_process: Any) -> None:
        """A zero exit with no image written is not a cover."""
        pipeline = CoverArtPipeline()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process())):
            assert await pipeline.extract(job) is False

    @pytest.mark.asyncio
    async def test_extract_empty_file(self, job: ConversionJob, fake_process: Any) -> None:
        pipeline = CoverArtPipeline()
        job.paths.temp_cover_path.write_bytes(b"")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process())):
            assert await pipeline.extract(job) is False

    @pytest.mark.asyncio
    async def test_extract_failure_exit_code(self, job: ConversionJob, fake_process: Any) -> None:
        pipeline = CoverArtPipeline()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process(returncode=1))):
            assert await pipeline.extract(job) is False

    @pytest.mark.asyncio
    async def test_extract_timeout_kills_process(self, job: ConversionJob, fake_process: Any) -> None:
        pipeline = CoverArtPipeline(extract_timeout=0.01)
        process = fake_process(hold=True)
        waits: list[int] = []
        hold_until_exit = process.wait

        async def counting_wait() -> int:
            waits.append(1)
            return await hold_until_exit()

        process.wait = counting_wait

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            assert await pipeline.extract(job) is False

        assert process.killed is True
        # Reaped after the kill
        assert len(waits) == 2
        assert process.returncode == -9
        assert job.process is None

    @pytest.mark.asyncio
    async def test_extract_missing_binary(self, job: ConversionJob) -> None:
        pipeline = CoverArtPipeline(ffmpeg_path="/nope/ffmpeg")

        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError)):
            assert await pipeline.extract(job) is False


class TestEmbed:
    """Tests for cover embedding."""

    @pytest.mark.asyncio
    async def test_embed_success_removes_cover(self, job: ConversionJob, fake_process: Any) -> None:
        pipeline = CoverArtPipeline(tone_path="tone")
        job.paths.temp_cover_path.write_bytes(b"jpeg")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process())) as mock_exec:
            assert await pipeline.embed(job) is True

        assert list(mock_exec.call_args.args) == [
            "tone",
            "tag",
            str(job.paths.temp_output_path),
            f"--meta-cover-file={job.paths.temp_cover_path}",
        ]
        assert not job.paths.temp_cover_path.exists()

    @pytest.mark.asyncio
    async def test_embed_failure_is_soft(self, job: ConversionJob, fake_process: Any) -> None:
        pipeline = CoverArtPipeline()
        job.paths.temp_cover_path.write_bytes(b"jpeg")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process(returncode=2))):
            assert await pipeline.embed(job) is False

        assert not job.paths.temp_cover_path.exists()

    @pytest.mark.asyncio
    async def test_embed_timeout_removes_cover(self, job: ConversionJob, fake_process: Any) -> None:
        pipeline = CoverArtPipeline(embed_timeout=0.01)
        job.paths.temp_cover_path.write_bytes(b"jpeg")
        process = fake_process(hold=True)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            assert await pipeline.embed(job) is False

        assert process.killed is True
        assert not job.paths.temp_cover_path.exists()
