"""Pytest fixtures for conversion service tests."""

import asyncio
from collections import deque
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator, Iterable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from api.routes.conversion import get_conversion_service
from core.config import Settings, get_settings
from db.session import get_session
from main import app
from services.conversion_jobs import ConversionError, ConversionJob, ConversionTarget, SourceFile
from services.conversion_service import ConversionService
from services.cover_art import CoverArtPipeline


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeStream:
    """Stands in for ``asyncio.StreamReader``; blocks at EOF until the process exits."""

    def __init__(self, lines: Iterable[bytes], exited: asyncio.Event | None = None) -> None:
        self._lines = deque(lines)
        self._exited = exited

    async def readline(self) -> bytes:
        if self._lines:
            await asyncio.sleep(0)
            return self._lines.popleft()
        if self._exited is not None:
            await self._exited.wait()
        return b""


class FakeProcess:
    """
    Stands in for ``asyncio.subprocess.Process``.

    With ``hold=True`` the process keeps running until ``finish()``,
    ``terminate()`` or ``kill()`` is called.
    """

    def __init__(
        self,
        stdout_lines: Iterable[bytes] = (),
        stderr_lines: Iterable[bytes] = (),
        returncode: int = 0,
        hold: bool = False,
    ) -> None:
        self._exited = asyncio.Event()
        self._hold = hold
        self._final_code = returncode
        self.returncode: int | None = None
        self.stdout = FakeStream(stdout_lines, self._exited if hold else None)
        self.stderr = FakeStream(stderr_lines, self._exited if hold else None)
        self.terminated = False
        self.killed = False

    def finish(self, code: int | None = None) -> None:
        if self.returncode is None:
            self.returncode = self._final_code if code is None else code
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        self.finish(-15)

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)

    async def wait(self) -> int:
        if self._hold:
            await self._exited.wait()
        if self.returncode is None:
            self.returncode = self._final_code
        return self.returncode


class ControlledRunner:
    """
    Replacement for ``run_ffmpeg`` that holds each job until the test lets it exit.

    A successful exit writes the temp output file like ffmpeg would.
    """

    def __init__(self) -> None:
        self.processes: dict[str, FakeProcess] = {}
        self.invocations: dict[str, Any] = {}
        self.progress_callbacks: dict[str, Callable[..., None]] = {}

    async def __call__(
        self,
        job: ConversionJob,
        invocation: Any,
        ffmpeg_path: str = "ffmpeg",
        on_progress: Callable[..., None] | None = None,
    ) -> None:
        process = FakeProcess(hold=True)
        self.processes[job.id] = process
        self.invocations[job.id] = invocation
        if on_progress is not None:
            self.progress_callbacks[job.id] = on_progress
        job.process = process
        try:
            code = await process.wait()
        finally:
            job.process = None
        if code != 0:
            raise ConversionError(f"FFmpeg exited with code {code}")
        job.paths.temp_output_path.write_bytes(b"converted audio")


@pytest.fixture
def fake_process() -> type[FakeProcess]:
    """Factory for fake subprocesses."""
    return FakeProcess


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a condition on the event loop until it holds."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait_until


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with overrides."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        debug=True,
        environment="development",
        data_dir=tmp_path / "data",
        upload_dir=tmp_path / "uploads",
        max_convert_concurrent=2,
    )


@pytest.fixture
def library_dir(tmp_path: Path) -> Path:
    """Directory holding audiobook source files."""
    path = tmp_path / "library"
    path.mkdir()
    return path


@pytest.fixture
def make_target(library_dir: Path) -> Callable[..., ConversionTarget]:
    """Build a conversion target whose source files exist on disk."""

    def _make_target(
        audiobook_id: int = 1,
        title: str = "Test Audiobook",
        filename: str = "book.mp3",
        chapters: list[tuple[str, float | None]] | None = None,
    ) -> ConversionTarget:
        book_dir = library_dir / f"book-{audiobook_id}"
        book_dir.mkdir(exist_ok=True)
        if chapters:
            sources = []
            for name, duration in chapters:
                path = book_dir / name
                path.write_bytes(b"audio")
                sources.append(SourceFile(path=path, duration=duration))
            return ConversionTarget(
                audiobook_id=audiobook_id,
                title=title,
                author="Test Author",
                file_path=sources[0].path,
                is_multi_file=True,
                chapters=sources,
            )

        path = book_dir / filename
        path.write_bytes(b"audio")
        return ConversionTarget(
            audiobook_id=audiobook_id,
            title=title,
            author="Test Author",
            file_path=path,
            duration=3600.0,
        )

    return _make_target


@pytest.fixture
def mock_cover_art() -> MagicMock:
    """Cover art pipeline that finds no cover."""
    mock = MagicMock(spec=CoverArtPipeline)
    mock.extract = AsyncMock(return_value=False)
    mock.embed = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def mock_notifier() -> MagicMock:
    """Records published events."""
    return MagicMock()


@pytest.fixture
def ffmpeg_runner() -> Generator[ControlledRunner, None, None]:
    """Patch the service's ffmpeg runner with a controllable fake."""
    runner = ControlledRunner()
    with patch("services.conversion_service.run_ffmpeg", runner):
        yield runner


@pytest.fixture
async def conversion_service(
    test_settings: Settings,
    mock_cover_art: MagicMock,
    mock_notifier: MagicMock,
    ffmpeg_runner: ControlledRunner,
) -> AsyncGenerator[ConversionService, None]:
    """Conversion service with fake processes and a mocked library store."""
    service = ConversionService(
        settings=test_settings,
        notifier=mock_notifier,
        session_maker=MagicMock(),
        cover_art=mock_cover_art,
    )
    service.committer.library_store = MagicMock()
    service.committer.library_store.commit_conversion = AsyncMock()

    yield service

    await service.shutdown(timeout=1.0)


@pytest.fixture
async def test_engine() -> AsyncGenerator[Any, None]:
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_maker(test_engine: Any) -> sessionmaker:
    """Session factory bound to the test engine."""
    return sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(test_session_maker: sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with test_session_maker() as session:
        yield session


@pytest.fixture
async def client(
    test_session: AsyncSession,
    test_settings: Settings,
    conversion_service: ConversionService,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        yield test_session

    def override_get_settings() -> Settings:
        return test_settings

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = override_get_settings
    app.dependency_overrides[get_conversion_service] = lambda: conversion_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
