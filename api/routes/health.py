"""Health check endpoints."""

import shutil
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.session import check_database, get_session

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy", "degraded"]
    database: Literal["connected", "disconnected"]
    filesystem: Literal["accessible", "inaccessible"]
    ffmpeg: Literal["available", "missing"]
    tone: Literal["available", "missing"]
    version: str
    environment: str


class LivenessResponse(BaseModel):
    """Kubernetes liveness probe response."""

    status: Literal["ok"]


class ReadinessResponse(BaseModel):
    """Kubernetes readiness probe response."""

    status: Literal["ready", "not_ready"]
    details: dict[str, bool]


def _temp_dir_ok(settings: Settings) -> bool:
    try:
        return settings.upload_dir.exists() or settings.upload_dir.parent.exists()
    except OSError:
        return False


def _tool_available(path: str) -> bool:
    return shutil.which(path) is not None


@router.get("/health", response_model=HealthStatus)
async def health_check(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> HealthStatus:
    """Full health check endpoint."""
    db_ok = await check_database(session)
    fs_ok = _temp_dir_ok(settings)
    ffmpeg_ok = _tool_available(settings.ffmpeg_path)
    # Cover embedding degrades gracefully without tone
    tone_ok = _tool_available(settings.tone_path)

    overall: Literal["healthy", "unhealthy", "degraded"]
    if db_ok and fs_ok and ffmpeg_ok and tone_ok:
        overall = "healthy"
    elif db_ok:
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthStatus(
        status=overall,
        database="connected" if db_ok else "disconnected",
        filesystem="accessible" if fs_ok else "inaccessible",
        ffmpeg="available" if ffmpeg_ok else "missing",
        tone="available" if tone_ok else "missing",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get("/health/live", response_model=LivenessResponse)
async def liveness_probe() -> LivenessResponse:
    """Kubernetes liveness probe - checks if app is running."""
    return LivenessResponse(status="ok")


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_probe(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ReadinessResponse:
    """Kubernetes readiness probe - checks if conversions can be served."""
    checks = {
        "database": await check_database(session),
        "filesystem": _temp_dir_ok(settings),
        "ffmpeg": _tool_available(settings.ffmpeg_path),
    }

    return ReadinessResponse(
        status="ready" if all(checks.values()) else "not_ready",
        details=checks,
    )
