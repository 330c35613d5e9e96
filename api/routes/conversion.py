"""M4B conversion endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_session
from services.conversion_jobs import JobStatusView
from services.conversion_service import JOB_KIND, ConversionService
from services.library_store import load_conversion_target
from services.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)

router = APIRouter()

# Global managers (started by the application lifespan)
ws_manager = WebSocketManager()
conversion_service = ConversionService(notifier=ws_manager)


def get_conversion_service() -> ConversionService:
    """Get the conversion service instance."""
    return conversion_service


class ConversionStartResponse(BaseModel):
    """Response for a scheduled conversion."""

    message: str
    job_id: str
    status: str


class ConversionStatusResponse(BaseModel):
    """Whether an audiobook has a conversion in flight."""

    active: bool
    job: JobStatusView | None = None


class ConversionJobListResponse(BaseModel):
    """Active conversion jobs."""

    jobs: list[JobStatusView]


class MessageResponse(BaseModel):
    message: str


@router.post(
    "/audiobooks/{audiobook_id}/convert-to-m4b",
    response_model=ConversionStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def convert_to_m4b(
    audiobook_id: int,
    session: AsyncSession = Depends(get_session),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionStartResponse:
    """Start converting an audiobook to M4B."""
    target = await load_conversion_target(session, audiobook_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Audiobook not found")

    result = service.start_conversion(target)
    if "error" in result:
        raise HTTPException(status_code=400, detail=result["error"])

    return ConversionStartResponse(
        message="Conversion started",
        job_id=result["job_id"],
        status=result["status"],
    )


@router.get("/audiobooks/{audiobook_id}/conversion-status", response_model=ConversionStatusResponse)
async def get_conversion_status(
    audiobook_id: int,
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionStatusResponse:
    """Report the active conversion of an audiobook, if any."""
    job = service.get_active_job_for_audiobook(audiobook_id)
    return ConversionStatusResponse(active=job is not None, job=job)


@router.get("/jobs/conversion", response_model=ConversionJobListResponse)
async def list_conversion_jobs(
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobListResponse:
    """List conversions that have not finished yet."""
    return ConversionJobListResponse(jobs=service.get_active_jobs())


@router.get("/jobs/conversion/{job_id}", response_model=JobStatusView)
async def get_conversion_job(
    job_id: str,
    service: ConversionService = Depends(get_conversion_service),
) -> JobStatusView:
    """Get a conversion job by ID."""
    job = service.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.delete("/jobs/conversion/{job_id}", response_model=MessageResponse)
async def cancel_conversion_job(
    job_id: str,
    service: ConversionService = Depends(get_conversion_service),
) -> MessageResponse:
    """Cancel a queued or running conversion."""
    result: dict[str, Any] = service.cancel_job(job_id)
    if "error" in result:
        raise HTTPException(status_code=400, detail=result["error"])
    return MessageResponse(message="Conversion cancelled")


@router.websocket("/jobs/conversion/ws")
async def conversion_websocket(websocket: WebSocket) -> None:
    """
    Live conversion feed.

    Sends the active jobs on connect, then every job and library update.
    """
    await ws_manager.connect(websocket, JOB_KIND)
    try:
        await websocket.send_json(
            {
                "type": "snapshot",
                "jobs": [job.model_dump(mode="json") for job in conversion_service.get_active_jobs()],
            }
        )
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug("Conversion websocket closed: %s", e)
    finally:
        ws_manager.disconnect(websocket, JOB_KIND)
