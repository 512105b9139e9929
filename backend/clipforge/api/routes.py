"""API routes."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clipforge.db.database import get_db
from clipforge.domain.job_fsm import InvalidTransitionError
from clipforge.errors import PipelineError
from clipforge.models.clip import Clip, ClipStatus
from clipforge.pipeline.publisher import Publisher
from clipforge.services.connection_service import ConnectionService
from clipforge.services.job_service import JobService
from clipforge.services.quota_service import QuotaService
from clipforge.utils.ffmpeg import check_ffmpeg_available, check_ffprobe_available
from clipforge.utils.ytdlp import check_ytdlp_available
from clipforge.workers.job_runner import JobRunner
from clipforge.api.schemas import (
    JobCreate,
    JobResponse,
    JobDetailResponse,
    TranscriptResponse,
    QuotaResponse,
    PlanUpdate,
    ConnectionCreate,
    ConnectionUpdate,
    ConnectionResponse,
    ClipResponse,
    ClipPublishRequest,
    PublishResultResponse,
    HealthResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_runner(request: Request) -> Optional[JobRunner]:
    return getattr(request.app.state, "runner", None)


def get_publisher(request: Request) -> Optional[Publisher]:
    return getattr(request.app.state, "publisher", None)


# =============================================================================
# Health & System
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Check API health and dependencies."""
    ffmpeg_ok = check_ffmpeg_available()
    ffprobe_ok = check_ffprobe_available()
    ytdlp_ok = check_ytdlp_available()

    all_ok = ffmpeg_ok and ffprobe_ok and ytdlp_ok

    message = None
    if not all_ok:
        missing = []
        if not ffmpeg_ok:
            missing.append("ffmpeg")
        if not ffprobe_ok:
            missing.append("ffprobe")
        if not ytdlp_ok:
            missing.append("yt-dlp")
        message = f"Missing dependencies: {', '.join(missing)}"

    return HealthResponse(
        status="healthy" if all_ok else "degraded",
        ffmpeg_available=ffmpeg_ok,
        ffprobe_available=ffprobe_ok,
        ytdlp_available=ytdlp_ok,
        message=message
    )


# =============================================================================
# Jobs
# =============================================================================

@router.post("/jobs", response_model=JobResponse, status_code=201)
async def submit_job(
    data: JobCreate,
    db: AsyncSession = Depends(get_db),
    runner: Optional[JobRunner] = Depends(get_runner),
):
    """Submit a video for processing. Processing starts in the background."""
    service = JobService(db)
    try:
        job = await service.submit(data.owner_id, data.source_url)
    except PipelineError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # The job must be visible to the worker before it is signalled
    await db.commit()

    if runner is not None:
        await runner.trigger(job.id)
    else:
        logger.warning(f"No job runner configured, job {job.id} left pending")

    return job.to_dict()


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(
    owner_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List jobs, newest first."""
    jobs = await JobService(db).list_jobs(owner_id=owner_id, limit=limit)
    return [job.to_dict() for job in jobs]


@router.get("/jobs/{job_id}", response_model=JobDetailResponse)
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Get a job with its clips."""
    job = await JobService(db).get_job(job_id, with_clips=True)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    result = job.to_dict()
    result["clips"] = [
        clip.to_dict() for clip in sorted(job.clips, key=lambda c: c.ordering)
    ]
    return result


@router.get("/jobs/{job_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(job_id: str, db: AsyncSession = Depends(get_db)):
    """Get the transcript of a job."""
    transcript = await JobService(db).get_transcript(job_id)
    if not transcript:
        raise HTTPException(status_code=404, detail="Transcript not found")
    return transcript.to_dict()


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Cancel a job. A running pipeline stops at its next step boundary."""
    try:
        job = await JobService(db).cancel(job_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


# =============================================================================
# Quota
# =============================================================================

@router.get("/quota/{owner_id}", response_model=QuotaResponse)
async def get_quota(owner_id: str, db: AsyncSession = Depends(get_db)):
    """Get an owner's clip allowance for the current period."""
    record = await QuotaService(db).get_or_create(owner_id)
    return record.to_dict()


@router.put("/quota/{owner_id}/plan", response_model=QuotaResponse)
async def set_plan(owner_id: str, data: PlanUpdate, db: AsyncSession = Depends(get_db)):
    """Apply a plan change from billing."""
    try:
        record = await QuotaService(db).set_plan(owner_id, data.plan)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return record.to_dict()


# =============================================================================
# Platform Connections
# =============================================================================

@router.post("/connections", response_model=ConnectionResponse, status_code=201)
async def create_connection(data: ConnectionCreate, db: AsyncSession = Depends(get_db)):
    """Connect (or reconnect) a platform account."""
    service = ConnectionService(db)
    try:
        connection = await service.upsert_connection(
            owner_id=data.owner_id,
            platform=data.platform,
            access_token=data.access_token,
            refresh_token=data.refresh_token,
            token_expires_at=data.token_expires_at,
            handle=data.handle,
            platform_user_id=data.platform_user_id,
            auto_upload=data.auto_upload,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return connection.to_dict()


@router.get("/connections", response_model=List[ConnectionResponse])
async def list_connections(owner_id: str = Query(...), db: AsyncSession = Depends(get_db)):
    """List an owner's connections."""
    connections = await ConnectionService(db).list_connections(owner_id)
    return [c.to_dict() for c in connections]


@router.patch("/connections/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    connection_id: int,
    data: ConnectionUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Update a connection."""
    try:
        connection = await ConnectionService(db).update_connection(
            connection_id, handle=data.handle, auto_upload=data.auto_upload
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return connection.to_dict()


@router.delete("/connections/{connection_id}")
async def delete_connection(connection_id: int, db: AsyncSession = Depends(get_db)):
    """Disconnect a platform account."""
    deleted = await ConnectionService(db).delete_connection(connection_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"status": "deleted", "id": connection_id}


# =============================================================================
# Clips
# =============================================================================

async def _load_clip(db: AsyncSession, clip_id: str) -> Clip:
    result = await db.execute(
        select(Clip).where(Clip.id == clip_id).options(selectinload(Clip.uploads))
    )
    clip = result.scalar_one_or_none()
    if not clip:
        raise HTTPException(status_code=404, detail="Clip not found")
    return clip


@router.get("/clips/{clip_id}", response_model=ClipResponse)
async def get_clip(clip_id: str, db: AsyncSession = Depends(get_db)):
    """Get a clip with its per-platform upload status."""
    clip = await _load_clip(db, clip_id)
    return clip.to_dict()


@router.post("/clips/{clip_id}/publish", response_model=List[PublishResultResponse])
async def publish_clip(
    clip_id: str,
    data: ClipPublishRequest,
    db: AsyncSession = Depends(get_db),
    publisher: Optional[Publisher] = Depends(get_publisher),
):
    """Publish (or retry publishing) a rendered clip to connected platforms."""
    if publisher is None:
        raise HTTPException(status_code=503, detail="Publishing is not configured")

    clip = await _load_clip(db, clip_id)
    if clip.status != ClipStatus.COMPLETED:
        raise HTTPException(status_code=409, detail="Only rendered clips can be published")

    try:
        connections = await ConnectionService(db).get_connections_for_publishing(
            clip.owner_id, platforms=data.platforms, auto_only=False
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not connections:
        raise HTTPException(status_code=400, detail="No connected platforms to publish to")

    # Release the read transaction before the uploads write their own rows
    await db.commit()

    outcomes = await publisher.publish(clip, connections)
    return [o.to_dict() for o in outcomes]
