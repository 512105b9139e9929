"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


# =============================================================================
# Job Schemas
# =============================================================================

class JobCreate(BaseModel):
    """Request to process a video."""
    owner_id: str = Field(..., min_length=1, description="Account that owns the job")
    source_url: str = Field(..., description="YouTube video URL")


class UploadStatusResponse(BaseModel):
    """Upload state of a clip on one platform."""
    status: str
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    error: Optional[str] = None


class ClipResponse(BaseModel):
    """Clip response."""
    id: str
    job_id: str
    owner_id: str
    title: str
    start_time: float
    end_time: float
    duration: float
    score: Optional[float]
    hook: Optional[str]
    rationale: Optional[str]
    transcript_excerpt: Optional[str]
    status: str
    media_url: Optional[str]
    thumbnail_url: Optional[str]
    error_message: Optional[str]
    platforms: Dict[str, UploadStatusResponse] = {}
    created_at: Optional[datetime]
    completed_at: Optional[datetime]


class JobResponse(BaseModel):
    """Job response."""
    id: str
    owner_id: str
    source_url: str
    title: Optional[str]
    media_url: Optional[str]
    duration: Optional[float]
    status: str
    error_code: Optional[str]
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


class JobDetailResponse(JobResponse):
    """Job with its clips."""
    clips: List[ClipResponse] = []


class SegmentResponse(BaseModel):
    start: float
    end: float
    text: str


class TranscriptResponse(BaseModel):
    """Transcript response."""
    job_id: str
    full_text: str
    segments: List[SegmentResponse]
    language: Optional[str]
    duration: Optional[float]
    created_at: Optional[datetime]


# =============================================================================
# Quota Schemas
# =============================================================================

class QuotaResponse(BaseModel):
    """Quota response."""
    owner_id: str
    plan: str
    limit: int
    used: int
    remaining: Optional[int]
    unlimited: bool
    period_start: datetime
    period_end: datetime


class PlanUpdate(BaseModel):
    """Plan change pushed by billing."""
    plan: str = Field(..., description="Plan tier (free, starter, pro, unlimited)")


# =============================================================================
# Connection Schemas
# =============================================================================

class ConnectionCreate(BaseModel):
    """Request to connect a platform account."""
    owner_id: str = Field(..., min_length=1)
    platform: str = Field(..., description="Platform (youtube_shorts, instagram_reels)")
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    handle: Optional[str] = None
    platform_user_id: Optional[str] = Field(None, description="Channel id or Instagram business account id")
    auto_upload: bool = False


class ConnectionUpdate(BaseModel):
    """Request to update a connection."""
    handle: Optional[str] = None
    auto_upload: Optional[bool] = None


class ConnectionResponse(BaseModel):
    """Connection response (tokens are never returned)."""
    id: int
    owner_id: str
    platform: str
    handle: Optional[str]
    platform_user_id: Optional[str]
    auth_status: str
    auto_upload: bool
    token_expires_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    last_upload_at: Optional[datetime]


# =============================================================================
# Publishing Schemas
# =============================================================================

class ClipPublishRequest(BaseModel):
    """Request to publish a clip now."""
    platforms: Optional[List[str]] = Field(None, description="Platforms to publish to (default: all connected)")


class PublishResultResponse(BaseModel):
    """Result of one platform upload."""
    clip_id: str
    platform: str
    status: str
    external_url: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# System Schemas
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    ffmpeg_available: bool
    ffprobe_available: bool
    ytdlp_available: bool
    message: Optional[str] = None
