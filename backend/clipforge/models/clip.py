"""Clip model and per-platform upload records."""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum, Float, ForeignKey, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from clipforge.db.database import Base
from clipforge.models.connection import Platform
from clipforge.models.job import new_id


class ClipStatus(str, enum.Enum):
    """Render status of a clip."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadStatus(str, enum.Enum):
    """Status of one clip on one platform."""
    NOT_ATTEMPTED = "not_attempted"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


class Clip(Base):
    """A rendered output derived from one accepted highlight."""

    __tablename__ = "clips"

    id = Column(String(32), primary_key=True, default=new_id)
    job_id = Column(String(32), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id = Column(String(255), nullable=False, index=True)

    # Highlight
    title = Column(String(255), nullable=False)
    start_time = Column(Float, nullable=False)  # seconds
    end_time = Column(Float, nullable=False)  # seconds
    score = Column(Float, nullable=True)  # 0-100
    hook = Column(Text, nullable=True)
    rationale = Column(Text, nullable=True)
    transcript_excerpt = Column(Text, nullable=True)
    ordering = Column(Integer, default=0, nullable=False)

    # Render output
    status = Column(Enum(ClipStatus), default=ClipStatus.PENDING, nullable=False)
    render_job_id = Column(String(255), nullable=True)
    media_url = Column(String(4096), nullable=True)
    thumbnail_url = Column(String(4096), nullable=True)
    error_message = Column(String(1024), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    job = relationship("Job", back_populates="clips")
    uploads = relationship("ClipUpload", back_populates="clip", cascade="all, delete-orphan")

    @property
    def duration(self) -> float:
        """Clip duration in seconds."""
        return self.end_time - self.start_time

    def __repr__(self):
        return f"<Clip(id={self.id}, {self.start_time:.2f}-{self.end_time:.2f}, status={self.status})>"

    def platform_status(self, uploads=None) -> dict:
        """Per-platform upload status map."""
        uploads = self.uploads if uploads is None else uploads
        return {upload.platform.value: upload.to_dict() for upload in uploads}

    def to_dict(self, uploads=None):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "title": self.title,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "score": self.score,
            "hook": self.hook,
            "rationale": self.rationale,
            "transcript_excerpt": self.transcript_excerpt,
            "status": self.status.value,
            "media_url": self.media_url,
            "thumbnail_url": self.thumbnail_url,
            "error_message": self.error_message,
            "platforms": self.platform_status(uploads),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ClipUpload(Base):
    """Upload state of one clip on one platform."""

    __tablename__ = "clip_uploads"
    __table_args__ = (UniqueConstraint("clip_id", "platform", name="uq_clip_platform"),)

    id = Column(Integer, primary_key=True, index=True)
    clip_id = Column(String(32), ForeignKey("clips.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(Enum(Platform), nullable=False)

    status = Column(Enum(UploadStatus), default=UploadStatus.NOT_ATTEMPTED, nullable=False)
    external_id = Column(String(255), nullable=True)
    external_url = Column(String(2048), nullable=True)
    error = Column(String(1024), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    clip = relationship("Clip", back_populates="uploads")

    def __repr__(self):
        return f"<ClipUpload(clip_id={self.clip_id}, platform={self.platform}, status={self.status})>"

    def to_dict(self):
        return {
            "status": self.status.value,
            "external_id": self.external_id,
            "external_url": self.external_url,
            "error": self.error,
        }
