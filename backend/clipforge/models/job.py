"""Job model for user-submitted video processing requests."""
import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Enum, Float, Text
from sqlalchemy.orm import relationship

from clipforge.db.database import Base


class JobStatus(str, enum.Enum):
    """Pipeline status, in pipeline order."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


def new_id() -> str:
    return uuid.uuid4().hex


class Job(Base):
    """One submitted video and its pipeline lifecycle."""

    __tablename__ = "jobs"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(255), nullable=False, index=True)

    # Source information
    source_url = Column(String(2048), nullable=False)
    title = Column(String(512), nullable=True)
    media_url = Column(String(4096), nullable=True)  # Durable re-hosted media
    duration = Column(Float, nullable=True)

    # Status
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(String(1024), nullable=True)

    # Worker claim
    lease_owner = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    clips = relationship("Clip", back_populates="job", cascade="all, delete-orphan")
    transcript = relationship(
        "Transcript", back_populates="job", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Job(id={self.id}, owner={self.owner_id}, status={self.status})>"

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "source_url": self.source_url,
            "title": self.title,
            "media_url": self.media_url,
            "duration": self.duration,
            "status": self.status.value,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
