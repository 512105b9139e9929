"""Transcript model."""
from dataclasses import dataclass
from datetime import datetime
from typing import List
from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from clipforge.db.database import Base


@dataclass
class Segment:
    """One timestamped piece of speech."""
    start: float
    end: float
    text: str

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self):
        return {"start": self.start, "end": self.end, "text": self.text}


class Transcript(Base):
    """Transcript of a job's media. Written once, never updated."""

    __tablename__ = "transcripts"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(
        String(32), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    full_text = Column(Text, nullable=False, default="")
    segments = Column(JSON, nullable=False, default=list)  # [{start, end, text}, ...]
    language = Column(String(16), nullable=True)
    duration = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    job = relationship("Job", back_populates="transcript")

    def __repr__(self):
        return f"<Transcript(job_id={self.job_id}, segments={len(self.segments or [])})>"

    def get_segments(self) -> List[Segment]:
        """Segments as dataclasses."""
        return [
            Segment(start=float(s["start"]), end=float(s["end"]), text=s.get("text", ""))
            for s in (self.segments or [])
        ]

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "job_id": self.job_id,
            "full_text": self.full_text,
            "segments": self.segments or [],
            "language": self.language,
            "duration": self.duration,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
