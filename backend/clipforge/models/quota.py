"""Quota record model for monthly clip allowances."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime

from clipforge.db.database import Base

UNLIMITED = -1


class QuotaRecord(Base):
    """Per-owner clip allowance for the current billing period."""

    __tablename__ = "quota_records"

    owner_id = Column(String(255), primary_key=True)

    plan = Column(String(32), default="free", nullable=False)
    monthly_limit = Column(Integer, nullable=False)  # UNLIMITED (-1) means no limit
    consumed = Column(Integer, default=0, nullable=False)

    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_limit == UNLIMITED

    @property
    def remaining(self):
        """Clips left in this period, or None when unlimited."""
        if self.is_unlimited:
            return None
        return max(0, self.monthly_limit - self.consumed)

    def __repr__(self):
        return f"<QuotaRecord(owner={self.owner_id}, {self.consumed}/{self.monthly_limit})>"

    def to_dict(self):
        return {
            "owner_id": self.owner_id,
            "plan": self.plan,
            "limit": self.monthly_limit,
            "used": self.consumed,
            "remaining": self.remaining,
            "unlimited": self.is_unlimited,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }
