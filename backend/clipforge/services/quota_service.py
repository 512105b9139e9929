"""Quota service: per-owner monthly clip allowance."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.config import settings
from clipforge.models.quota import QuotaRecord, UNLIMITED

logger = logging.getLogger(__name__)

DEFAULT_PLAN = "free"


@dataclass
class QuotaCheck:
    """Result of a quota reservation check."""
    allowed: bool
    used: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(0, self.limit - self.used)

    def to_dict(self):
        return {
            "allowed": self.allowed,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
        }


class QuotaService:
    """
    Reads and mutates quota records.

    Every mutation is a single conditional UPDATE so concurrent clip
    completions (and plan changes from billing sync) never lose writes.
    Callers own the transaction: ``increment_on_success`` and ``set_plan``
    only flush, the caller commits.
    """

    def __init__(
        self,
        db: AsyncSession,
        plan_limits: Optional[Dict[str, int]] = None,
        period_days: Optional[int] = None,
    ):
        self.db = db
        self.plan_limits = plan_limits or settings.plan_limits
        self.period_days = period_days or settings.quota_period_days

    async def _load(self, owner_id: str) -> Optional[QuotaRecord]:
        result = await self.db.execute(
            select(QuotaRecord)
            .where(QuotaRecord.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _roll_period_if_due(self, owner_id: str, now: datetime) -> None:
        """Start a new period (consumed back to zero) once the current one has ended."""
        result = await self.db.execute(
            update(QuotaRecord)
            .where(QuotaRecord.owner_id == owner_id, QuotaRecord.period_end <= now)
            .values(
                consumed=0,
                period_start=now,
                period_end=now + timedelta(days=self.period_days),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Quota period rolled over for owner {owner_id}")

    async def get_or_create(self, owner_id: str) -> QuotaRecord:
        """
        Current quota record for an owner, creating a free-tier one if absent.

        Should be called before the session holds other pending changes: a
        concurrent create of the same record rolls the session back.
        """
        now = datetime.utcnow()
        record = await self._load(owner_id)
        if record is None:
            record = QuotaRecord(
                owner_id=owner_id,
                plan=DEFAULT_PLAN,
                monthly_limit=self.plan_limits.get(DEFAULT_PLAN, 0),
                consumed=0,
                period_start=now,
                period_end=now + timedelta(days=self.period_days),
            )
            self.db.add(record)
            try:
                await self.db.flush()
                return record
            except IntegrityError:
                # Created concurrently by another session
                await self.db.rollback()
                record = await self._load(owner_id)

        if record.period_end <= now:
            await self._roll_period_if_due(owner_id, now)
            await self.db.flush()
            record = await self._load(owner_id)

        return record

    async def reserve(self, owner_id: str) -> QuotaCheck:
        """
        Check whether the owner may generate more clips.

        Nothing is consumed here; consumption happens per completed clip.
        """
        record = await self.get_or_create(owner_id)
        allowed = record.is_unlimited or record.consumed < record.monthly_limit
        return QuotaCheck(allowed=allowed, used=record.consumed, limit=record.monthly_limit)

    async def increment_on_success(self, owner_id: str) -> bool:
        """
        Atomically consume one unit of allowance.

        Returns False when the limit was already reached, in which case
        nothing changed.
        """
        result = await self.db.execute(
            update(QuotaRecord)
            .where(
                QuotaRecord.owner_id == owner_id,
                or_(
                    QuotaRecord.monthly_limit == UNLIMITED,
                    QuotaRecord.consumed < QuotaRecord.monthly_limit,
                ),
            )
            .values(consumed=QuotaRecord.consumed + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_plan(self, owner_id: str, plan: str) -> QuotaRecord:
        """Apply a plan change from billing. Leaves ``consumed`` untouched."""
        if plan not in self.plan_limits:
            valid = sorted(self.plan_limits)
            raise ValueError(f"Invalid plan '{plan}'. Must be one of: {valid}")

        await self.get_or_create(owner_id)
        await self.db.execute(
            update(QuotaRecord)
            .where(QuotaRecord.owner_id == owner_id)
            .values(plan=plan, monthly_limit=self.plan_limits[plan], updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        logger.info(f"Owner {owner_id} moved to plan {plan}")
        return await self._load(owner_id)
