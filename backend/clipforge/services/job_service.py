"""Job service layer: submission, reads and the conditional writes that move a job."""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clipforge.domain.job_fsm import ACTIVE_STATES, TERMINAL_STATES, InvalidTransitionError, ensure_transition
from clipforge.errors import InvalidInputError, JobCancelledError
from clipforge.models.clip import Clip
from clipforge.models.job import Job, JobStatus
from clipforge.models.transcript import Transcript
from clipforge.utils.ytdlp import is_supported_source_url

logger = logging.getLogger(__name__)


class JobService:
    """Service for job operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def submit(self, owner_id: str, source_url: str) -> Job:
        """
        Create a pending job for a source URL.

        Raises:
            InvalidInputError: the URL is not an accepted source link
        """
        source_url = (source_url or "").strip()
        if not owner_id:
            raise ValueError("owner_id is required")
        if not is_supported_source_url(source_url):
            raise InvalidInputError()

        job = Job(owner_id=owner_id, source_url=source_url, status=JobStatus.PENDING)
        self.db.add(job)
        await self.db.flush()
        await self.db.refresh(job)

        logger.info(f"Job {job.id} submitted by {owner_id}")
        return job

    async def get_job(self, job_id: str, with_clips: bool = False) -> Optional[Job]:
        query = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        if with_clips:
            query = query.options(selectinload(Job.clips).selectinload(Clip.uploads))
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        result = await self.db.execute(select(Job.status).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def list_jobs(self, owner_id: Optional[str] = None, limit: int = 50) -> List[Job]:
        """List jobs, newest first, optionally filtered by owner."""
        query = select(Job).order_by(Job.created_at.desc()).limit(limit)
        if owner_id is not None:
            query = query.where(Job.owner_id == owner_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_transcript(self, job_id: str) -> Optional[Transcript]:
        result = await self.db.execute(select(Transcript).where(Transcript.job_id == job_id))
        return result.scalar_one_or_none()

    # =========================================================================
    # Status writes
    # =========================================================================

    async def transition(self, job_id: str, expected: JobStatus, new: JobStatus, **fields) -> bool:
        """
        Compare-and-set the job status, writing ``fields`` alongside.

        Returns False when the job is no longer in ``expected`` (e.g. it was
        cancelled in the meantime). Raises InvalidTransitionError for a move
        the lifecycle does not allow.
        """
        ensure_transition(expected, new)

        now = datetime.utcnow()
        values = dict(fields, status=new, updated_at=now)
        if new == JobStatus.COMPLETED:
            values.setdefault("completed_at", now)

        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount == 1

    async def fail(self, job_id: str, code: str, message: str) -> bool:
        """
        Move a job to failed from any non-terminal status.

        Returns False if the job was already terminal; a terminal status is
        never overwritten.
        """
        now = datetime.utcnow()
        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.not_in(list(TERMINAL_STATES)))
            .values(
                status=JobStatus.FAILED,
                error_code=code,
                error_message=message[:1024],
                updated_at=now,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount == 1

    async def cancel(self, job_id: str) -> Optional[Job]:
        """
        Cancel a job. It goes straight to failed; a running worker notices at
        its next step boundary.

        Returns None if the job does not exist. Raises InvalidTransitionError
        if it already finished.
        """
        if await self.get_status(job_id) is None:
            return None

        cancelled = JobCancelledError()
        if not await self.fail(job_id, cancelled.code, cancelled.message):
            status = await self.get_status(job_id)
            raise InvalidTransitionError(status, JobStatus.FAILED)

        logger.info(f"Job {job_id} cancelled by user")
        return await self.get_job(job_id)

    # =========================================================================
    # Worker lease
    # =========================================================================

    async def claim(
        self,
        job_id: str,
        worker_id: str,
        ttl_seconds: float,
        statuses,
    ) -> bool:
        """
        Take the lease on a job in one of ``statuses`` unless another worker
        holds a live lease on it.
        """
        now = datetime.utcnow()
        result = await self.db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status.in_(list(statuses)),
                or_(
                    Job.lease_owner.is_(None),
                    Job.lease_owner == worker_id,
                    Job.lease_expires_at.is_(None),
                    Job.lease_expires_at < now,
                ),
            )
            .values(
                lease_owner=worker_id,
                lease_expires_at=now + timedelta(seconds=ttl_seconds),
                started_at=func.coalesce(Job.started_at, now),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount == 1

    async def renew_lease(self, job_id: str, worker_id: str, ttl_seconds: float) -> bool:
        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.lease_owner == worker_id)
            .values(lease_expires_at=datetime.utcnow() + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount == 1

    async def release_lease(self, job_id: str, worker_id: str) -> None:
        await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.lease_owner == worker_id)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()

    async def list_resumable(self) -> List[str]:
        """Ids of jobs left mid-pipeline (or never started) with no live lease."""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(Job.id)
            .where(
                Job.status.in_(list(ACTIVE_STATES) + [JobStatus.PENDING]),
                or_(
                    Job.lease_owner.is_(None),
                    and_(Job.lease_expires_at.is_not(None), Job.lease_expires_at < now),
                ),
            )
            .order_by(Job.created_at)
        )
        return list(result.scalars().all())
