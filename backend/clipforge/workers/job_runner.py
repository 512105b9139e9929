"""Background job runner using asyncio."""
import asyncio
import logging
import os
import socket
import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.domain.job_fsm import ACTIVE_STATES
from clipforge.models.job import JobStatus
from clipforge.pipeline.orchestrator import PipelineOrchestrator
from clipforge.services.job_service import JobService

logger = logging.getLogger(__name__)

JOB_TIMEOUT_CODE = "job_timeout"
JOB_TIMEOUT_MESSAGE = "Processing took too long and was stopped."


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class JobRunner:
    """
    Async background job runner.

    A job runs only while this worker holds its lease. A fresh trigger
    claims pending jobs only; ``resume_incomplete`` picks up jobs left
    mid-pipeline by a worker whose lease has lapsed.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        session_maker: async_sessionmaker,
        lease_ttl: float = 120.0,
        job_timeout: Optional[float] = None,
        worker_id: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.session_maker = session_maker
        self.lease_ttl = lease_ttl
        self.job_timeout = job_timeout
        self.worker_id = worker_id or default_worker_id()
        self.heartbeat_interval = heartbeat_interval or max(1.0, lease_ttl / 3)
        self._running_jobs: Dict[str, asyncio.Task] = {}

    async def trigger(self, job_id: str) -> bool:
        """
        Start a newly submitted job in the background.

        Returns False if the job is not pending or is already claimed.
        """
        return await self._claim_and_start(job_id, [JobStatus.PENDING])

    async def resume_incomplete(self) -> List[str]:
        """Claim and restart every job left unfinished with no live lease."""
        async with self.session_maker() as session:
            job_ids = await JobService(session).list_resumable()

        resumed = []
        for job_id in job_ids:
            if await self._claim_and_start(job_id, list(ACTIVE_STATES) + [JobStatus.PENDING]):
                resumed.append(job_id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} unfinished jobs")
        return resumed

    async def _claim_and_start(self, job_id: str, statuses: Iterable[JobStatus]) -> bool:
        if job_id in self._running_jobs:
            logger.warning(f"Job {job_id} is already running")
            return False

        async with self.session_maker() as session:
            claimed = await JobService(session).claim(job_id, self.worker_id, self.lease_ttl, statuses)
            await session.commit()
        if not claimed:
            logger.info(f"Job {job_id} not claimable by {self.worker_id}")
            return False

        task = asyncio.create_task(self._run_job(job_id))
        self._running_jobs[job_id] = task
        return True

    async def _run_job(self, job_id: str):
        """Run a job under its lease, with the per-job timeout."""
        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        try:
            if self.job_timeout:
                await asyncio.wait_for(self.orchestrator.run(job_id), self.job_timeout)
            else:
                await self.orchestrator.run(job_id)

        except asyncio.TimeoutError:
            logger.error(f"Job {job_id} exceeded the {self.job_timeout:.0f}s job timeout")
            async with self.session_maker() as session:
                await JobService(session).fail(job_id, JOB_TIMEOUT_CODE, JOB_TIMEOUT_MESSAGE)
                await session.commit()

        except asyncio.CancelledError:
            # Shutdown or lost lease: the job keeps its checkpointed status and is resumed later
            logger.info(f"Job {job_id} interrupted, will resume from its checkpoint")
            raise

        except Exception:
            logger.exception(f"Job {job_id} crashed in the runner")

        finally:
            heartbeat.cancel()
            try:
                async with self.session_maker() as session:
                    await JobService(session).release_lease(job_id, self.worker_id)
                    await session.commit()
            except Exception:
                logger.exception(f"Failed to release lease on job {job_id}")
            self._running_jobs.pop(job_id, None)

    async def _heartbeat(self, job_id: str):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                async with self.session_maker() as session:
                    renewed = await JobService(session).renew_lease(job_id, self.worker_id, self.lease_ttl)
                    await session.commit()
            except Exception:
                logger.exception(f"Lease renewal failed for job {job_id}")
                continue
            if not renewed:
                logger.warning(f"Lost lease on job {job_id}, stopping it")
                task = self._running_jobs.get(job_id)
                if task is not None:
                    task.cancel()
                return

    def is_job_running(self, job_id: str) -> bool:
        """Check if a job is currently running in this worker."""
        return job_id in self._running_jobs

    async def wait_for(self, job_id: str) -> None:
        """Wait until a running job's task finishes."""
        task = self._running_jobs.get(job_id)
        if task:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self):
        """Cancel all running jobs; they resume from their checkpoints on restart."""
        for task in self._running_jobs.values():
            task.cancel()

        if self._running_jobs:
            await asyncio.gather(
                *self._running_jobs.values(),
                return_exceptions=True
            )

        self._running_jobs.clear()
