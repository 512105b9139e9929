"""Pipeline orchestrator: drives one job through its checkpointed steps."""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.config import Settings
from clipforge.domain.job_fsm import TERMINAL_STATES, InvalidTransitionError, next_status
from clipforge.errors import (
    JobCancelledError,
    PipelineError,
    ProviderError,
    QuotaExceededError,
    SourceUnavailableError,
    is_retryable,
)
from clipforge.models.clip import Clip, ClipStatus
from clipforge.models.job import Job, JobStatus
from clipforge.pipeline.clip_renderer import ClipRenderer
from clipforge.pipeline.highlight_selector import HighlightSelector
from clipforge.pipeline.publisher import Publisher
from clipforge.pipeline.source_resolver import SourceResolver
from clipforge.pipeline.transcriber import Transcriber
from clipforge.providers import Providers
from clipforge.services.job_service import JobService
from clipforge.services.quota_service import QuotaService

logger = logging.getLogger(__name__)

# Shown to the user when a step gives up on a provider or an unexpected error
STEP_FAILURE_MESSAGES: Dict[JobStatus, str] = {
    JobStatus.PENDING: "Could not start processing. Please try again.",
    JobStatus.DOWNLOADING: "Could not download the video. Please try again later.",
    JobStatus.TRANSCRIBING: "Transcription failed. Please try again later.",
    JobStatus.ANALYZING: "Highlight analysis failed. Please try again later.",
    JobStatus.GENERATING: "Clip generation failed. Please try again later.",
}

StepFn = Callable[[str], Awaitable[None]]


class PipelineOrchestrator:
    """
    Runs a job from its persisted status to a terminal one.

    Each step persists its output before the status moves on, and every step
    skips work whose output is already stored, so re-running a job after a
    crash picks up where it stopped. Status moves are compare-and-set: a job
    cancelled (set to failed) by someone else is never moved back.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        resolver: SourceResolver,
        transcriber: Transcriber,
        selector: HighlightSelector,
        renderer: ClipRenderer,
        publisher: Optional[Publisher] = None,
        max_attempts: int = 3,
        analyze_max_attempts: int = 2,
        backoff_base: float = 2.0,
        backoff_max: float = 30.0,
        step_timeouts: Optional[Dict[JobStatus, float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_maker = session_maker
        self.resolver = resolver
        self.transcriber = transcriber
        self.selector = selector
        self.renderer = renderer
        self.publisher = publisher
        self.max_attempts = max(1, max_attempts)
        self.analyze_max_attempts = max(1, analyze_max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.step_timeouts = step_timeouts or {}
        self._sleep = sleep

        self._steps: Dict[JobStatus, StepFn] = {
            JobStatus.DOWNLOADING: self._download,
            JobStatus.TRANSCRIBING: self._transcribe,
            JobStatus.ANALYZING: self._analyze,
            JobStatus.GENERATING: self._generate,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        providers: Providers,
        session_maker: async_sessionmaker,
    ) -> "PipelineOrchestrator":
        """Wire the pipeline components from settings and provider adapters."""
        return cls(
            session_maker=session_maker,
            resolver=SourceResolver(
                providers.fetchers,
                providers.storage,
                session_maker,
                settings.work_dir,
                min_download_bytes=settings.min_download_bytes,
            ),
            transcriber=Transcriber(
                providers.transcriber,
                providers.storage,
                session_maker,
                work_dir=settings.work_dir / "audio",
            ),
            selector=HighlightSelector(
                providers.scorer,
                min_seconds=settings.highlight_min_seconds,
                max_seconds=settings.highlight_max_seconds,
                requested_count=settings.requested_clip_count,
                max_count=settings.max_clips_per_job,
            ),
            renderer=ClipRenderer(
                providers.renderer,
                session_maker,
                concurrency=settings.render_concurrency,
                poll_interval=settings.render_poll_interval,
                max_polls=settings.render_max_polls,
                timeout=settings.render_timeout_seconds,
            ),
            publisher=Publisher(providers.uploaders, session_maker),
            max_attempts=settings.step_max_attempts,
            analyze_max_attempts=settings.analyze_max_attempts,
            backoff_base=settings.retry_backoff_base,
            backoff_max=settings.retry_backoff_max,
            step_timeouts={
                JobStatus.DOWNLOADING: settings.download_timeout,
                JobStatus.TRANSCRIBING: settings.transcribe_timeout,
                JobStatus.ANALYZING: settings.analyze_timeout,
                JobStatus.GENERATING: settings.generate_timeout,
            },
        )

    # =========================================================================
    # Driver
    # =========================================================================

    async def run(self, job_id: str) -> Optional[JobStatus]:
        """
        Drive a job to completion or failure.

        Returns the final status, or None if the job does not exist.
        """
        status = await self._get_status(job_id)
        if status is None:
            logger.warning(f"Job {job_id} not found")
            return None
        if status in TERMINAL_STATES:
            logger.info(f"Job {job_id} already {status.value}, nothing to do")
            return status

        logger.info(f"Job {job_id}: running from {status.value}")
        try:
            if status == JobStatus.PENDING:
                await self._check_quota(job_id)
                await self._advance(job_id, JobStatus.PENDING, JobStatus.DOWNLOADING)
                status = JobStatus.DOWNLOADING

            while status not in TERMINAL_STATES:
                await self._ensure_active(job_id, status)
                await self._run_step(job_id, status, self._steps[status])
                new_status = next_status(status)
                await self._advance(job_id, status, new_status)
                status = new_status

            logger.info(f"Job {job_id} completed")
            return status

        except JobCancelledError:
            logger.info(f"Job {job_id} was cancelled, stopping at {status.value}")
            return JobStatus.FAILED
        except Exception as e:
            await self._fail(job_id, status, e)
            return JobStatus.FAILED

    async def _run_step(self, job_id: str, status: JobStatus, step: StepFn) -> None:
        """Run one step with its retry budget and timeout."""
        max_attempts = self.analyze_max_attempts if status == JobStatus.ANALYZING else self.max_attempts
        timeout = self.step_timeouts.get(status)

        attempt = 0
        while True:
            attempt += 1
            try:
                if timeout:
                    await asyncio.wait_for(step(job_id), timeout)
                else:
                    await step(job_id)
                return
            except JobCancelledError:
                raise
            except asyncio.TimeoutError as e:
                error = ProviderError(f"{status.value} step timed out after {timeout:.0f}s")
                error.__cause__ = e
            except Exception as e:
                error = e

            if not is_retryable(error) or attempt >= max_attempts:
                logger.warning(
                    f"Job {job_id}: {status.value} failed after {attempt} attempt(s): {error}"
                )
                raise error

            delay = self._backoff(attempt)
            logger.info(
                f"Job {job_id}: {status.value} attempt {attempt}/{max_attempts} failed ({error}), "
                f"retrying in {delay:.1f}s"
            )
            await self._sleep(delay)
            await self._ensure_active(job_id, status)

    def _backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter."""
        delay = min(self.backoff_max, self.backoff_base ** attempt)
        return delay * random.uniform(0.5, 1.0)

    # =========================================================================
    # Status bookkeeping
    # =========================================================================

    async def _get_status(self, job_id: str) -> Optional[JobStatus]:
        async with self.session_maker() as session:
            return await JobService(session).get_status(job_id)

    async def _get_job(self, job_id: str) -> Job:
        async with self.session_maker() as session:
            job = await JobService(session).get_job(job_id)
        if job is None:
            raise JobCancelledError("Job no longer exists")
        return job

    async def _ensure_active(self, job_id: str, expected: JobStatus) -> None:
        """Cooperative cancellation check at step boundaries."""
        status = await self._get_status(job_id)
        if status == JobStatus.FAILED or status is None:
            raise JobCancelledError()
        if status != expected:
            raise InvalidTransitionError(status, expected)

    async def _advance(self, job_id: str, current: JobStatus, new: JobStatus) -> None:
        async with self.session_maker() as session:
            moved = await JobService(session).transition(job_id, current, new)
            await session.commit()
        if not moved:
            await self._ensure_active(job_id, current)
            raise InvalidTransitionError(current, new)
        logger.info(f"Job {job_id}: {current.value} -> {new.value}")

    async def _fail(self, job_id: str, status: JobStatus, error: BaseException) -> None:
        if isinstance(error, PipelineError) and not isinstance(error, ProviderError):
            code, message = error.code, error.message
        elif isinstance(error, ProviderError):
            code, message = error.code, STEP_FAILURE_MESSAGES.get(status, error.message)
        else:
            code, message = PipelineError.code, STEP_FAILURE_MESSAGES.get(status, PipelineError.default_message)

        logger.error(f"Job {job_id} failed at {status.value} [{code}]", exc_info=error)

        async with self.session_maker() as session:
            failed = await JobService(session).fail(job_id, code, message)
            await session.commit()
        if not failed:
            logger.info(f"Job {job_id} was already terminal, failure not recorded")

    # =========================================================================
    # Steps
    # =========================================================================

    async def _check_quota(self, job_id: str) -> None:
        """Fail fast, before any external call, when the owner has no allowance left."""
        job = await self._get_job(job_id)
        async with self.session_maker() as session:
            check = await QuotaService(session).reserve(job.owner_id)
            await session.commit()
        if not check.allowed:
            logger.info(f"Job {job_id}: owner {job.owner_id} over quota ({check.used}/{check.limit})")
            raise QuotaExceededError()

    async def _download(self, job_id: str) -> None:
        job = await self._get_job(job_id)
        await self.resolver.resolve(job)

    async def _transcribe(self, job_id: str) -> None:
        job = await self._get_job(job_id)
        if not job.media_url:
            raise SourceUnavailableError("Source media is missing.", retryable=False)

        transcript = await self.transcriber.transcribe(job.id, job.media_url)
        if job.duration is None and transcript.duration:
            async with self.session_maker() as session:
                await JobService(session).transition(
                    job.id, JobStatus.TRANSCRIBING, JobStatus.TRANSCRIBING, duration=transcript.duration
                )
                await session.commit()

    async def _analyze(self, job_id: str) -> None:
        job = await self._get_job(job_id)

        async with self.session_maker() as session:
            existing = await session.scalar(select(func.count(Clip.id)).where(Clip.job_id == job_id))
            transcript = await JobService(session).get_transcript(job_id)
            check = await QuotaService(session).reserve(job.owner_id)
            await session.commit()

        if existing:
            logger.info(f"Job {job_id}: {existing} clips already selected, skipping analysis")
            return
        if transcript is None:
            raise PipelineError("Transcript is missing.", code="transcript_missing")
        if not check.allowed:
            raise QuotaExceededError()

        segments = transcript.get_segments()
        duration = job.duration or transcript.duration or (segments[-1].end if segments else 0.0)
        highlights = await self.selector.select_highlights(segments, duration, limit=check.remaining)

        async with self.session_maker() as session:
            for ordering, h in enumerate(highlights):
                session.add(
                    Clip(
                        job_id=job.id,
                        owner_id=job.owner_id,
                        title=h.title,
                        start_time=h.start,
                        end_time=h.end,
                        score=h.score,
                        hook=h.hook,
                        rationale=h.rationale,
                        transcript_excerpt=h.excerpt,
                        ordering=ordering,
                        status=ClipStatus.PENDING,
                    )
                )
            await session.commit()
        logger.info(f"Job {job_id}: {len(highlights)} highlights stored as clips")

    async def _generate(self, job_id: str) -> None:
        job = await self._get_job(job_id)
        async with self.session_maker() as session:
            transcript = await JobService(session).get_transcript(job_id)
        segments = transcript.get_segments() if transcript else []

        outcomes = await self.renderer.render_all(job.id, job.media_url, segments)
        completed = sum(1 for o in outcomes if o.status == ClipStatus.COMPLETED)
        logger.info(f"Job {job_id}: rendered {completed}/{len(outcomes)} clips")

        if self.publisher is None:
            return
        try:
            await self.publisher.publish_job(job_id)
        except Exception:
            logger.exception(f"Job {job_id}: publishing failed")
