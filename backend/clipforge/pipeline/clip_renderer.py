"""Clip rendering: one render job per pending clip, fanned out concurrently."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.errors import (
    PipelineError,
    ProviderError,
    RenderFailedError,
    RenderTimeoutError,
)
from clipforge.models.clip import Clip, ClipStatus
from clipforge.models.transcript import Segment
from clipforge.providers.render import (
    RenderJobNotFoundError,
    RenderProvider,
    RenderSpec,
    RenderState,
    RenderStatus,
)
from clipforge.services.quota_service import QuotaService
from clipforge.utils.polling import PollTimeoutError, poll_until_terminal

logger = logging.getLogger(__name__)

QUOTA_REACHED_MESSAGE = "Monthly clip limit reached"


@dataclass
class ClipOutcome:
    """Terminal result of rendering one clip."""
    clip_id: str
    status: ClipStatus
    error: Optional[str] = None


def captions_for(segments: Sequence[Segment], start: float, end: float) -> List[Segment]:
    """Transcript segments overlapping [start, end], re-timed relative to ``start``."""
    captions = []
    for seg in segments:
        if seg.end <= start or seg.start >= end:
            continue
        captions.append(
            Segment(
                start=max(seg.start, start) - start,
                end=min(seg.end, end) - start,
                text=seg.text,
            )
        )
    return captions


class ClipRenderer:
    """
    Renders clips through a render provider and records the result.

    Each clip is independent: a failure or timeout marks that clip failed and
    never affects its siblings. A successful clip is marked completed and the
    owner's quota is charged in the same transaction.
    """

    def __init__(
        self,
        provider: RenderProvider,
        session_maker: async_sessionmaker,
        concurrency: int = 3,
        poll_interval: float = 5.0,
        max_polls: int = 60,
        timeout: float = 300.0,
        submit_attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.session_maker = session_maker
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout
        self.submit_attempts = max(1, submit_attempts)
        self._sleep = sleep

    async def render_all(
        self,
        job_id: str,
        media_url: str,
        segments: Sequence[Segment] = (),
    ) -> List[ClipOutcome]:
        """Render every pending clip of a job. Returns once all have settled."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Clip)
                .where(Clip.job_id == job_id, Clip.status == ClipStatus.PENDING)
                .order_by(Clip.ordering)
            )
            clips = list(result.scalars().all())

        if not clips:
            return []

        logger.info(f"Job {job_id}: rendering {len(clips)} clips (concurrency {self.concurrency})")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(clip: Clip) -> ClipOutcome:
            async with semaphore:
                return await self.render_clip(clip, media_url, segments)

        return list(await asyncio.gather(*(run(clip) for clip in clips)))

    async def render_clip(
        self,
        clip: Clip,
        media_url: str,
        segments: Sequence[Segment] = (),
    ) -> ClipOutcome:
        """Render one clip to a terminal state. Never raises for render failures."""
        try:
            status = await self._render(clip, media_url, segments)
            return await self._complete(clip, status)
        except (RenderFailedError, RenderTimeoutError) as e:
            logger.warning(f"Clip {clip.id} render failed: {e}")
            return await self._fail(clip, e.message)
        except PipelineError as e:
            # Provider details stay in the log
            logger.warning(f"Clip {clip.id} render failed: {e}")
            return await self._fail(clip, RenderFailedError.default_message)
        except Exception:
            logger.exception(f"Clip {clip.id} render failed unexpectedly")
            return await self._fail(clip, RenderFailedError.default_message)

    async def _render(self, clip: Clip, media_url: str, segments: Sequence[Segment]) -> RenderStatus:
        render_job_id = clip.render_job_id
        if render_job_id:
            logger.info(f"Clip {clip.id}: resuming render job {render_job_id}")
            try:
                return await self._wait(render_job_id)
            except RenderJobNotFoundError:
                logger.info(f"Clip {clip.id}: render job {render_job_id} unknown to provider, resubmitting")

        spec = RenderSpec(
            source_url=media_url,
            start=clip.start_time,
            end=clip.end_time,
            output_key=f"jobs/{clip.job_id}/clips/{clip.id}.mp4",
            captions=captions_for(segments, clip.start_time, clip.end_time),
        )
        render_job_id = await self._submit(spec)
        await self._save_render_job_id(clip, render_job_id)
        return await self._wait(render_job_id)

    async def _submit(self, spec: RenderSpec) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.provider.submit(spec)
            except ProviderError as e:
                if not e.retryable or attempt >= self.submit_attempts:
                    raise
                logger.info(f"Render submit failed (attempt {attempt}), retrying: {e}")
                await self._sleep(self.poll_interval)

    async def _wait(self, render_job_id: str) -> RenderStatus:
        async def check() -> Optional[RenderStatus]:
            try:
                return await self.provider.get_status(render_job_id)
            except RenderJobNotFoundError:
                raise
            except ProviderError as e:
                if not e.retryable:
                    raise
                logger.info(f"Render status check for {render_job_id} failed, will retry: {e}")
                return None

        try:
            status = await poll_until_terminal(
                check,
                lambda s: s is not None and s.is_terminal,
                interval=self.poll_interval,
                max_attempts=self.max_polls,
                timeout=self.timeout,
                sleep=self._sleep,
            )
        except PollTimeoutError as e:
            await self._cancel(render_job_id)
            raise RenderTimeoutError() from e
        except asyncio.CancelledError:
            await self._cancel(render_job_id)
            raise

        if status.state == RenderState.FAILED:
            logger.warning(f"Render job {render_job_id} failed: {status.error}")
            raise RenderFailedError()
        if not status.output_url:
            logger.warning(f"Render job {render_job_id} finished without an output file")
            raise RenderFailedError()
        return status

    async def _cancel(self, render_job_id: str) -> None:
        try:
            await self.provider.cancel(render_job_id)
        except ProviderError as e:
            logger.warning(f"Could not cancel render job {render_job_id}: {e}")

    async def _save_render_job_id(self, clip: Clip, render_job_id: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                update(Clip)
                .where(Clip.id == clip.id, Clip.status == ClipStatus.PENDING)
                .values(render_job_id=render_job_id, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        clip.render_job_id = render_job_id

    async def _complete(self, clip: Clip, status: RenderStatus) -> ClipOutcome:
        """Mark the clip completed and charge one unit of quota, atomically."""
        async with self.session_maker() as session:
            quota = QuotaService(session)
            await quota.get_or_create(clip.owner_id)

            now = datetime.utcnow()
            result = await session.execute(
                update(Clip)
                .where(Clip.id == clip.id, Clip.status == ClipStatus.PENDING)
                .values(
                    status=ClipStatus.COMPLETED,
                    media_url=status.output_url,
                    thumbnail_url=status.thumbnail_url,
                    error_message=None,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.info(f"Clip {clip.id} already settled, not charging quota")
                return ClipOutcome(clip_id=clip.id, status=await self._current_status(clip.id))

            if not await quota.increment_on_success(clip.owner_id):
                await session.rollback()
                logger.warning(f"Clip {clip.id}: owner {clip.owner_id} hit the quota limit mid-job")
                return await self._fail(clip, QUOTA_REACHED_MESSAGE)

            await session.commit()

        logger.info(f"Clip {clip.id} completed: {status.output_url}")
        return ClipOutcome(clip_id=clip.id, status=ClipStatus.COMPLETED)

    async def _fail(self, clip: Clip, message: str) -> ClipOutcome:
        async with self.session_maker() as session:
            await session.execute(
                update(Clip)
                .where(Clip.id == clip.id, Clip.status == ClipStatus.PENDING)
                .values(
                    status=ClipStatus.FAILED,
                    error_message=message[:1024],
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return ClipOutcome(clip_id=clip.id, status=ClipStatus.FAILED, error=message)

    async def _current_status(self, clip_id: str) -> ClipStatus:
        async with self.session_maker() as session:
            result = await session.execute(select(Clip.status).where(Clip.id == clip_id))
            return result.scalar_one()
