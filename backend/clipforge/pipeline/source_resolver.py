"""Source resolution: source URL -> durable, re-fetchable media."""
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.errors import (
    CorruptDownloadError,
    InvalidInputError,
    JobCancelledError,
    SourceUnavailableError,
)
from clipforge.models.job import Job, JobStatus
from clipforge.providers.fetch import FetchedMedia, SourceFetchProvider
from clipforge.providers.storage import DurableStorage
from clipforge.services.job_service import JobService
from clipforge.utils.ffmpeg import FFmpegError, get_video_info
from clipforge.utils.ytdlp import is_supported_source_url

logger = logging.getLogger(__name__)


@dataclass
class ResolvedSource:
    media_url: str
    title: Optional[str] = None
    duration: Optional[float] = None


class SourceResolver:
    """
    Downloads the source through the configured fetch providers (in order,
    falling back on failure) and re-hosts it in durable storage.

    Title and duration are checkpointed on the job as soon as they are known,
    the durable media URL once the upload is done. A job that already has a
    media URL is never downloaded again.
    """

    def __init__(
        self,
        fetchers: List[SourceFetchProvider],
        storage: DurableStorage,
        session_maker: async_sessionmaker,
        work_dir: Path,
        min_download_bytes: int = 10 * 1024,
    ):
        self.fetchers = fetchers
        self.storage = storage
        self.session_maker = session_maker
        self.work_dir = Path(work_dir)
        self.min_download_bytes = min_download_bytes

    async def resolve(self, job: Job) -> ResolvedSource:
        if not is_supported_source_url(job.source_url):
            raise InvalidInputError()

        if job.media_url:
            logger.info(f"Job {job.id}: reusing durable media {job.media_url}")
            return ResolvedSource(media_url=job.media_url, title=job.title, duration=job.duration)

        job_dir = self.work_dir / job.id
        try:
            fetched = await self._fetch_with_fallback(job.id, job.source_url, job_dir)

            if fetched.duration is None:
                try:
                    info = await get_video_info(fetched.path)
                    fetched.duration = info.duration
                except FFmpegError as e:
                    logger.warning(f"Job {job.id}: could not read downloaded media info: {e}")

            await self._checkpoint(job.id, title=fetched.title, duration=fetched.duration)

            suffix = fetched.path.suffix or ".mp4"
            media_url = await self.storage.put_file(
                f"jobs/{job.id}/source{suffix}", fetched.path, "video/mp4"
            )
            await self._checkpoint(job.id, media_url=media_url)
            logger.info(f"Job {job.id}: source re-hosted at {media_url}")

            return ResolvedSource(media_url=media_url, title=fetched.title, duration=fetched.duration)
        finally:
            shutil.rmtree(job_dir, ignore_errors=True)

    async def _fetch_with_fallback(self, job_id: str, url: str, job_dir: Path) -> FetchedMedia:
        last_error: Optional[Exception] = None

        for fetcher in self.fetchers:
            attempt_dir = job_dir / fetcher.name
            try:
                fetched = await fetcher.fetch(url, attempt_dir)
                self._check_size(fetched.path)
                logger.info(f"Job {job_id}: fetched source with {fetcher.name}")
                return fetched
            except InvalidInputError:
                raise
            except Exception as e:
                logger.warning(f"Job {job_id}: fetch provider {fetcher.name} failed: {e}")
                last_error = e
                shutil.rmtree(attempt_dir, ignore_errors=True)

        if isinstance(last_error, CorruptDownloadError):
            raise last_error
        raise SourceUnavailableError() from last_error

    def _check_size(self, path: Path) -> None:
        size = path.stat().st_size if path.exists() else 0
        if size < self.min_download_bytes:
            raise CorruptDownloadError(
                f"The downloaded video was empty or corrupt ({size} bytes)."
            )

    async def _checkpoint(self, job_id: str, **fields) -> None:
        fields = {k: v for k, v in fields.items() if v is not None}
        if not fields:
            return
        async with self.session_maker() as session:
            updated = await JobService(session).transition(
                job_id, JobStatus.DOWNLOADING, JobStatus.DOWNLOADING, **fields
            )
            await session.commit()
        if not updated:
            raise JobCancelledError()
