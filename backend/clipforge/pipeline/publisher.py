"""Publishing fan-out: completed clips -> connected platforms, independently."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.errors import CredentialExpiredError, PipelineError, PublishError
from clipforge.models.clip import Clip, ClipStatus, ClipUpload, UploadStatus
from clipforge.models.connection import AuthStatus, Platform, PlatformConnection
from clipforge.models.job import Job
from clipforge.providers.platforms import PlatformCredentials, PlatformUploader, PublishRequest
from clipforge.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class PublishOutcome:
    clip_id: str
    platform: Platform
    status: UploadStatus
    external_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        return {
            "clip_id": self.clip_id,
            "platform": self.platform.value,
            "status": self.status.value,
            "external_url": self.external_url,
            "error": self.error,
        }


def needs_refresh(connection: PlatformConnection, now: Optional[datetime] = None) -> bool:
    """True when the access token is missing, expired or about to expire."""
    if connection.auth_status == AuthStatus.EXPIRED or not connection.access_token:
        return True
    if connection.token_expires_at is None:
        return False
    now = now or datetime.utcnow()
    return connection.token_expires_at <= now + TOKEN_REFRESH_MARGIN


class Publisher:
    """
    Pushes rendered clips to the owner's connected platforms.

    Best effort: every (clip, platform) pair succeeds or fails on its own and
    the outcome is recorded in the clip's upload rows. Nothing here raises
    for an upload failure.
    """

    def __init__(
        self,
        uploaders: Dict[Platform, PlatformUploader],
        session_maker: async_sessionmaker,
    ):
        self.uploaders = uploaders
        self.session_maker = session_maker
        # One refresh per connection at a time when clips publish concurrently
        self._refresh_locks: Dict[int, asyncio.Lock] = {}

    async def publish_job(self, job_id: str) -> List[PublishOutcome]:
        """Publish every completed clip of a job to the auto-upload connections."""
        async with self.session_maker() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return []
            connections = await ConnectionService(session).get_connections_for_publishing(job.owner_id)
            result = await session.execute(
                select(Clip)
                .where(Clip.job_id == job_id, Clip.status == ClipStatus.COMPLETED)
                .order_by(Clip.ordering)
            )
            clips = list(result.scalars().all())

        if not connections or not clips:
            return []

        logger.info(f"Job {job_id}: publishing {len(clips)} clips to {len(connections)} platforms")
        results = await asyncio.gather(*(self.publish(clip, connections) for clip in clips))
        return [outcome for outcomes in results for outcome in outcomes]

    async def publish(
        self,
        clip: Clip,
        connections: Sequence[PlatformConnection],
    ) -> List[PublishOutcome]:
        """Publish one clip to each connection concurrently."""
        if clip.status != ClipStatus.COMPLETED or not clip.media_url:
            raise PublishError("Only rendered clips can be published")
        return list(
            await asyncio.gather(*(self._publish_one(clip, connection) for connection in connections))
        )

    async def _publish_one(self, clip: Clip, connection: PlatformConnection) -> PublishOutcome:
        platform = connection.platform
        uploader = self.uploaders.get(platform)
        if uploader is None:
            return await self._record(clip, platform, UploadStatus.FAILED, error="Platform not supported")

        skipped = await self._begin(clip, platform)
        if skipped is not None:
            logger.info(f"Clip {clip.id} already {skipped.value} on {platform.value}, skipping")
            return PublishOutcome(clip_id=clip.id, platform=platform, status=skipped)

        if clip.duration > uploader.max_duration:
            return await self._record(
                clip,
                platform,
                UploadStatus.FAILED,
                error=f"Clip is longer than the {int(uploader.max_duration)}s {platform.value} limit",
            )

        try:
            credentials = await self._credentials(connection, uploader)
            result = await uploader.upload(
                credentials,
                PublishRequest(
                    video_url=clip.media_url,
                    title=clip.title,
                    description=clip.hook or clip.transcript_excerpt or "",
                    duration=clip.duration,
                ),
            )
        except CredentialExpiredError as e:
            logger.warning(f"Clip {clip.id} upload to {platform.value} failed: {e}")
            return await self._record(
                clip, platform, UploadStatus.FAILED, error=CredentialExpiredError.default_message
            )
        except PipelineError as e:
            # Provider details stay in the log
            logger.warning(f"Clip {clip.id} upload to {platform.value} failed: {e}")
            return await self._record(clip, platform, UploadStatus.FAILED, error=PublishError.default_message)
        except Exception:
            logger.exception(f"Clip {clip.id} upload to {platform.value} failed unexpectedly")
            return await self._record(clip, platform, UploadStatus.FAILED, error=PublishError.default_message)

        async with self.session_maker() as session:
            await ConnectionService(session).mark_uploaded(connection.id)
            await session.commit()

        logger.info(f"Clip {clip.id} published to {platform.value}: {result.external_url}")
        return await self._record(
            clip,
            platform,
            UploadStatus.UPLOADED,
            external_id=result.external_id,
            external_url=result.external_url,
        )

    async def _credentials(self, connection: PlatformConnection, uploader: PlatformUploader) -> PlatformCredentials:
        """Stored credentials, refreshed first when the token is stale."""
        lock = self._refresh_locks.setdefault(connection.id, asyncio.Lock())
        async with lock:
            async with self.session_maker() as session:
                current = await ConnectionService(session).get_connection(connection.id)
            if current is None:
                raise CredentialExpiredError()

            credentials = PlatformCredentials(
                access_token=current.access_token,
                refresh_token=current.refresh_token,
                expires_at=current.token_expires_at,
                platform_user_id=current.platform_user_id,
            )
            if not needs_refresh(current):
                return credentials

            try:
                token = await uploader.refresh_token(credentials)
            except CredentialExpiredError:
                async with self.session_maker() as session:
                    await ConnectionService(session).update_auth(connection.id, AuthStatus.EXPIRED)
                    await session.commit()
                logger.info(f"Connection {connection.id} ({connection.platform.value}) marked expired")
                raise

            async with self.session_maker() as session:
                await ConnectionService(session).update_auth(
                    connection.id,
                    AuthStatus.CONNECTED,
                    access_token=token.access_token,
                    refresh_token=token.refresh_token,
                    token_expires_at=token.expires_at,
                )
                await session.commit()

            credentials.access_token = token.access_token
            credentials.expires_at = token.expires_at
            return credentials

    async def _begin(self, clip: Clip, platform: Platform) -> Optional[UploadStatus]:
        """
        Mark the upload as in progress.

        Returns None when the caller should go ahead, otherwise the status of
        an upload that already succeeded or is being done elsewhere.
        """
        async with self.session_maker() as session:
            upload = await self._get_upload(session, clip.id, platform)
            if upload is None:
                upload = ClipUpload(clip_id=clip.id, platform=platform)
                session.add(upload)
            elif upload.status == UploadStatus.UPLOADED:
                return UploadStatus.UPLOADED

            upload.status = UploadStatus.UPLOADING
            upload.error = None
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent publish of the same clip created the row first
                await session.rollback()
                return UploadStatus.UPLOADING
            return None

    async def _record(
        self,
        clip: Clip,
        platform: Platform,
        status: UploadStatus,
        external_id: Optional[str] = None,
        external_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> PublishOutcome:
        async with self.session_maker() as session:
            upload = await self._get_upload(session, clip.id, platform)
            if upload is None:
                upload = ClipUpload(clip_id=clip.id, platform=platform)
                session.add(upload)
            upload.status = status
            upload.external_id = external_id
            upload.external_url = external_url
            upload.error = error[:1024] if error else None
            await session.commit()

        return PublishOutcome(
            clip_id=clip.id,
            platform=platform,
            status=status,
            external_url=external_url,
            error=error,
        )

    @staticmethod
    async def _get_upload(session, clip_id: str, platform: Platform) -> Optional[ClipUpload]:
        result = await session.execute(
            select(ClipUpload).where(ClipUpload.clip_id == clip_id, ClipUpload.platform == platform)
        )
        return result.scalar_one_or_none()
