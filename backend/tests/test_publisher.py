"""Tests for the publishing fan-out."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from clipforge.errors import CredentialExpiredError, ProviderError, PublishError
from clipforge.models.clip import Clip, ClipStatus, ClipUpload, UploadStatus
from clipforge.models.connection import AuthStatus, Platform, PlatformConnection
from clipforge.models.job import JobStatus
from clipforge.pipeline.publisher import Publisher, needs_refresh
from clipforge.providers.platforms import PublishResult, RefreshedToken

from conftest import OWNER_ID


class _FakeUploader:
    def __init__(self, platform, max_duration=60.0, refresh_error=None, upload_error=None):
        self.platform = platform
        self.max_duration = max_duration
        self.refresh_error = refresh_error
        self.upload_error = upload_error
        self.refreshes = []
        self.uploads = []

    async def refresh_token(self, credentials):
        self.refreshes.append(credentials)
        if self.refresh_error:
            raise self.refresh_error
        return RefreshedToken(access_token="fresh-token", expires_at=datetime.utcnow() + timedelta(hours=1))

    async def upload(self, credentials, request):
        self.uploads.append((credentials, request))
        if self.upload_error:
            raise self.upload_error
        return PublishResult(
            external_id=f"{self.platform.value}-1",
            external_url=f"https://example.com/{self.platform.value}/1",
        )


@pytest.fixture
def youtube():
    return _FakeUploader(Platform.YOUTUBE_SHORTS, max_duration=60.0)


@pytest.fixture
def instagram():
    return _FakeUploader(Platform.INSTAGRAM_REELS, max_duration=90.0)


@pytest.fixture
def publisher(session_maker, youtube, instagram):
    return Publisher({Platform.YOUTUBE_SHORTS: youtube, Platform.INSTAGRAM_REELS: instagram}, session_maker)


@pytest.fixture
def make_clip(session_maker, make_job):
    async def _make_clip(start=30.0, end=60.0, status=ClipStatus.COMPLETED, media_url="memory://clip.mp4"):
        job = await make_job(status=JobStatus.GENERATING)
        async with session_maker() as session:
            clip = Clip(
                job_id=job.id,
                owner_id=OWNER_ID,
                title="The one habit",
                hook="Nobody tells you this",
                start_time=start,
                end_time=end,
                status=status,
                media_url=media_url,
            )
            session.add(clip)
            await session.commit()
            return clip

    return _make_clip


@pytest.fixture
def make_connection(session_maker):
    async def _make_connection(platform, auto_upload=True, **fields):
        fields.setdefault("access_token", "token")
        fields.setdefault("token_expires_at", datetime.utcnow() + timedelta(hours=1))
        async with session_maker() as session:
            connection = PlatformConnection(
                owner_id=OWNER_ID,
                platform=platform,
                auto_upload=auto_upload,
                **fields,
            )
            session.add(connection)
            await session.commit()
            return connection

    return _make_connection


async def _uploads(session_maker, clip_id):
    async with session_maker() as session:
        result = await session.execute(select(ClipUpload).where(ClipUpload.clip_id == clip_id))
        return {u.platform: u for u in result.scalars().all()}


def test_needs_refresh():
    now = datetime(2024, 1, 1, 12, 0)
    connection = PlatformConnection(
        platform=Platform.YOUTUBE_SHORTS,
        auth_status=AuthStatus.CONNECTED,
        access_token="token",
        token_expires_at=now + timedelta(hours=1),
    )
    assert not needs_refresh(connection, now)

    connection.token_expires_at = now + timedelta(minutes=2)
    assert needs_refresh(connection, now)

    connection.token_expires_at = None
    assert not needs_refresh(connection, now)

    connection.auth_status = AuthStatus.EXPIRED
    assert needs_refresh(connection, now)


@pytest.mark.asyncio
async def test_publish_to_each_platform_independently(
    publisher, session_maker, make_clip, make_connection, youtube, instagram
):
    clip = await make_clip()
    await make_connection(Platform.YOUTUBE_SHORTS)
    await make_connection(Platform.INSTAGRAM_REELS, platform_user_id="ig-1")
    instagram.upload_error = PublishError("Instagram video processing failed")

    outcomes = await publisher.publish_job(clip.job_id)

    by_platform = {o.platform: o for o in outcomes}
    assert by_platform[Platform.YOUTUBE_SHORTS].status == UploadStatus.UPLOADED
    assert by_platform[Platform.INSTAGRAM_REELS].status == UploadStatus.FAILED

    uploads = await _uploads(session_maker, clip.id)
    assert uploads[Platform.YOUTUBE_SHORTS].external_url == "https://example.com/youtube_shorts/1"
    assert uploads[Platform.INSTAGRAM_REELS].error == PublishError.default_message

    _, request = youtube.uploads[0]
    assert request.video_url == "memory://clip.mp4"
    assert request.title == "The one habit"
    assert request.description == "Nobody tells you this"


@pytest.mark.asyncio
async def test_publish_job_skips_connections_without_auto_upload(
    publisher, make_clip, make_connection, youtube
):
    clip = await make_clip()
    await make_connection(Platform.YOUTUBE_SHORTS, auto_upload=False)

    assert await publisher.publish_job(clip.job_id) == []
    assert youtube.uploads == []


@pytest.mark.asyncio
async def test_already_uploaded_clip_is_not_uploaded_twice(publisher, make_clip, make_connection, youtube):
    clip = await make_clip()
    connection = await make_connection(Platform.YOUTUBE_SHORTS)

    await publisher.publish(clip, [connection])
    outcomes = await publisher.publish(clip, [connection])

    assert outcomes[0].status == UploadStatus.UPLOADED
    assert len(youtube.uploads) == 1


@pytest.mark.asyncio
async def test_clip_longer_than_platform_limit_fails_without_upload(
    publisher, session_maker, make_clip, make_connection, youtube
):
    clip = await make_clip(start=0.0, end=80.0)
    connection = await make_connection(Platform.YOUTUBE_SHORTS)

    outcomes = await publisher.publish(clip, [connection])

    assert outcomes[0].status == UploadStatus.FAILED
    assert "60s" in outcomes[0].error
    assert youtube.uploads == []


@pytest.mark.asyncio
async def test_stale_token_is_refreshed_before_upload(
    publisher, session_maker, make_clip, make_connection, youtube
):
    clip = await make_clip()
    connection = await make_connection(
        Platform.YOUTUBE_SHORTS,
        refresh_token="refresh",
        token_expires_at=datetime.utcnow() - timedelta(minutes=1),
    )

    outcomes = await publisher.publish(clip, [connection])

    assert outcomes[0].status == UploadStatus.UPLOADED
    assert len(youtube.refreshes) == 1
    credentials, _ = youtube.uploads[0]
    assert credentials.access_token == "fresh-token"
    async with session_maker() as session:
        stored = await session.get(PlatformConnection, connection.id)
        assert stored.access_token == "fresh-token"
        assert stored.auth_status == AuthStatus.CONNECTED
        assert stored.last_upload_at is not None


@pytest.mark.asyncio
async def test_rejected_refresh_marks_connection_expired(
    publisher, session_maker, make_clip, make_connection, youtube
):
    youtube.refresh_error = CredentialExpiredError()
    clip = await make_clip()
    connection = await make_connection(
        Platform.YOUTUBE_SHORTS,
        refresh_token="revoked",
        token_expires_at=datetime.utcnow() - timedelta(minutes=1),
    )

    outcomes = await publisher.publish(clip, [connection])

    assert outcomes[0].status == UploadStatus.FAILED
    assert outcomes[0].error == CredentialExpiredError.default_message
    assert youtube.uploads == []
    async with session_maker() as session:
        stored = await session.get(PlatformConnection, connection.id)
        assert stored.auth_status == AuthStatus.EXPIRED


@pytest.mark.asyncio
async def test_unexpected_upload_error_is_recorded(publisher, session_maker, make_clip, make_connection, youtube):
    youtube.upload_error = RuntimeError("socket closed")
    clip = await make_clip()
    connection = await make_connection(Platform.YOUTUBE_SHORTS)

    outcomes = await publisher.publish(clip, [connection])

    assert outcomes[0].status == UploadStatus.FAILED
    uploads = await _uploads(session_maker, clip.id)
    assert uploads[Platform.YOUTUBE_SHORTS].status == UploadStatus.FAILED


@pytest.mark.asyncio
async def test_provider_detail_is_not_stored_on_the_upload(
    publisher, session_maker, make_clip, make_connection, youtube, instagram
):
    youtube.upload_error = ProviderError("youtube returned 400: quotaExceeded for key AIza-secret", retryable=False)
    instagram.upload_error = PublishError("Instagram returned 400: token EAAB-secret is invalid")
    clip = await make_clip()
    await make_connection(Platform.YOUTUBE_SHORTS)
    await make_connection(Platform.INSTAGRAM_REELS, platform_user_id="ig-1")

    outcomes = await publisher.publish_job(clip.job_id)

    assert {o.error for o in outcomes} == {PublishError.default_message}
    uploads = await _uploads(session_maker, clip.id)
    for upload in uploads.values():
        assert upload.status == UploadStatus.FAILED
        assert upload.error == PublishError.default_message
        assert "secret" not in upload.error


@pytest.mark.asyncio
async def test_unrendered_clip_cannot_be_published(publisher, make_clip, make_connection):
    clip = await make_clip(status=ClipStatus.PENDING, media_url=None)
    connection = await make_connection(Platform.YOUTUBE_SHORTS)

    with pytest.raises(PublishError):
        await publisher.publish(clip, [connection])
