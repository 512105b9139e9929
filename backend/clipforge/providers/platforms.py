"""Publishing integrations for short-form video platforms."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

import httpx

from clipforge.errors import CredentialExpiredError, ProviderError, PublishError
from clipforge.models.connection import Platform
from clipforge.providers.storage import DurableStorage
from clipforge.utils.http import extract_error_detail, parse_json, send
from clipforge.utils.polling import PollTimeoutError, poll_until_terminal

logger = logging.getLogger(__name__)

# Token refresh and upload responses that mean the grant is no longer usable
AUTH_FAILURE_STATUS_CODES = {400, 401, 403}


@dataclass
class PlatformCredentials:
    """Stored credentials for one connected account."""
    access_token: Optional[str]
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    platform_user_id: Optional[str] = None


@dataclass
class RefreshedToken:
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None


@dataclass
class PublishRequest:
    """What to publish: a finished clip and its display metadata."""
    video_url: str
    title: str
    description: str = ""
    duration: Optional[float] = None


@dataclass
class PublishResult:
    external_id: str
    external_url: str


class PlatformUploader(Protocol):
    platform: Platform
    max_duration: float

    async def refresh_token(self, credentials: PlatformCredentials) -> RefreshedToken:
        """Exchange stored credentials for a fresh access token."""

    async def upload(self, credentials: PlatformCredentials, request: PublishRequest) -> PublishResult:
        """Upload the clip and return its id and public URL on the platform."""


def _raise_for_auth(response: httpx.Response, platform: str) -> None:
    if response.status_code in AUTH_FAILURE_STATUS_CODES:
        detail = extract_error_detail(response)
        logger.info(f"{platform} rejected credentials status={response.status_code} detail={detail}")
        raise CredentialExpiredError()


class YouTubeShortsUploader:
    """YouTube Data API v3 resumable upload."""

    platform = Platform.YOUTUBE_SHORTS
    max_duration = 60.0

    TOKEN_URL = "https://oauth2.googleapis.com/token"
    UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        storage: DurableStorage,
        client_id: Optional[str],
        client_secret: Optional[str],
        privacy_status: str = "public",
        upload_timeout: float = 120.0,
    ):
        self._http = http_client
        self.storage = storage
        self.client_id = client_id
        self.client_secret = client_secret
        self.privacy_status = privacy_status
        self.upload_timeout = upload_timeout

    async def refresh_token(self, credentials: PlatformCredentials) -> RefreshedToken:
        if not credentials.refresh_token:
            raise CredentialExpiredError()
        if not self.client_id or not self.client_secret:
            raise PublishError("YouTube API credentials not configured")

        try:
            response = await self._http.post(
                self.TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.RequestError as exc:
            logger.warning(f"YouTube token refresh network error: {type(exc).__name__}")
            raise ProviderError("Unable to reach Google OAuth service for token refresh.") from exc

        _raise_for_auth(response, "YouTube")
        if response.status_code != 200:
            raise ProviderError(f"Google token refresh failed: {extract_error_detail(response)}")

        token_data = parse_json(response, "Google OAuth")
        if not token_data.get("access_token"):
            raise CredentialExpiredError()

        return RefreshedToken(
            access_token=token_data["access_token"],
            expires_at=datetime.utcnow() + timedelta(seconds=token_data.get("expires_in", 3600)),
        )

    @staticmethod
    def build_metadata(request: PublishRequest, privacy_status: str) -> dict:
        """Video resource body for the upload session."""
        description = f"{request.description}\n\n#Shorts".strip()
        return {
            "snippet": {
                "title": request.title[:100],  # YouTube max title length
                "description": description[:5000],
                "tags": ["shorts"],
                "categoryId": "22",  # People & Blogs
            },
            "status": {
                "privacyStatus": privacy_status,
                "selfDeclaredMadeForKids": False,
            },
        }

    async def upload(self, credentials: PlatformCredentials, request: PublishRequest) -> PublishResult:
        video_data = await self.storage.read_bytes(request.video_url)
        timeout = httpx.Timeout(self.upload_timeout, connect=15.0)

        try:
            # Step 1: open a resumable upload session
            response = await self._http.post(
                self.UPLOAD_URL,
                params={"uploadType": "resumable", "part": "snippet,status"},
                headers={
                    "Authorization": f"Bearer {credentials.access_token}",
                    "Content-Type": "application/json",
                    "X-Upload-Content-Length": str(len(video_data)),
                    "X-Upload-Content-Type": "video/mp4",
                },
                json=self.build_metadata(request, self.privacy_status),
                timeout=timeout,
            )
            if response.status_code == 401:
                _raise_for_auth(response, "YouTube")
            if response.status_code != 200:
                raise PublishError(f"Failed to initiate upload: {extract_error_detail(response)}")

            upload_url = response.headers.get("Location")
            if not upload_url:
                raise PublishError("No upload URL received")

            # Step 2: send the video bytes
            response = await self._http.put(
                upload_url,
                headers={"Content-Type": "video/mp4", "Content-Length": str(len(video_data))},
                content=video_data,
                timeout=timeout,
            )
        except httpx.RequestError as exc:
            raise PublishError(f"YouTube upload failed: {type(exc).__name__}") from exc

        if response.status_code not in (200, 201):
            raise PublishError(f"Failed to upload video: {extract_error_detail(response)}")

        try:
            video_id = response.json().get("id")
        except ValueError:
            video_id = None
        if not video_id:
            raise PublishError("Failed to upload video: invalid provider response")

        return PublishResult(external_id=video_id, external_url=f"https://youtube.com/shorts/{video_id}")


class InstagramReelsUploader:
    """Instagram Graph API: create a REELS container, wait for processing, publish."""

    platform = Platform.INSTAGRAM_REELS
    max_duration = 90.0

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        app_id: Optional[str],
        app_secret: Optional[str],
        api_version: str = "v18.0",
        poll_interval: float = 5.0,
        max_polls: int = 30,
        hashtags: Optional[List[str]] = None,
    ):
        self._http = http_client
        self.app_id = app_id
        self.app_secret = app_secret
        self.graph_url = f"https://graph.facebook.com/{api_version}"
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.hashtags = hashtags if hashtags is not None else ["#Reels"]

    async def refresh_token(self, credentials: PlatformCredentials) -> RefreshedToken:
        """Long-lived tokens are refreshed by exchanging the current one."""
        if not credentials.access_token:
            raise CredentialExpiredError()
        if not self.app_id or not self.app_secret:
            raise PublishError("Instagram app credentials not configured")

        try:
            response = await self._http.get(
                f"{self.graph_url}/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": self.app_id,
                    "client_secret": self.app_secret,
                    "fb_exchange_token": credentials.access_token,
                },
            )
        except httpx.RequestError as exc:
            raise ProviderError("Unable to reach Instagram for token refresh.") from exc

        _raise_for_auth(response, "Instagram")
        if response.status_code != 200:
            raise ProviderError(f"Instagram token refresh failed: {extract_error_detail(response)}")

        token_data = parse_json(response, "Instagram")
        if not token_data.get("access_token"):
            raise CredentialExpiredError()
        return RefreshedToken(
            access_token=token_data["access_token"],
            expires_at=datetime.utcnow() + timedelta(seconds=token_data.get("expires_in", 60 * 24 * 3600)),
        )

    async def _graph(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await send(self._http, method, f"{self.graph_url}/{path}", "Instagram", **kwargs)
        except ProviderError as e:
            if e.status_code in (401, 403):
                raise CredentialExpiredError() from e
            raise PublishError(e.message) from e
        payload = parse_json(response, "Instagram")
        if isinstance(payload, dict) and payload.get("error"):
            raise PublishError(extract_error_detail(response))
        return payload

    def build_caption(self, request: PublishRequest) -> str:
        parts = [request.description or request.title]
        if self.hashtags:
            parts.append(" ".join(self.hashtags))
        return "\n\n".join(p for p in parts if p)

    async def upload(self, credentials: PlatformCredentials, request: PublishRequest) -> PublishResult:
        ig_user_id = credentials.platform_user_id
        if not ig_user_id:
            raise PublishError("Instagram business account id missing from connection")
        token = credentials.access_token

        container = await self._graph(
            "POST",
            f"{ig_user_id}/media",
            json={
                "media_type": "REELS",
                "video_url": request.video_url,
                "caption": self.build_caption(request),
                "share_to_feed": True,
                "access_token": token,
            },
        )
        container_id = container.get("id")
        if not container_id:
            raise PublishError("Instagram returned no media container id")

        async def check():
            data = await self._graph(
                "GET", container_id, params={"fields": "status_code", "access_token": token}
            )
            return data.get("status_code")

        try:
            status = await poll_until_terminal(
                check,
                lambda s: s in ("FINISHED", "ERROR", "EXPIRED"),
                interval=self.poll_interval,
                max_attempts=self.max_polls,
            )
        except PollTimeoutError as e:
            raise PublishError("Instagram video processing timed out") from e
        if status != "FINISHED":
            raise PublishError("Instagram video processing failed")

        published = await self._graph(
            "POST",
            f"{ig_user_id}/media_publish",
            json={"creation_id": container_id, "access_token": token},
        )
        media_id = published.get("id")
        if not media_id:
            raise PublishError("Instagram returned no media id")

        permalink = None
        try:
            media = await self._graph("GET", media_id, params={"fields": "permalink", "access_token": token})
            permalink = media.get("permalink")
        except PublishError as e:
            logger.warning(f"Could not fetch permalink for Instagram media {media_id}: {e}")

        return PublishResult(
            external_id=media_id,
            external_url=permalink or f"https://instagram.com/reel/{media_id}",
        )
