"""Source fetch providers: turn a source URL into a local media file."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

import httpx

from clipforge.errors import InvalidInputError, ProviderError, SourceUnavailableError
from clipforge.utils.http import check_response, parse_json, send
from clipforge.utils.ytdlp import YtdlpError, download_video, extract_video_id, get_video_info_ytdlp

logger = logging.getLogger(__name__)

PREFERRED_QUALITIES = ("720p", "480p")


@dataclass
class FetchedMedia:
    """Media fetched to local disk, plus whatever metadata the provider knew."""
    path: Path
    title: Optional[str] = None
    duration: Optional[float] = None


class SourceFetchProvider(Protocol):
    name: str

    async def fetch(self, url: str, dest_dir: Path) -> FetchedMedia:
        """Download ``url`` into ``dest_dir``."""


class YtdlpFetchProvider:
    """Downloads with the yt-dlp binary."""

    name = "ytdlp"

    async def fetch(self, url: str, dest_dir: Path) -> FetchedMedia:
        title = None
        duration = None
        try:
            info = await get_video_info_ytdlp(url)
            title = info.get("title")
            duration = float(info["duration"]) if info.get("duration") else None
        except (YtdlpError, FileNotFoundError) as e:
            logger.warning(f"yt-dlp metadata lookup failed, downloading anyway: {e}")

        try:
            path = await download_video(url, dest_dir, filename="source")
        except YtdlpError as e:
            raise ProviderError(str(e)) from e
        except FileNotFoundError as e:
            raise ProviderError("yt-dlp is not installed", retryable=False) from e

        return FetchedMedia(path=path, title=title, duration=duration)


class StreamApiFetchProvider:
    """Resolves a direct stream URL through a download API, then streams the bytes."""

    name = "stream_api"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_url: str,
        api_key: Optional[str],
        api_host: Optional[str] = None,
    ):
        self._http = http_client
        self.api_url = api_url
        self.api_key = api_key
        self.api_host = api_host

    @staticmethod
    def select_format(formats: List[dict]) -> Optional[dict]:
        """Prefer a 720p/480p mp4, then any mp4."""
        mp4s = [f for f in formats if "video/mp4" in (f.get("mimeType") or "") and f.get("url")]
        for quality in PREFERRED_QUALITIES:
            for fmt in mp4s:
                if fmt.get("qualityLabel") == quality:
                    return fmt
        return mp4s[0] if mp4s else None

    async def fetch(self, url: str, dest_dir: Path) -> FetchedMedia:
        if not self.api_key:
            raise ProviderError("Stream API key not configured", retryable=False)

        video_id = extract_video_id(url)
        if not video_id:
            raise InvalidInputError()

        headers = {"X-RapidAPI-Key": self.api_key}
        if self.api_host:
            headers["X-RapidAPI-Host"] = self.api_host

        response = await send(self._http, "GET", self.api_url, self.name, params={"id": video_id}, headers=headers)
        data = parse_json(response, self.name)

        fmt = self.select_format(data.get("formats") or [])
        if not fmt:
            raise SourceUnavailableError("No downloadable formats available for this video.")

        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        path = dest_dir / "source.mp4"
        await self._stream_to_file(fmt["url"], path)

        duration = None
        if data.get("lengthSeconds"):
            try:
                duration = float(data["lengthSeconds"])
            except (TypeError, ValueError):
                duration = None

        return FetchedMedia(path=path, title=data.get("title"), duration=duration)

    async def _stream_to_file(self, media_url: str, path: Path) -> None:
        try:
            async with self._http.stream("GET", media_url, follow_redirects=True) as response:
                if response.status_code >= 400:
                    await response.aread()
                check_response(response, self.name)
                with open(path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.name} download timed out") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"Unable to reach {self.name} media host") from exc
