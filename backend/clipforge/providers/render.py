"""Render provider integrations (submit a job, then query its status)."""
import asyncio
import enum
import logging
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import httpx

from clipforge.errors import ProviderError
from clipforge.models.transcript import Segment
from clipforge.providers.storage import DurableStorage
from clipforge.utils.ffmpeg import (
    FFmpegError,
    build_caption_subtitles,
    generate_thumbnail,
    render_vertical_clip,
)
from clipforge.utils.http import parse_json, send

logger = logging.getLogger(__name__)


class RenderState(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_RENDER_STATES = {RenderState.SUCCEEDED, RenderState.FAILED}


@dataclass
class RenderSpec:
    """What to render: a trimmed, reformatted, captioned cut of the source."""
    source_url: str
    start: float
    end: float
    output_key: str
    aspect_ratio: str = "9:16"
    output_format: str = "mp4"
    captions: List[Segment] = field(default_factory=list)  # times relative to ``start``


@dataclass
class RenderStatus:
    state: RenderState
    output_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_RENDER_STATES


class RenderJobNotFoundError(ProviderError):
    """The provider has no record of the render job (e.g. lost on restart)."""
    code = "render_job_not_found"
    retryable = False


class RenderProvider(Protocol):
    async def submit(self, spec: RenderSpec) -> str:
        """Submit a render job and return its id."""

    async def get_status(self, render_job_id: str) -> RenderStatus:
        """Current status of a submitted job."""

    async def cancel(self, render_job_id: str) -> None:
        """Stop a job the caller no longer waits for. Unknown ids are ignored."""


class HttpRenderProvider:
    """Render farm reachable over a JSON HTTP API."""

    def __init__(self, http_client: httpx.AsyncClient, api_url: str, api_key: Optional[str] = None):
        if not api_url:
            raise ValueError("HTTP render provider requires render_api_url")
        self._http = http_client
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def submit(self, spec: RenderSpec) -> str:
        response = await send(
            self._http,
            "POST",
            f"{self.api_url}/renders",
            "render service",
            headers=self._headers(),
            json={
                "source_url": spec.source_url,
                "trim": {"start": spec.start, "end": spec.end},
                "aspect_ratio": spec.aspect_ratio,
                "output_format": spec.output_format,
                "output_key": spec.output_key,
                "captions": [c.to_dict() for c in spec.captions],
            },
        )
        payload = parse_json(response, "render service")
        render_job_id = payload.get("id")
        if not render_job_id:
            raise ProviderError("Render service returned no job id", retryable=False)
        return str(render_job_id)

    async def get_status(self, render_job_id: str) -> RenderStatus:
        try:
            response = await send(
                self._http,
                "GET",
                f"{self.api_url}/renders/{render_job_id}",
                "render service",
                headers=self._headers(),
            )
        except ProviderError as e:
            if e.status_code == 404:
                raise RenderJobNotFoundError(f"Render job {render_job_id} not found") from e
            raise
        payload = parse_json(response, "render service")

        try:
            state = RenderState(payload.get("status"))
        except ValueError:
            raise ProviderError(f"Unknown render status {payload.get('status')!r}", retryable=False)

        return RenderStatus(
            state=state,
            output_url=payload.get("output_url"),
            thumbnail_url=payload.get("thumbnail_url"),
            error=payload.get("error"),
        )

    async def cancel(self, render_job_id: str) -> None:
        try:
            await send(
                self._http,
                "DELETE",
                f"{self.api_url}/renders/{render_job_id}",
                "render service",
                headers=self._headers(),
            )
        except ProviderError as e:
            if e.status_code != 404:
                raise


class FFmpegRenderProvider:
    """
    Renders locally with ffmpeg in background tasks.

    Finished clips and thumbnails are uploaded to durable storage. Job state
    lives in memory, so ids do not survive a restart; ``get_status`` raises
    ``RenderJobNotFoundError`` for them and the caller resubmits.
    """

    def __init__(self, storage: DurableStorage, work_dir: Path):
        self.storage = storage
        self.work_dir = Path(work_dir)
        self._jobs: Dict[str, RenderStatus] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    async def submit(self, spec: RenderSpec) -> str:
        render_job_id = uuid.uuid4().hex
        self._jobs[render_job_id] = RenderStatus(state=RenderState.QUEUED)
        task = asyncio.create_task(self._render(render_job_id, spec))
        self._tasks[render_job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(render_job_id, None))
        return render_job_id

    async def get_status(self, render_job_id: str) -> RenderStatus:
        status = self._jobs.get(render_job_id)
        if status is None:
            raise RenderJobNotFoundError(f"Render job {render_job_id} not found")
        if status.is_terminal:
            # Terminal results are handed out once
            del self._jobs[render_job_id]
        return status

    async def cancel(self, render_job_id: str) -> None:
        task = self._tasks.pop(render_job_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info(f"Local render {render_job_id} cancelled")
        self._jobs.pop(render_job_id, None)

    def _source_for(self, url: str) -> str:
        local = self.storage.local_path(url)
        return str(local) if local is not None else url

    async def _render(self, render_job_id: str, spec: RenderSpec) -> None:
        self._jobs[render_job_id] = RenderStatus(state=RenderState.PROCESSING)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        try:
            with tempfile.TemporaryDirectory(dir=self.work_dir) as tmp:
                tmp_dir = Path(tmp)
                subtitles_path = None
                if spec.captions:
                    subtitles_path = tmp_dir / "captions.ass"
                    subtitles_path.write_text(build_caption_subtitles(spec.captions), encoding="utf-8")

                output_path = await render_vertical_clip(
                    self._source_for(spec.source_url),
                    tmp_dir / f"clip.{spec.output_format}",
                    spec.start,
                    spec.end,
                    subtitles_path=subtitles_path,
                )
                output_url = await self.storage.put_file(spec.output_key, output_path, "video/mp4")

                thumbnail_url = None
                try:
                    thumb_path = await generate_thumbnail(
                        output_path, tmp_dir / "thumb.jpg", (spec.end - spec.start) / 2
                    )
                    thumbnail_url = await self.storage.put_file(
                        spec.output_key.rsplit(".", 1)[0] + ".jpg", thumb_path, "image/jpeg"
                    )
                except FFmpegError as e:
                    logger.warning(f"Failed to generate thumbnail for render {render_job_id}: {e}")

            self._jobs[render_job_id] = RenderStatus(
                state=RenderState.SUCCEEDED,
                output_url=output_url,
                thumbnail_url=thumbnail_url,
            )
        except asyncio.CancelledError:
            self._jobs[render_job_id] = RenderStatus(state=RenderState.FAILED, error="Render cancelled")
            raise
        except Exception as e:
            logger.exception(f"Local render {render_job_id} failed")
            self._jobs[render_job_id] = RenderStatus(state=RenderState.FAILED, error=str(e)[:500])

    async def shutdown(self):
        """Cancel in-flight renders."""
        for task in list(self._tasks.values()):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
