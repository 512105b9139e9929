"""Tests for provider adapters and the shared HTTP helpers."""
import io
import json

import httpx
import pytest

from clipforge.config import Settings
from clipforge.errors import ProviderError
from clipforge.models.connection import Platform
from clipforge.models.transcript import Segment
from clipforge.providers import build_providers
from clipforge.providers.fetch import StreamApiFetchProvider
from clipforge.providers.llm import OpenAIChatProvider
from clipforge.providers.render import (
    FFmpegRenderProvider,
    HttpRenderProvider,
    RenderJobNotFoundError,
    RenderSpec,
    RenderState,
)
from clipforge.providers.storage import LocalStorage, S3Storage
from clipforge.providers.transcription import DeepgramProvider, OpenAIWhisperProvider
from clipforge.utils.http import check_response


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize("status,retryable", [(429, True), (503, True), (400, False), (404, False)])
def test_check_response_flags_retryable_statuses(status, retryable):
    response = httpx.Response(status, json={"error": {"message": "nope"}}, request=httpx.Request("GET", "https://x"))

    with pytest.raises(ProviderError) as exc_info:
        check_response(response, "svc")

    assert exc_info.value.retryable is retryable
    assert exc_info.value.status_code == status
    assert "nope" in exc_info.value.message


@pytest.mark.asyncio
async def test_http_render_provider_submit_and_status():
    def handler(request):
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["trim"] == {"start": 30.0, "end": 75.0}
            assert body["aspect_ratio"] == "9:16"
            assert body["captions"] == [{"start": 0.0, "end": 5.0, "text": "hi"}]
            return httpx.Response(202, json={"id": "r-1"})
        if request.url.path == "/renders/r-1":
            return httpx.Response(200, json={"status": "succeeded", "output_url": "https://cdn/x.mp4"})
        return httpx.Response(404, json={"error": "not found"})

    spec = RenderSpec(
        source_url="https://cdn/source.mp4",
        start=30.0,
        end=75.0,
        output_key="jobs/j/clips/c.mp4",
        captions=[Segment(0.0, 5.0, "hi")],
    )
    async with _client(handler) as client:
        provider = HttpRenderProvider(client, "https://render.example", api_key="key")
        render_job_id = await provider.submit(spec)
        status = await provider.get_status(render_job_id)
        with pytest.raises(RenderJobNotFoundError):
            await provider.get_status("gone")

    assert render_job_id == "r-1"
    assert status.state == RenderState.SUCCEEDED
    assert status.is_terminal
    assert status.output_url == "https://cdn/x.mp4"


@pytest.mark.asyncio
async def test_http_render_provider_cancel_ignores_finished_jobs():
    deleted = []

    def handler(request):
        assert request.method == "DELETE"
        deleted.append(request.url.path)
        if request.url.path.endswith("/gone"):
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(204)

    async with _client(handler) as client:
        provider = HttpRenderProvider(client, "https://render.example")
        await provider.cancel("r-1")
        await provider.cancel("gone")

    assert deleted == ["/renders/r-1", "/renders/gone"]


@pytest.mark.asyncio
async def test_http_render_provider_rejects_unknown_status():
    async with _client(lambda request: httpx.Response(200, json={"status": "exploded"})) as client:
        provider = HttpRenderProvider(client, "https://render.example")
        with pytest.raises(ProviderError) as exc_info:
            await provider.get_status("r-1")

    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_local_render_provider_forgets_jobs_after_restart(tmp_path):
    provider = FFmpegRenderProvider(storage=None, work_dir=tmp_path)

    with pytest.raises(RenderJobNotFoundError):
        await provider.get_status("from-a-previous-process")


def test_deepgram_parse_utterances():
    payload = {
        "metadata": {"duration": 61.5},
        "results": {
            "channels": [{"alternatives": [{"transcript": " Hello world. Bye. "}]}],
            "utterances": [
                {"start": 0.1, "end": 1.2, "transcript": "Hello world."},
                {"start": 60.0, "end": 61.0, "transcript": "Bye."},
            ],
        },
    }

    raw = DeepgramProvider.parse_response(payload, "en")

    assert raw.text == "Hello world. Bye."
    assert raw.duration == 61.5
    assert raw.segments[1] == {"start": 60.0, "end": 61.0, "text": "Bye."}


def test_deepgram_parse_falls_back_to_paragraphs():
    payload = {
        "results": {
            "channels": [{
                "alternatives": [{
                    "transcript": "One. Two.",
                    "paragraphs": {"paragraphs": [{"sentences": [
                        {"start": 0, "end": 1, "text": "One."},
                        {"start": 1, "end": 2, "text": "Two."},
                    ]}]},
                }],
            }],
        },
    }

    raw = DeepgramProvider.parse_response(payload)

    assert [s["text"] for s in raw.segments] == ["One.", "Two."]
    assert raw.duration is None


@pytest.mark.asyncio
async def test_whisper_requests_segment_timestamps():
    def handler(request):
        assert request.url.path == "/v1/audio/transcriptions"
        assert b"verbose_json" in request.content
        return httpx.Response(200, json={
            "text": "hi",
            "language": "english",
            "duration": 3.0,
            "segments": [{"start": 0.0, "end": 1.0, "text": "hi"}],
        })

    async with _client(handler) as client:
        raw = await OpenAIWhisperProvider(client, "key").transcribe(b"media", "source.mp4")

    assert raw.segments == [{"start": 0.0, "end": 1.0, "text": "hi"}]
    assert raw.duration == 3.0


@pytest.mark.asyncio
async def test_whisper_without_key_is_not_retryable():
    async with _client(lambda request: httpx.Response(500)) as client:
        with pytest.raises(ProviderError) as exc_info:
            await OpenAIWhisperProvider(client, None).transcribe(b"media", "source.mp4")

    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_chat_provider_returns_message_content():
    def handler(request):
        body = json.loads(request.content)
        assert body["messages"] == [{"role": "user", "content": "prompt"}]
        return httpx.Response(200, json={"choices": [{"message": {"content": "[]"}}]})

    async with _client(handler) as client:
        assert await OpenAIChatProvider(client, "key").complete("prompt") == "[]"


@pytest.mark.asyncio
async def test_chat_provider_rate_limit_is_retryable():
    async with _client(lambda request: httpx.Response(429, json={"error": {"message": "slow down"}})) as client:
        with pytest.raises(ProviderError) as exc_info:
            await OpenAIChatProvider(client, "key").complete("prompt")

    assert exc_info.value.retryable


def test_stream_api_prefers_720p_mp4():
    formats = [
        {"mimeType": "video/webm", "qualityLabel": "720p", "url": "webm"},
        {"mimeType": "video/mp4; codecs=avc1", "qualityLabel": "360p", "url": "360"},
        {"mimeType": "video/mp4; codecs=avc1", "qualityLabel": "720p", "url": "720"},
        {"mimeType": "video/mp4; codecs=avc1", "qualityLabel": "1080p"},
    ]

    assert StreamApiFetchProvider.select_format(formats)["url"] == "720"
    assert StreamApiFetchProvider.select_format(formats[:2])["url"] == "360"
    assert StreamApiFetchProvider.select_format([]) is None


@pytest.mark.asyncio
async def test_build_providers_from_settings(tmp_path):
    settings = Settings(
        storage_dir=tmp_path / "storage",
        work_dir=tmp_path / "work",
        fetch_providers=["stream_api", "ytdlp"],
        transcription_provider="deepgram",
    )

    async with httpx.AsyncClient() as client:
        providers = build_providers(settings, client)

    assert [f.name for f in providers.fetchers] == ["stream_api", "ytdlp"]
    assert providers.transcriber.name == "deepgram"
    assert isinstance(providers.renderer, FFmpegRenderProvider)
    assert set(providers.uploaders) == {Platform.YOUTUBE_SHORTS, Platform.INSTAGRAM_REELS}


@pytest.mark.asyncio
async def test_build_providers_rejects_unknown_fetcher(tmp_path):
    settings = Settings(storage_dir=tmp_path / "storage", fetch_providers=["torrent"])

    async with httpx.AsyncClient() as client:
        with pytest.raises(ValueError):
            build_providers(settings, client)


@pytest.mark.asyncio
async def test_local_storage_round_trip(tmp_path):
    async with httpx.AsyncClient() as client:
        storage = LocalStorage(tmp_path / "blobs", "http://localhost:8000/", client)
        url = await storage.put_bytes("jobs/j/source.mp4", b"media", "video/mp4")

        assert url == "http://localhost:8000/media/jobs/j/source.mp4"
        assert storage.local_path(url) == (tmp_path / "blobs" / "jobs" / "j" / "source.mp4").resolve()
        assert storage.local_path("https://elsewhere.example/x.mp4") is None
        assert await storage.read_bytes(url) == b"media"


@pytest.mark.asyncio
async def test_local_storage_rejects_escaping_keys(tmp_path):
    storage = LocalStorage(tmp_path / "blobs", "http://localhost:8000", http_client=None)

    with pytest.raises(ValueError):
        await storage.put_bytes("../outside.mp4", b"x", "video/mp4")


class _FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = Body

    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}


@pytest.mark.asyncio
async def test_s3_storage_uses_bucket_urls():
    s3 = _FakeS3()
    storage = S3Storage("clips", "us-east-1", http_client=None, client=s3)

    url = await storage.put_bytes("jobs/j/clips/c.mp4", b"clip", "video/mp4")

    assert url == "https://clips.s3.us-east-1.amazonaws.com/jobs/j/clips/c.mp4"
    assert storage.local_path(url) is None
    assert await storage.read_bytes(url) == b"clip"
