"""External provider adapters and the factory that wires them from settings."""
from dataclasses import dataclass, field
from typing import Dict, List

import httpx

from clipforge.config import Settings
from clipforge.models.connection import Platform
from clipforge.providers.fetch import SourceFetchProvider, StreamApiFetchProvider, YtdlpFetchProvider
from clipforge.providers.llm import OpenAIChatProvider, ScoringProvider
from clipforge.providers.platforms import InstagramReelsUploader, PlatformUploader, YouTubeShortsUploader
from clipforge.providers.render import FFmpegRenderProvider, HttpRenderProvider, RenderProvider
from clipforge.providers.storage import DurableStorage, LocalStorage, S3Storage
from clipforge.providers.transcription import DeepgramProvider, OpenAIWhisperProvider, TranscriptionProvider


@dataclass
class Providers:
    """Everything the pipeline talks to outside the process."""
    storage: DurableStorage
    fetchers: List[SourceFetchProvider]
    transcriber: TranscriptionProvider
    scorer: ScoringProvider
    renderer: RenderProvider
    uploaders: Dict[Platform, PlatformUploader] = field(default_factory=dict)


def build_storage(settings: Settings, http_client: httpx.AsyncClient) -> DurableStorage:
    if settings.storage_backend == "s3":
        return S3Storage(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            http_client=http_client,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            public_base_url=settings.s3_public_base_url,
        )
    return LocalStorage(settings.storage_dir, settings.public_base_url, http_client)


def build_providers(settings: Settings, http_client: httpx.AsyncClient) -> Providers:
    """Construct provider adapters from settings."""
    storage = build_storage(settings, http_client)

    fetchers: List[SourceFetchProvider] = []
    for name in settings.fetch_providers:
        if name == "ytdlp":
            fetchers.append(YtdlpFetchProvider())
        elif name == "stream_api":
            fetchers.append(
                StreamApiFetchProvider(
                    http_client,
                    settings.stream_api_url,
                    settings.stream_api_key,
                    settings.stream_api_host,
                )
            )
        else:
            raise ValueError(f"Unknown fetch provider: {name}")
    if not fetchers:
        raise ValueError("At least one fetch provider must be configured")

    if settings.transcription_provider == "deepgram":
        transcriber = DeepgramProvider(
            http_client,
            settings.deepgram_api_key,
            base_url=settings.deepgram_base_url,
            model=settings.deepgram_model,
            language=settings.transcript_language,
            timeout=settings.transcribe_timeout,
        )
    else:
        transcriber = OpenAIWhisperProvider(
            http_client,
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.whisper_model,
            timeout=settings.transcribe_timeout,
        )

    scorer = OpenAIChatProvider(
        http_client,
        settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        timeout=settings.analyze_timeout,
    )

    if settings.render_provider == "http":
        renderer = HttpRenderProvider(http_client, settings.render_api_url, settings.render_api_key)
    else:
        renderer = FFmpegRenderProvider(storage, settings.work_dir / "renders")

    uploaders = {
        Platform.YOUTUBE_SHORTS: YouTubeShortsUploader(
            http_client,
            storage,
            settings.youtube_client_id,
            settings.youtube_client_secret,
            privacy_status=settings.youtube_privacy_status,
            upload_timeout=settings.upload_http_timeout,
        ),
        Platform.INSTAGRAM_REELS: InstagramReelsUploader(
            http_client,
            settings.instagram_app_id,
            settings.instagram_app_secret,
            api_version=settings.graph_api_version,
            poll_interval=settings.instagram_poll_interval,
            max_polls=settings.instagram_max_polls,
        ),
    }

    return Providers(
        storage=storage,
        fetchers=fetchers,
        transcriber=transcriber,
        scorer=scorer,
        renderer=renderer,
        uploaders=uploaders,
    )
