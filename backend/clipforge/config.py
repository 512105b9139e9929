"""Application configuration."""
from pathlib import Path
from typing import Dict, List, Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CLIPFORGE_",
        extra="ignore",
    )

    # App settings
    app_name: str = "ClipForge"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ]

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/clipforge.db"

    # Data directories
    data_dir: Path = Path("./data")
    work_dir: Path = Path("./data/work")
    storage_dir: Path = Path("./data/storage")

    # Durable storage
    storage_backend: Literal["local", "s3"] = "local"
    public_base_url: str = "http://localhost:8000"
    s3_bucket: Optional[str] = None
    s3_region: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_public_base_url: Optional[str] = None

    # Source fetching (tried in order)
    fetch_providers: List[str] = ["ytdlp", "stream_api"]
    ytdlp_path: str = "yt-dlp"
    stream_api_url: str = "https://ytstream-download-youtube-videos.p.rapidapi.com/dl"
    stream_api_key: Optional[str] = None
    stream_api_host: str = "ytstream-download-youtube-videos.p.rapidapi.com"
    min_download_bytes: int = 10 * 1024

    # Transcription
    transcription_provider: Literal["openai", "deepgram"] = "openai"
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    whisper_model: str = "whisper-1"
    deepgram_api_key: Optional[str] = None
    deepgram_base_url: str = "https://api.deepgram.com/v1"
    deepgram_model: str = "nova-3"
    transcript_language: str = "en"

    # Highlight selection
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    highlight_min_seconds: float = 10.0
    highlight_max_seconds: float = 90.0
    requested_clip_count: int = 5
    max_clips_per_job: int = 5

    # Rendering
    render_provider: Literal["ffmpeg", "http"] = "ffmpeg"
    render_api_url: Optional[str] = None
    render_api_key: Optional[str] = None
    render_concurrency: int = 3
    render_poll_interval: float = 5.0
    render_max_polls: int = 60
    render_timeout_seconds: float = 300.0

    # FFmpeg settings
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    export_video_codec: str = "libx264"
    export_video_preset: str = "veryfast"
    export_video_crf: int = 18
    export_audio_codec: str = "aac"
    export_audio_bitrate: str = "192k"
    vertical_width: int = 1080
    vertical_height: int = 1920
    caption_font: str = "Arial"
    caption_font_size: int = 72

    # Thumbnail settings
    thumbnail_width: int = 320
    thumbnail_height: int = 568
    thumbnail_format: str = "jpg"

    # Platform publishing
    youtube_client_id: Optional[str] = None
    youtube_client_secret: Optional[str] = None
    youtube_privacy_status: str = "public"
    instagram_app_id: Optional[str] = None
    instagram_app_secret: Optional[str] = None
    graph_api_version: str = "v18.0"
    instagram_poll_interval: float = 5.0
    instagram_max_polls: int = 30

    # Pipeline retry policy
    step_max_attempts: int = 3
    analyze_max_attempts: int = 2
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 30.0

    # Timeouts (seconds)
    download_timeout: float = 900.0
    transcribe_timeout: float = 900.0
    analyze_timeout: float = 180.0
    generate_timeout: float = 1800.0
    job_timeout: float = 3600.0
    http_timeout: float = 30.0
    upload_http_timeout: float = 120.0

    # Worker lease
    lease_ttl_seconds: float = 120.0

    # Quota
    plan_limits: Dict[str, int] = {
        "free": 3,
        "starter": 10,
        "pro": 50,
        "unlimited": -1,
    }
    quota_period_days: int = 30


settings = Settings()

# Ensure directories exist
settings.data_dir.mkdir(parents=True, exist_ok=True)
settings.work_dir.mkdir(parents=True, exist_ok=True)
settings.storage_dir.mkdir(parents=True, exist_ok=True)
