"""Speech-to-text provider integrations."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import httpx

from clipforge.errors import ProviderError
from clipforge.utils.http import parse_json, send

logger = logging.getLogger(__name__)


@dataclass
class RawTranscript:
    """Provider output before normalization."""
    text: str
    segments: List[dict] = field(default_factory=list)  # {"start", "end", "text"}
    language: Optional[str] = None
    duration: Optional[float] = None


class TranscriptionProvider(Protocol):
    name: str

    async def transcribe(self, media: bytes, filename: str) -> RawTranscript:
        """Transcribe audio/video bytes."""


class OpenAIWhisperProvider:
    """OpenAI Whisper, verbose_json with segment timestamps."""

    name = "openai"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        timeout: float = 600.0,
    ):
        self._http = http_client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    async def transcribe(self, media: bytes, filename: str) -> RawTranscript:
        if not self.api_key:
            raise ProviderError("OpenAI API key not configured", retryable=False)

        response = await send(
            self._http,
            "POST",
            f"{self.base_url}/audio/transcriptions",
            "OpenAI Whisper",
            headers={"Authorization": f"Bearer {self.api_key}"},
            data={
                "model": self.model,
                "response_format": "verbose_json",
                "timestamp_granularities[]": "segment",
            },
            files={"file": (filename, media, "application/octet-stream")},
            timeout=self.timeout,
        )
        payload = parse_json(response, "OpenAI Whisper")

        segments = [
            {"start": seg.get("start"), "end": seg.get("end"), "text": seg.get("text", "")}
            for seg in payload.get("segments") or []
        ]
        return RawTranscript(
            text=payload.get("text") or "",
            segments=segments,
            language=payload.get("language"),
            duration=payload.get("duration"),
        )


class DeepgramProvider:
    """Deepgram pre-recorded transcription with utterance timestamps."""

    name = "deepgram"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        base_url: str = "https://api.deepgram.com/v1",
        model: str = "nova-3",
        language: str = "en",
        timeout: float = 600.0,
    ):
        self._http = http_client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.language = language
        self.timeout = timeout

    async def transcribe(self, media: bytes, filename: str) -> RawTranscript:
        if not self.api_key:
            raise ProviderError("Deepgram API key not configured", retryable=False)

        response = await send(
            self._http,
            "POST",
            f"{self.base_url}/listen",
            "Deepgram",
            headers={
                "Authorization": f"Token {self.api_key}",
                "Content-Type": "application/octet-stream",
            },
            params={
                "model": self.model,
                "language": self.language,
                "smart_format": "true",
                "punctuate": "true",
                "utterances": "true",
            },
            content=media,
            timeout=self.timeout,
        )
        payload = parse_json(response, "Deepgram")
        return self.parse_response(payload, self.language)

    @staticmethod
    def parse_response(payload: dict, language: Optional[str] = None) -> RawTranscript:
        """Pull text and timestamped segments out of a Deepgram response."""
        results = payload.get("results") or {}
        try:
            alternative = results.get("channels", [{}])[0].get("alternatives", [{}])[0]
        except (IndexError, AttributeError):
            alternative = {}

        segments = [
            {"start": u.get("start"), "end": u.get("end"), "text": u.get("transcript", "")}
            for u in results.get("utterances") or []
        ]
        if not segments:
            # Fall back to paragraph sentences
            paragraphs = (alternative.get("paragraphs") or {}).get("paragraphs") or []
            for para in paragraphs:
                for sentence in para.get("sentences") or []:
                    segments.append({
                        "start": sentence.get("start"),
                        "end": sentence.get("end"),
                        "text": sentence.get("text", ""),
                    })

        duration = (payload.get("metadata") or {}).get("duration")
        return RawTranscript(
            text=(alternative.get("transcript") or "").strip(),
            segments=segments,
            language=language,
            duration=duration,
        )
