"""Transcription step: durable media -> persisted, normalized transcript."""
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from clipforge.errors import CorruptDownloadError, NoSpeechDetectedError
from clipforge.models.transcript import Segment, Transcript
from clipforge.providers.storage import DurableStorage
from clipforge.providers.transcription import RawTranscript, TranscriptionProvider
from clipforge.services.job_service import JobService
from clipforge.utils.ffmpeg import FFmpegError, extract_audio

logger = logging.getLogger(__name__)


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_segments(raw_segments: Iterable[dict]) -> List[Segment]:
    """
    Canonical segments: sorted by start, end >= start, no overlaps.

    Entries without usable timestamps or text are dropped. An overlapping
    segment is trimmed to start where the previous one ended.
    """
    segments = []
    for raw in raw_segments or []:
        if not isinstance(raw, dict):
            continue
        start = _to_float(raw.get("start"))
        end = _to_float(raw.get("end"))
        text = (raw.get("text") or "").strip()
        if start is None or end is None or not text:
            continue
        start = max(0.0, start)
        segments.append(Segment(start=start, end=max(start, end), text=text))

    segments.sort(key=lambda s: (s.start, s.end))

    normalized: List[Segment] = []
    for seg in segments:
        if normalized and seg.start < normalized[-1].end:
            seg = Segment(start=normalized[-1].end, end=max(normalized[-1].end, seg.end), text=seg.text)
        normalized.append(seg)
    return normalized


def transcript_duration(segments: List[Segment], reported: Optional[float] = None) -> float:
    """Provider-reported duration, else the end of the last segment."""
    if reported:
        return float(reported)
    return segments[-1].end if segments else 0.0


AudioExtractor = Callable[[str, Path], Awaitable[Path]]


class Transcriber:
    """Runs speech-to-text on a job's audio track and stores the result once."""

    def __init__(
        self,
        provider: TranscriptionProvider,
        storage: DurableStorage,
        session_maker: async_sessionmaker,
        work_dir: Optional[Path] = None,
        audio_extractor: AudioExtractor = extract_audio,
    ):
        self.provider = provider
        self.storage = storage
        self.session_maker = session_maker
        self.work_dir = Path(work_dir) if work_dir else None
        self.audio_extractor = audio_extractor

    async def _read_audio(self, job_id: str, media_url: str) -> bytes:
        # ffmpeg reads local files directly and remote storage over http(s)
        local = self.storage.local_path(media_url)
        source = str(local) if local is not None else media_url

        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=self.work_dir) as tmp:
            try:
                audio_path = await self.audio_extractor(source, Path(tmp) / "audio.mp3")
            except FFmpegError as e:
                logger.warning(f"Job {job_id}: audio extraction failed: {e}")
                raise CorruptDownloadError() from e
            return await asyncio.to_thread(Path(audio_path).read_bytes)

    async def transcribe(self, job_id: str, media_url: str) -> Transcript:
        async with self.session_maker() as session:
            existing = await JobService(session).get_transcript(job_id)
        if existing is not None:
            logger.info(f"Job {job_id}: transcript already stored, skipping transcription")
            return existing

        audio = await self._read_audio(job_id, media_url)
        logger.info(f"Job {job_id}: transcribing {len(audio)} bytes of audio with {self.provider.name}")

        raw = await self.provider.transcribe(audio, "audio.mp3")
        transcript = self.build_transcript(job_id, raw)

        async with self.session_maker() as session:
            session.add(transcript)
            await session.commit()

        logger.info(
            f"Job {job_id}: transcript stored ({len(transcript.segments)} segments, "
            f"{transcript.duration:.1f}s)"
        )
        return transcript

    @staticmethod
    def build_transcript(job_id: str, raw: RawTranscript) -> Transcript:
        """
        Normalize provider output into a Transcript row.

        Raises:
            NoSpeechDetectedError: the provider found nothing to transcribe
        """
        segments = normalize_segments(raw.segments)
        text = (raw.text or "").strip()

        if not segments and text and raw.duration:
            # Provider gave text without timing; treat it as one segment
            segments = [Segment(start=0.0, end=float(raw.duration), text=text)]

        if not segments:
            raise NoSpeechDetectedError()

        if not text:
            text = " ".join(s.text for s in segments)

        return Transcript(
            job_id=job_id,
            full_text=text,
            segments=[s.to_dict() for s in segments],
            language=raw.language,
            duration=transcript_duration(segments, raw.duration),
        )
