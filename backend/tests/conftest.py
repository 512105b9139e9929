"""Shared fixtures: a throwaway SQLite database and in-memory provider fakes."""
import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio

from clipforge.db.database import create_engine_for, create_session_maker, init_db
from clipforge.models.job import Job, JobStatus
from clipforge.models.transcript import Transcript
from clipforge.pipeline.clip_renderer import ClipRenderer
from clipforge.pipeline.highlight_selector import HighlightSelector
from clipforge.pipeline.orchestrator import PipelineOrchestrator
from clipforge.pipeline.publisher import Publisher
from clipforge.pipeline.source_resolver import SourceResolver
from clipforge.pipeline.transcriber import Transcriber
from clipforge.providers.fetch import FetchedMedia
from clipforge.providers.render import RenderJobNotFoundError, RenderState, RenderStatus
from clipforge.providers.transcription import RawTranscript

SOURCE_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
OWNER_ID = "owner-1"

TRANSCRIPT_SEGMENTS = [
    {"start": 0.0, "end": 15.0, "text": "Welcome back to the channel."},
    {"start": 15.0, "end": 30.0, "text": "Today we talk about compounding."},
    {"start": 30.0, "end": 45.0, "text": "Nobody tells you the first year is the hardest."},
    {"start": 45.0, "end": 60.0, "text": "I lost everything twice before it worked."},
    {"start": 60.0, "end": 75.0, "text": "Here is the one habit that changed it."},
    {"start": 75.0, "end": 90.0, "text": "Write down every decision you make."},
    {"start": 90.0, "end": 105.0, "text": "Review them every Sunday."},
    {"start": 105.0, "end": 120.0, "text": "Thanks for watching."},
]


def highlights_response(*clips) -> str:
    """Model output wrapping ``(start, end, score)`` tuples in a fenced JSON block."""
    payload = {
        "clips": [
            {
                "title": f"Clip {i + 1}",
                "start_time": start,
                "end_time": end,
                "transcript": "",
                "viral_score": score,
                "hook": "You won't believe this",
                "reason": "Strong emotional beat",
            }
            for i, (start, end, score) in enumerate(clips)
        ]
    }
    return f"```json\n{json.dumps(payload)}\n```"


async def no_sleep(_seconds):
    await asyncio.sleep(0)


class _FakeStorage:
    """In-memory durable storage."""

    def __init__(self):
        self.blobs = {}

    def url_for(self, key):
        return f"memory://{key}"

    def local_path(self, url):
        return None

    async def put_file(self, key, path, content_type):
        self.blobs[key] = Path(path).read_bytes()
        return self.url_for(key)

    async def put_bytes(self, key, data, content_type):
        self.blobs[key] = data
        return self.url_for(key)

    async def read_bytes(self, url):
        return self.blobs[url[len("memory://"):]]


class _FakeFetcher:
    """Writes a fake download; pops queued errors first."""

    def __init__(self, name="ytdlp", data=b"\x00" * 20000, title="Compounding explained", duration=120.0):
        self.name = name
        self.data = data
        self.title = title
        self.duration = duration
        self.errors = []
        self.calls = 0

    async def fetch(self, url, dest_dir):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        path = dest_dir / "source.mp4"
        path.write_bytes(self.data)
        return FetchedMedia(path=path, title=self.title, duration=self.duration)


async def fake_extract_audio(source, output_path):
    """Stands in for ffmpeg: the "audio" names the media it came from."""
    output_path = Path(output_path)
    output_path.write_bytes(f"mp3:{source}".encode())
    return output_path


class _FakeTranscriptionProvider:
    name = "fake-stt"

    def __init__(self, raw=None):
        self.raw = raw or RawTranscript(
            text="",
            segments=[dict(s) for s in TRANSCRIPT_SEGMENTS],
            language="en",
            duration=120.0,
        )
        self.errors = []
        self.calls = 0
        self.received = []

    async def transcribe(self, media, filename):
        self.calls += 1
        self.received.append((media, filename))
        if self.errors:
            raise self.errors.pop(0)
        return self.raw


class _FakeScorer:
    """Returns queued responses in order, repeating the last one."""

    def __init__(self, *responses):
        self.responses = list(responses) or [highlights_response((30.0, 75.0, 87))]
        self.prompts = []

    @property
    def calls(self):
        return len(self.prompts)

    async def complete(self, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class _FakeRenderProvider:
    """
    Render jobs finish after ``polls_until_done`` status checks. Clips whose
    start is in ``fail_starts`` fail; ``never_finish`` keeps every job processing.
    """

    def __init__(self, polls_until_done=1):
        self.polls_until_done = polls_until_done
        self.fail_starts = set()
        self.never_finish = False
        self.submit_errors = []
        self.specs = {}
        self.polls = {}
        self.submitted = []
        self.active = set()
        self.max_active = 0
        self.cancelled = []

    async def submit(self, spec):
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        render_job_id = f"render-{len(self.submitted) + 1}"
        self.submitted.append(spec)
        self.specs[render_job_id] = spec
        self.polls[render_job_id] = 0
        self.active.add(render_job_id)
        self.max_active = max(self.max_active, len(self.active))
        return render_job_id

    async def get_status(self, render_job_id):
        spec = self.specs.get(render_job_id)
        if spec is None:
            raise RenderJobNotFoundError(f"Render job {render_job_id} not found")
        self.polls[render_job_id] = self.polls.get(render_job_id, 0) + 1
        if self.never_finish or self.polls[render_job_id] < self.polls_until_done:
            return RenderStatus(state=RenderState.PROCESSING)

        self.active.discard(render_job_id)
        if spec.start in self.fail_starts:
            return RenderStatus(state=RenderState.FAILED, error="encoder crashed")
        return RenderStatus(
            state=RenderState.SUCCEEDED,
            output_url=f"memory://{spec.output_key}",
            thumbnail_url=f"memory://{spec.output_key}.jpg",
        )

    async def cancel(self, render_job_id):
        self.cancelled.append(render_job_id)
        self.active.discard(render_job_id)


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def make_job(session_maker):
    """Insert a job row directly, in any status."""

    async def _make_job(
        status=JobStatus.PENDING,
        owner_id=OWNER_ID,
        source_url=SOURCE_URL,
        transcript_segments=None,
        **fields,
    ) -> Job:
        async with session_maker() as session:
            job = Job(owner_id=owner_id, source_url=source_url, status=status, **fields)
            session.add(job)
            await session.flush()
            if transcript_segments is not None:
                session.add(
                    Transcript(
                        job_id=job.id,
                        full_text=" ".join(s["text"] for s in transcript_segments),
                        segments=transcript_segments,
                        language="en",
                        duration=transcript_segments[-1]["end"] if transcript_segments else 0.0,
                    )
                )
            await session.commit()
            return job

    return _make_job


@pytest.fixture
def storage():
    return _FakeStorage()


@pytest.fixture
def fetcher():
    return _FakeFetcher()


@pytest.fixture
def stt():
    return _FakeTranscriptionProvider()


@pytest.fixture
def scorer():
    return _FakeScorer()


@pytest.fixture
def render_provider():
    return _FakeRenderProvider()


@pytest.fixture
def orchestrator(session_maker, storage, fetcher, stt, scorer, render_provider, tmp_path):
    return PipelineOrchestrator(
        session_maker=session_maker,
        resolver=SourceResolver([fetcher], storage, session_maker, tmp_path / "work"),
        transcriber=Transcriber(stt, storage, session_maker, tmp_path / "audio", audio_extractor=fake_extract_audio),
        selector=HighlightSelector(scorer, min_seconds=10, max_seconds=90, requested_count=5, max_count=5),
        renderer=ClipRenderer(render_provider, session_maker, concurrency=3, poll_interval=0, max_polls=10, sleep=no_sleep),
        publisher=Publisher({}, session_maker),
        max_attempts=3,
        analyze_max_attempts=2,
        sleep=no_sleep,
    )
