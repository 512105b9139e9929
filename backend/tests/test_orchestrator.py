"""End-to-end pipeline runs against fake providers and a real SQLite database."""
import pytest
from sqlalchemy import select

from clipforge.errors import ProviderError, RenderFailedError
from clipforge.models.clip import Clip, ClipStatus
from clipforge.models.job import Job, JobStatus
from clipforge.models.quota import QuotaRecord
from clipforge.pipeline.clip_renderer import QUOTA_REACHED_MESSAGE
from clipforge.services.job_service import JobService
from clipforge.services.quota_service import QuotaService

from conftest import OWNER_ID, TRANSCRIPT_SEGMENTS, highlights_response


async def _load(session_maker, job_id):
    async with session_maker() as session:
        job = await session.get(Job, job_id)
        result = await session.execute(select(Clip).where(Clip.job_id == job_id).order_by(Clip.ordering))
        clips = list(result.scalars().all())
        quota = await session.get(QuotaRecord, job.owner_id)
        return job, clips, quota


async def _use_up_quota(session_maker, owner_id=OWNER_ID, consumed=3):
    async with session_maker() as session:
        record = await QuotaService(session).get_or_create(owner_id)
        record.consumed = consumed
        await session.commit()


@pytest.mark.asyncio
async def test_happy_path_produces_one_clip(orchestrator, session_maker, make_job, fetcher, stt, storage):
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    job, clips, quota = await _load(session_maker, job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at is not None
    assert job.title == "Compounding explained"
    assert job.duration == 120.0
    assert job.media_url == f"memory://jobs/{job.id}/source.mp4"
    assert f"jobs/{job.id}/source.mp4" in storage.blobs

    assert len(clips) == 1
    clip = clips[0]
    assert clip.status == ClipStatus.COMPLETED
    assert clip.duration == 45.0
    assert clip.score == 87
    assert clip.media_url == f"memory://jobs/{job.id}/clips/{clip.id}.mp4"
    assert "first year is the hardest" in clip.transcript_excerpt

    assert quota.consumed == 1
    assert fetcher.calls == 1
    assert stt.calls == 1


@pytest.mark.asyncio
async def test_status_moves_forward_through_every_step(orchestrator, make_job, monkeypatch):
    job = await make_job()
    moves = []
    original = JobService.transition

    async def recording_transition(self, job_id, expected, new, **fields):
        moved = await original(self, job_id, expected, new, **fields)
        if moved and expected != new:
            moves.append(new)
        return moved

    monkeypatch.setattr(JobService, "transition", recording_transition)

    await orchestrator.run(job.id)

    assert moves == [
        JobStatus.DOWNLOADING,
        JobStatus.TRANSCRIBING,
        JobStatus.ANALYZING,
        JobStatus.GENERATING,
        JobStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_quota_exhausted_fails_before_any_external_call(
    orchestrator, session_maker, make_job, fetcher, stt, scorer, render_provider
):
    await _use_up_quota(session_maker)
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.FAILED
    job, clips, quota = await _load(session_maker, job.id)
    assert job.error_code == "quota_exceeded"
    assert job.error_message
    assert clips == []
    assert quota.consumed == 3
    assert fetcher.calls == 0
    assert stt.calls == 0
    assert scorer.calls == 0
    assert render_provider.submitted == []


@pytest.mark.asyncio
async def test_no_highlights_fails_job_without_clips(orchestrator, session_maker, make_job, scorer):
    scorer.responses = ['{"clips": []}']
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.FAILED
    job, clips, quota = await _load(session_maker, job.id)
    assert job.error_code == "no_highlights_found"
    assert clips == []
    assert quota.consumed == 0
    # Analysis gets a second attempt before giving up
    assert scorer.calls == 2


@pytest.mark.asyncio
async def test_structured_hook_and_reason_do_not_break_analysis(orchestrator, session_maker, make_job, scorer):
    scorer.responses = [
        '{"clips": [{"title": "Compounding", "start_time": 30, "end_time": 75, "viral_score": 80,'
        ' "hook": ["Wait", "for it"], "reason": {"why": "funny"}}]}'
    ]
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    job, clips, quota = await _load(session_maker, job.id)
    assert len(clips) == 1
    assert clips[0].status == ClipStatus.COMPLETED
    assert clips[0].hook is None
    assert clips[0].rationale is None


@pytest.mark.asyncio
async def test_partial_render_failure_completes_job_and_charges_successes(
    orchestrator, session_maker, make_job, scorer, render_provider
):
    scorer.responses = [highlights_response((10.0, 40.0, 90), (40.0, 70.0, 80), (70.0, 100.0, 70))]
    render_provider.fail_starts = {40.0}
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    job, clips, quota = await _load(session_maker, job.id)
    assert [c.status for c in clips] == [ClipStatus.COMPLETED, ClipStatus.FAILED, ClipStatus.COMPLETED]
    assert clips[1].error_message == RenderFailedError.default_message
    assert clips[1].media_url is None
    assert quota.consumed == 2


@pytest.mark.asyncio
async def test_highlights_capped_at_remaining_quota(orchestrator, session_maker, make_job, scorer):
    await _use_up_quota(session_maker, consumed=2)
    scorer.responses = [highlights_response((10.0, 40.0, 90), (40.0, 70.0, 80), (70.0, 100.0, 70))]
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    job, clips, quota = await _load(session_maker, job.id)
    assert len(clips) == 1
    assert clips[0].score == 90
    assert quota.consumed == 3


@pytest.mark.asyncio
async def test_resume_from_stored_transcript_skips_download_and_transcription(
    orchestrator, session_maker, make_job, fetcher, stt, scorer
):
    job = await make_job(
        status=JobStatus.ANALYZING,
        media_url="memory://jobs/existing/source.mp4",
        duration=120.0,
        transcript_segments=TRANSCRIPT_SEGMENTS,
    )

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    assert fetcher.calls == 0
    assert stt.calls == 0
    assert scorer.calls == 1
    _, clips, _ = await _load(session_maker, job.id)
    assert [c.status for c in clips] == [ClipStatus.COMPLETED]


@pytest.mark.asyncio
async def test_resume_at_transcribing_reuses_stored_transcript(orchestrator, make_job, fetcher, stt):
    job = await make_job(
        status=JobStatus.TRANSCRIBING,
        media_url="memory://jobs/existing/source.mp4",
        duration=120.0,
        transcript_segments=TRANSCRIPT_SEGMENTS,
    )

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    assert fetcher.calls == 0
    assert stt.calls == 0


@pytest.mark.asyncio
async def test_resume_at_generating_does_not_reselect(orchestrator, session_maker, make_job, scorer, render_provider):
    job = await make_job(
        status=JobStatus.GENERATING,
        media_url="memory://jobs/existing/source.mp4",
        duration=120.0,
        transcript_segments=TRANSCRIPT_SEGMENTS,
    )
    async with session_maker() as session:
        session.add(Clip(job_id=job.id, owner_id=OWNER_ID, title="Kept", start_time=30.0, end_time=60.0))
        await session.commit()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    assert scorer.calls == 0
    assert len(render_provider.submitted) == 1


@pytest.mark.asyncio
async def test_transient_download_error_is_retried(orchestrator, session_maker, make_job, fetcher):
    fetcher.errors = [ProviderError("yt-dlp timed out")]
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_retry_budget_exhausted_fails_job(orchestrator, session_maker, make_job, stt):
    stt.errors = [ProviderError("503"), ProviderError("503"), ProviderError("503")]
    job = await make_job()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.FAILED
    job, clips, _ = await _load(session_maker, job.id)
    assert job.error_code == "provider_error"
    assert job.error_message == "Transcription failed. Please try again later."
    assert stt.calls == 3
    assert clips == []


@pytest.mark.asyncio
async def test_invalid_source_url_is_not_retried(orchestrator, session_maker, make_job, fetcher):
    job = await make_job(source_url="https://vimeo.com/123456")

    status = await orchestrator.run(job.id)

    assert status == JobStatus.FAILED
    job, _, _ = await _load(session_maker, job.id)
    assert job.error_code == "invalid_input"
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_cancel_during_analysis_stops_before_rendering(
    orchestrator, session_maker, make_job, scorer, render_provider
):
    job = await make_job()
    response = scorer.responses[0]

    class _CancellingScorer:
        calls = 0

        async def complete(self, prompt):
            self.calls += 1
            async with session_maker() as session:
                await JobService(session).cancel(job.id)
                await session.commit()
            return response

    orchestrator.selector.scorer = _CancellingScorer()

    status = await orchestrator.run(job.id)

    assert status == JobStatus.FAILED
    job, _, quota = await _load(session_maker, job.id)
    assert job.status == JobStatus.FAILED
    assert job.error_code == "cancelled"
    assert render_provider.submitted == []
    assert quota.consumed == 0


@pytest.mark.asyncio
async def test_terminal_job_is_left_alone(orchestrator, make_job, fetcher):
    job = await make_job(status=JobStatus.COMPLETED)

    assert await orchestrator.run(job.id) == JobStatus.COMPLETED
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_missing_job_returns_none(orchestrator):
    assert await orchestrator.run("does-not-exist") is None


@pytest.mark.asyncio
async def test_quota_reached_mid_job_fails_remaining_clips(
    orchestrator, session_maker, make_job, scorer, render_provider
):
    scorer.responses = [highlights_response((10.0, 40.0, 90), (40.0, 70.0, 80))]
    job = await make_job()

    original_submit = render_provider.submit

    async def submit_and_spend(spec):
        # Another job consumes the last units while this one renders
        if not render_provider.submitted:
            await _use_up_quota(session_maker)
        return await original_submit(spec)

    render_provider.submit = submit_and_spend

    status = await orchestrator.run(job.id)

    assert status == JobStatus.COMPLETED
    _, clips, quota = await _load(session_maker, job.id)
    assert all(c.status == ClipStatus.FAILED for c in clips)
    assert all(c.error_message == QUOTA_REACHED_MESSAGE for c in clips)
    assert quota.consumed == 3
