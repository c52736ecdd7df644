"""Watchdog reconciliation of callback generations."""

from datetime import timedelta

import pytest

from conftest import (
    FakeCallbackVideoProvider,
    RecordingResumer,
    create_job,
    failed,
    make_providers,
    succeeded,
)
from reelforge.db.models import utcnow
from reelforge.db.repository import ArtifactRepository, EventLog, JobRepository
from reelforge.orchestrator.pipeline import run_pipeline
from reelforge.orchestrator.watchdog import sweep_pending_clips
from reelforge.services.errors import ConfigurationError


async def _one_pending(session, storage):
    """A suspended callback job with only scene 0 in flight."""
    project_id, job_id = await create_job(session)
    video = FakeCallbackVideoProvider(max_concurrency=1)
    await run_pipeline(
        session, project_id, job_id, providers=make_providers(video=video), storage=storage
    )
    return project_id, job_id, video


@pytest.mark.asyncio
async def test_stale_pending_times_out_without_polling(session, storage):
    project_id, job_id, video = await _one_pending(session, storage)

    summary = await sweep_pending_clips(
        session,
        storage=storage,
        resumer=RecordingResumer(),
        provider_lookup=lambda name: video,
        now=utcnow() + timedelta(minutes=35),
    )

    assert summary.checked == 1
    assert summary.timed_out == 1
    assert video.polled == []

    job = await JobRepository(session).get(job_id)
    assert job.status == "failed"
    assert job.current_step == "video_clip_generation"
    assert "no completion received after 35 minutes" in job.error_message
    assert await ArtifactRepository(session).count_pending(job_id) == 0

    events = await EventLog(session).list_for_job(job_id)
    failure = events[-1]
    assert failure.event_type == "step_failed"
    assert failure.data["error_category"] == "timeout"
    assert failure.data["recovered_by_watchdog"] is True
    assert failure.data["age_minutes"] == 35


@pytest.mark.asyncio
async def test_finished_generation_is_recovered(session, storage):
    project_id, job_id, video = await _one_pending(session, storage)
    video.statuses["cb-0"] = succeeded(0)
    resumer = RecordingResumer()

    summary = await sweep_pending_clips(
        session, storage=storage, resumer=resumer, provider_lookup=lambda name: video
    )

    assert (summary.checked, summary.completed) == (1, 1)
    assert video.polled == ["cb-0"]
    assert video.closed
    artifacts = ArtifactRepository(session)
    assert await artifacts.get_clip(job_id, 0) is not None
    assert await artifacts.count_pending(job_id) == 0
    assert resumer.calls == [(project_id, job_id, "video_clip_generation")]

    events = await EventLog(session).list_for_job(job_id)
    assert events[-1].data["recovered_by_watchdog"] is True


@pytest.mark.asyncio
async def test_failed_generation_fails_job(session, storage):
    _, job_id, video = await _one_pending(session, storage)
    video.statuses["cb-0"] = failed(0, "safety system")

    summary = await sweep_pending_clips(
        session, storage=storage, resumer=RecordingResumer(), provider_lookup=lambda name: video
    )

    assert summary.failed == 1
    job = await JobRepository(session).get(job_id)
    assert job.status == "failed"
    assert "safety system" in job.error_message


@pytest.mark.asyncio
async def test_in_progress_generation_is_left_alone(session, storage):
    _, job_id, video = await _one_pending(session, storage)
    resumer = RecordingResumer()

    summary = await sweep_pending_clips(
        session, storage=storage, resumer=resumer, provider_lookup=lambda name: video
    )

    assert summary.in_progress == 1
    assert resumer.calls == []
    assert await ArtifactRepository(session).count_pending(job_id) == 1
    job = await JobRepository(session).get(job_id)
    assert job.status == "running"


@pytest.mark.asyncio
async def test_one_bad_marker_does_not_stop_the_sweep(session, storage):
    ghost_project, ghost_job = await create_job(session)
    await ArtifactRepository(session).create_pending(
        ghost_job, ghost_project, 0, provider="ghost", generation_id="g-0"
    )
    _, job_id, video = await _one_pending(session, storage)
    video.statuses["cb-0"] = succeeded(0)

    def lookup(name):
        if name == "ghost":
            raise ConfigurationError("Unknown video provider 'ghost'")
        return video

    summary = await sweep_pending_clips(
        session, storage=storage, resumer=RecordingResumer(), provider_lookup=lookup
    )

    assert summary.checked == 2
    assert summary.completed == 1
    assert len(summary.errors) == 1
    assert "ghost" in summary.errors[0]
    assert await ArtifactRepository(session).get_clip(job_id, 0) is not None


@pytest.mark.asyncio
async def test_timeout_on_already_failed_job_keeps_its_error(session, storage):
    project_id, job_id = await create_job(session)
    await run_pipeline(
        session, project_id, job_id,
        providers=make_providers(video=FakeCallbackVideoProvider(max_concurrency=2)),
        storage=storage,
    )
    video = FakeCallbackVideoProvider()
    video.statuses["cb-0"] = failed(0, "safety system")
    await sweep_pending_clips(
        session, storage=storage, resumer=RecordingResumer(), provider_lookup=lambda name: video
    )

    summary = await sweep_pending_clips(
        session,
        storage=storage,
        resumer=RecordingResumer(),
        provider_lookup=lambda name: video,
        now=utcnow() + timedelta(minutes=35),
    )

    assert summary.timed_out == 1
    job = await JobRepository(session).get(job_id)
    assert "safety system" in job.error_message
    assert await ArtifactRepository(session).count_pending(job_id) == 0
    events = await EventLog(session).list_for_job(job_id)
    assert len([e for e in events if e.event_type == "step_failed"]) == 1
