"""Orchestrator: full runs, checkpointed resume, failure transitions."""

import pytest
from sqlalchemy import select

from conftest import (
    PUBLIC_URL,
    FakeCallbackVideoProvider,
    FakePollingVideoProvider,
    FakeSpeechProvider,
    FakeTextProvider,
    create_job,
    make_providers,
)
from reelforge.db.models import ArtifactType, PipelineRun
from reelforge.db.repository import ArtifactRepository, EventLog, JobRepository
from reelforge.orchestrator import pipeline
from reelforge.orchestrator.pipeline import PipelineOutcome, run_pipeline
from reelforge.services.errors import (
    GenerationTimeoutError,
    InputValidationError,
    ProviderTerminalError,
    StateConsistencyError,
)


@pytest.mark.asyncio
async def test_full_run_with_polling_provider(session, storage):
    project_id, job_id = await create_job(session)
    providers = make_providers()

    outcome = await run_pipeline(session, project_id, job_id, providers=providers, storage=storage)

    assert outcome == PipelineOutcome.COMPLETED
    job = await JobRepository(session).get(job_id)
    assert job.status == "completed"
    assert job.current_step == "completed"
    assert job.progress == 100
    assert job.error_message is None

    artifacts = ArtifactRepository(session)
    plan = await artifacts.get_stage_artifact(job_id, ArtifactType.SCENE_PLAN)
    assert [s["duration"] for s in plan.meta["scenes"]] == [6.0] * 5
    assert await artifacts.count_clips(job_id) == 5
    assert await artifacts.count_pending(job_id) == 0

    final = await artifacts.get_stage_artifact(job_id, ArtifactType.FINAL_VIDEO)
    assert final.file_url == f"{PUBLIC_URL}/{job_id}/final.mp4"
    assert storage.local_path(final.file_url).read_bytes() == b"final-video"

    request = providers.assembly.requests[0]
    assert [c.scene_index for c in request.clips] == [0, 1, 2, 3, 4]
    assert all(c.path is not None and c.path.exists() for c in request.clips)
    assert request.voiceover_path.read_bytes() == b"ID3-audio"


@pytest.mark.asyncio
async def test_events_record_every_stage(session, storage):
    project_id, job_id = await create_job(session)
    await run_pipeline(session, project_id, job_id, providers=make_providers(), storage=storage)

    events = await EventLog(session).list_for_job(job_id)
    started = [e.step for e in events if e.event_type == "step_started"]
    assert started == [
        "initialization",
        "script_generation",
        "scene_planning",
        "voiceover_generation",
        "video_clip_generation",
        "video_assembly",
    ]
    last = events[-1]
    assert (last.step, last.event_type, last.progress) == ("completed", "step_finished", 100)

    providers_loaded = next(e for e in events if e.message == "Providers loaded")
    assert providers_loaded.data["video"] == "fake-poll"

    polls = [e for e in events if e.data and "attempt" in e.data]
    assert len(polls) == 5


@pytest.mark.asyncio
async def test_failure_sets_single_transition_and_diagnostics(session, storage):
    project_id, job_id = await create_job(session)
    providers = make_providers(speech=FakeSpeechProvider(fail=True))

    with pytest.raises(ProviderTerminalError):
        await run_pipeline(session, project_id, job_id, providers=providers, storage=storage)

    job = await JobRepository(session).get(job_id)
    assert job.status == "failed"
    assert job.current_step == "voiceover_generation"
    assert "voice quota exhausted" in job.error_message

    events = await EventLog(session).list_for_job(job_id)
    failures = [e for e in events if e.event_type == "step_failed"]
    assert len(failures) == 1
    data = failures[0].data
    assert data["error_category"] == "provider_terminal"
    assert data["exception_type"] == "ProviderTerminalError"
    assert data["details"] == {"status_code": 402}
    assert "Traceback" in data["traceback"]
    assert failures[0].level == "error"

    runs = (await session.execute(select(PipelineRun))).scalars().all()
    assert [(r.outcome, r.failed_step) for r in runs] == [("failed", "voiceover_generation")]


@pytest.mark.asyncio
async def test_resume_loads_checkpoints_instead_of_recomputing(session, storage):
    project_id, job_id = await create_job(session)
    with pytest.raises(ProviderTerminalError):
        await run_pipeline(
            session, project_id, job_id,
            providers=make_providers(speech=FakeSpeechProvider(fail=True)),
            storage=storage,
        )
    artifacts = ArtifactRepository(session)
    script_before = await artifacts.get_stage_artifact(job_id, ArtifactType.SCRIPT)

    text = FakeTextProvider()
    outcome = await run_pipeline(
        session, project_id, job_id, providers=make_providers(text=text), storage=storage
    )

    assert outcome == PipelineOutcome.COMPLETED
    assert text.calls == []
    script_after = await artifacts.get_stage_artifact(job_id, ArtifactType.SCRIPT)
    assert script_after.id == script_before.id

    events = await EventLog(session).list_for_job(job_id)
    second_run_starts = [e.step for e in events if e.event_type == "step_started"][4:]
    assert second_run_starts == [
        "voiceover_generation",
        "video_clip_generation",
        "video_assembly",
    ]


@pytest.mark.asyncio
async def test_resume_after_clip_failure_skips_completed_scenes(session, storage):
    project_id, job_id = await create_job(session)
    with pytest.raises(ProviderTerminalError, match="content filtered"):
        await run_pipeline(
            session, project_id, job_id,
            providers=make_providers(video=FakePollingVideoProvider(fail_scenes={2})),
            storage=storage,
        )
    job = await JobRepository(session).get(job_id)
    assert job.current_step == "video_clip_generation"
    assert await ArtifactRepository(session).count_clips(job_id) == 2

    video = FakePollingVideoProvider()
    outcome = await run_pipeline(
        session, project_id, job_id, providers=make_providers(video=video), storage=storage
    )
    assert outcome == PipelineOutcome.COMPLETED
    assert video.submitted == [2, 3, 4]


@pytest.mark.asyncio
async def test_polling_timeout_is_distinct_failure(session, storage):
    project_id, job_id = await create_job(session)
    video = FakePollingVideoProvider(polls_before_done=1000, poll_timeout=0)

    with pytest.raises(GenerationTimeoutError):
        await run_pipeline(
            session, project_id, job_id, providers=make_providers(video=video), storage=storage
        )

    events = await EventLog(session).list_for_job(job_id)
    failure = next(e for e in events if e.event_type == "step_failed")
    assert failure.data["error_category"] == "timeout"


@pytest.mark.asyncio
async def test_retry_ceiling_refuses_further_attempts(session, storage):
    project_id, job_id = await create_job(session)
    for _ in range(3):
        with pytest.raises(ProviderTerminalError):
            await run_pipeline(
                session, project_id, job_id,
                providers=make_providers(speech=FakeSpeechProvider(fail=True)),
                storage=storage,
            )

    with pytest.raises(InputValidationError, match="failed 3 times"):
        await run_pipeline(
            session, project_id, job_id, providers=make_providers(), storage=storage
        )

    job = await JobRepository(session).get(job_id)
    assert job.status == "failed"
    runs = (await session.execute(select(PipelineRun))).scalars().all()
    assert len(runs) == 3


@pytest.mark.asyncio
async def test_explicit_earlier_resume_step_recomputes(session, storage):
    project_id, job_id = await create_job(session)
    with pytest.raises(ProviderTerminalError):
        await run_pipeline(
            session, project_id, job_id,
            providers=make_providers(speech=FakeSpeechProvider(fail=True)),
            storage=storage,
        )

    text = FakeTextProvider(scene_durations=(2, 2, 2, 2, 2))
    await run_pipeline(
        session, project_id, job_id, "scene_planning",
        providers=make_providers(text=text), storage=storage,
    )
    assert text.calls == ["ScenePlanOutput"]


@pytest.mark.asyncio
async def test_completed_job_is_skipped(session, storage):
    project_id, job_id = await create_job(session)
    await run_pipeline(session, project_id, job_id, providers=make_providers(), storage=storage)

    text = FakeTextProvider()
    outcome = await run_pipeline(
        session, project_id, job_id, providers=make_providers(text=text), storage=storage
    )
    assert outcome == PipelineOutcome.SKIPPED
    assert text.calls == []


@pytest.mark.asyncio
async def test_unknown_job_is_input_error(session, storage):
    project_id, job_id = await create_job(session)
    with pytest.raises(InputValidationError):
        await run_pipeline(session, job_id, project_id, providers=make_providers(), storage=storage)


@pytest.mark.asyncio
async def test_resume_without_checkpoint_is_state_error(session, storage):
    project_id, job_id = await create_job(session)
    with pytest.raises(StateConsistencyError, match="no script checkpoint"):
        await run_pipeline(
            session, project_id, job_id, "video_assembly",
            providers=make_providers(), storage=storage,
        )
    job = await JobRepository(session).get(job_id)
    assert job.status == "failed"
    assert job.current_step == "video_assembly"


@pytest.mark.asyncio
async def test_duration_overflow_warns_and_caps(session, storage):
    project_id, job_id = await create_job(session, duration=50)
    outcome = await run_pipeline(
        session, project_id, job_id, providers=make_providers(), storage=storage
    )
    assert outcome == PipelineOutcome.COMPLETED

    plan = await ArtifactRepository(session).get_stage_artifact(job_id, ArtifactType.SCENE_PLAN)
    assert plan.meta["overflow"] is True
    assert plan.meta["total_duration"] == 40.0

    events = await EventLog(session).list_for_job(job_id)
    assert any(e.level == "warning" and e.step == "scene_planning" for e in events)


@pytest.mark.asyncio
async def test_callback_provider_suspends_clip_stage(session, storage):
    project_id, job_id = await create_job(session)
    video = FakeCallbackVideoProvider()

    outcome = await run_pipeline(
        session, project_id, job_id, providers=make_providers(video=video), storage=storage
    )

    assert outcome == PipelineOutcome.SUSPENDED
    job = await JobRepository(session).get(job_id)
    assert job.status == "running"
    assert job.current_step == "video_clip_generation"
    assert await ArtifactRepository(session).count_pending(job_id) == 5

    scene, callback_url = video.submitted[0]
    assert scene == 0
    assert f"job_id={job_id}" in callback_url
    assert "/api/callbacks/fake-callback?" in callback_url

    assert not video.closed
    runs = (await session.execute(select(PipelineRun))).scalars().all()
    assert runs[0].outcome == "suspended"


@pytest.mark.asyncio
async def test_replanning_discards_clips_from_previous_plan(session, storage):
    project_id, job_id = await create_job(session)
    with pytest.raises(ProviderTerminalError):
        await run_pipeline(
            session, project_id, job_id,
            providers=make_providers(video=FakePollingVideoProvider(fail_scenes={4})),
            storage=storage,
        )
    assert await ArtifactRepository(session).count_clips(job_id) == 4

    video = FakePollingVideoProvider()
    text = FakeTextProvider(scene_durations=(8, 8, 8, 8))
    outcome = await run_pipeline(
        session, project_id, job_id, "scene_planning",
        providers=make_providers(video=video, text=text), storage=storage,
    )

    assert outcome == PipelineOutcome.COMPLETED
    assert video.submitted == [0, 1, 2, 3]
    clips = await ArtifactRepository(session).list_clips(job_id)
    assert [c.meta["duration"] for c in clips] == [7.5, 7.5, 7.5, 7.5]


@pytest.mark.asyncio
async def test_replanning_drops_in_flight_generations(session, storage):
    project_id, job_id = await create_job(session)
    await run_pipeline(
        session, project_id, job_id,
        providers=make_providers(video=FakeCallbackVideoProvider()), storage=storage,
    )
    artifacts = ArtifactRepository(session)
    assert await artifacts.count_pending(job_id) == 5

    video = FakeCallbackVideoProvider()
    outcome = await run_pipeline(
        session, project_id, job_id, "scene_planning",
        providers=make_providers(video=video, text=FakeTextProvider(scene_durations=(8, 8, 8, 8))),
        storage=storage,
    )

    assert outcome == PipelineOutcome.SUSPENDED
    assert [scene for scene, _ in video.submitted] == [0, 1, 2, 3]
    assert await artifacts.count_pending(job_id) == 4


@pytest.mark.asyncio
async def test_configured_providers_are_closed_after_each_run(session, storage, monkeypatch):
    video = FakeCallbackVideoProvider()
    monkeypatch.setattr(pipeline, "build_provider_set", lambda **names: make_providers(video=video))
    project_id, job_id = await create_job(session)

    outcome = await run_pipeline(session, project_id, job_id, storage=storage)

    assert outcome == PipelineOutcome.SUSPENDED
    assert video.closed


@pytest.mark.asyncio
async def test_configured_providers_are_closed_after_a_failure(session, storage, monkeypatch):
    video = FakePollingVideoProvider(fail_scenes={0})
    monkeypatch.setattr(pipeline, "build_provider_set", lambda **names: make_providers(video=video))
    project_id, job_id = await create_job(session)

    with pytest.raises(ProviderTerminalError):
        await run_pipeline(session, project_id, job_id, storage=storage)

    assert video.closed
