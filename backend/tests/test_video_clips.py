"""Clip stage admission control and pending-marker idempotency."""

import pytest

from conftest import FakeCallbackVideoProvider, create_job, make_providers
from reelforge.db.models import ArtifactType
from reelforge.db.repository import ArtifactRepository, EventLog
from reelforge.orchestrator.limiter import ConcurrencyLimiter
from reelforge.orchestrator.pipeline import PipelineOutcome, run_pipeline
from reelforge.pipeline.video_clips import ClipStageResult, clip_filename, submission_duration


def test_submission_duration_rounds_and_clamps():
    assert submission_duration(6.0) == 6
    assert submission_duration(5.6) == 6
    assert submission_duration(2.0) == 4
    assert submission_duration(11.2) == 8


def test_clip_filename():
    assert clip_filename(3) == "clip_03.mp4"


def test_stage_completeness_follows_plan_scenes():
    partial = ClipStageResult(total=5, completed=4, pending=1, missing=[4])
    assert not partial.is_complete
    assert partial.summary()["missing"] == [4]
    assert ClipStageResult(total=5, completed=5, pending=0).is_complete


@pytest.mark.asyncio
async def test_ceiling_of_three_submits_three_of_five_scenes(session, storage):
    project_id, job_id = await create_job(session)
    video = FakeCallbackVideoProvider(max_concurrency=3)

    outcome = await run_pipeline(
        session, project_id, job_id, providers=make_providers(video=video), storage=storage
    )

    assert outcome == PipelineOutcome.SUSPENDED
    assert [scene for scene, _ in video.submitted] == [0, 1, 2]
    artifacts = ArtifactRepository(session)
    assert await artifacts.count_pending(job_id) == 3
    assert await artifacts.count_clips(job_id) == 0

    events = await EventLog(session).list_for_job(job_id)
    halted = [e for e in events if e.data and e.data.get("ceiling") == 3]
    assert len(halted) == 1
    assert halted[0].data["scene_index"] == 3


@pytest.mark.asyncio
async def test_rerun_with_full_ceiling_submits_nothing(session, storage):
    project_id, job_id = await create_job(session)
    await run_pipeline(
        session, project_id, job_id,
        providers=make_providers(video=FakeCallbackVideoProvider(max_concurrency=3)),
        storage=storage,
    )

    video = FakeCallbackVideoProvider(max_concurrency=3)
    outcome = await run_pipeline(
        session, project_id, job_id, providers=make_providers(video=video), storage=storage
    )
    assert outcome == PipelineOutcome.SUSPENDED
    assert video.submitted == []
    assert await ArtifactRepository(session).count_pending(job_id) == 3


@pytest.mark.asyncio
async def test_freed_slot_admits_next_scene(session, storage):
    project_id, job_id = await create_job(session)
    await run_pipeline(
        session, project_id, job_id,
        providers=make_providers(video=FakeCallbackVideoProvider(max_concurrency=3)),
        storage=storage,
    )
    artifacts = ArtifactRepository(session)
    await artifacts.complete_clip(job_id, project_id, 0, "http://testserver/media/x/clip_00.mp4")

    video = FakeCallbackVideoProvider(max_concurrency=3)
    await run_pipeline(
        session, project_id, job_id, providers=make_providers(video=video), storage=storage
    )
    assert [scene for scene, _ in video.submitted] == [3]
    assert await artifacts.count_pending(job_id) == 3
    assert await artifacts.count_clips(job_id) == 1


@pytest.mark.asyncio
async def test_limiter_counts_only_the_jobs_own_pending(session):
    project_id, job_a = await create_job(session)
    _, job_b = await create_job(session)
    artifacts = ArtifactRepository(session)
    for idx in range(2):
        await artifacts.create_pending(job_a, project_id, idx, provider="luma", generation_id=f"g{idx}")

    limiter = ConcurrencyLimiter(artifacts, 2)
    assert not await limiter.admit(job_a)
    assert await limiter.admit(job_b)
    assert await ConcurrencyLimiter(artifacts, None).admit(job_a)


@pytest.mark.asyncio
async def test_pending_and_clip_never_coexist(session):
    project_id, job_id = await create_job(session)
    artifacts = ArtifactRepository(session)

    assert await artifacts.create_pending(job_id, project_id, 0, provider="luma", generation_id="g0")
    assert not await artifacts.create_pending(job_id, project_id, 0, provider="luma", generation_id="g0b")

    assert await artifacts.complete_clip(job_id, project_id, 0, "http://testserver/media/clip.mp4")
    assert await artifacts.get_pending_clip(job_id, 0) is None
    assert not await artifacts.complete_clip(job_id, project_id, 0, "http://testserver/media/other.mp4")
    assert not await artifacts.create_pending(job_id, project_id, 0, provider="luma", generation_id="g0c")

    clips = await artifacts.list_clips(job_id)
    assert [(c.scene_index, c.file_url) for c in clips] == [(0, "http://testserver/media/clip.mp4")]


@pytest.mark.asyncio
async def test_stage_artifact_is_replaced_not_duplicated(session):
    project_id, job_id = await create_job(session)
    artifacts = ArtifactRepository(session)
    await artifacts.put_stage_artifact(job_id, project_id, ArtifactType.SCRIPT, meta={"text": "one"})
    await artifacts.put_stage_artifact(job_id, project_id, ArtifactType.SCRIPT, meta={"text": "two"})

    all_artifacts = await artifacts.list_for_job(job_id)
    assert len(all_artifacts) == 1
    assert all_artifacts[0].meta["text"] == "two"

    with pytest.raises(ValueError):
        await artifacts.put_stage_artifact(job_id, project_id, ArtifactType.VIDEO_CLIP)


@pytest.mark.asyncio
async def test_clip_outside_the_plan_does_not_complete_the_stage(session, storage):
    project_id, job_id = await create_job(session)
    providers = make_providers(video=FakeCallbackVideoProvider())
    await run_pipeline(session, project_id, job_id, providers=providers, storage=storage)

    artifacts = ArtifactRepository(session)
    for idx in (0, 1, 2, 3, 9):
        await artifacts.complete_clip(job_id, project_id, idx, f"http://testserver/media/clip-{idx}.mp4")

    outcome = await run_pipeline(session, project_id, job_id, providers=providers, storage=storage)

    assert outcome == PipelineOutcome.SUSPENDED
    events = await EventLog(session).list_for_job(job_id)
    assert events[-1].data["missing"] == [4]
    assert events[-1].data["completed"] == 4
