"""Main pipeline orchestrator with idempotent step execution and metadata tracking.

Coordinates the full video generation pipeline with:
- Ordered stage execution from a resolved resume point
- Checkpoints: stages before the resume point are loaded, never recomputed
- Suspension of the clip stage when the concurrency ceiling is reached
- Per-stage timing in a PipelineRun record
- Single failure transition with full diagnostics in the event log
- Progress callback interface for CLI/API integration
"""

import enum
import logging
import time
import traceback
import uuid
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.config import settings
from reelforge.db.models import ArtifactType, EventType, PipelineRun, Project, utcnow
from reelforge.db.repository import ArtifactRepository, EventLog, JobRepository
from reelforge.orchestrator.state import (
    STAGE_DESCRIPTIONS,
    STAGE_PROGRESS,
    Stage,
    is_before,
    resolve_resume_step,
    stages_from,
)
from reelforge.pipeline.assembly import assemble_video
from reelforge.pipeline.context import StepContext
from reelforge.pipeline.scene_plan import plan_scenes
from reelforge.pipeline.script import generate_script
from reelforge.pipeline.video_clips import ClipStageResult, generate_video_clips
from reelforge.pipeline.voiceover import generate_voiceover
from reelforge.services.errors import (
    InputValidationError,
    PipelineError,
    StateConsistencyError,
    error_category,
)
from reelforge.services.providers.base import ProviderSet
from reelforge.services.providers.registry import build_provider_set
from reelforge.services.storage import LocalMediaStorage

logger = logging.getLogger(__name__)


class PipelineOutcome(str, enum.Enum):
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    SKIPPED = "skipped"


# Artifact each stage leaves behind for later stages
STAGE_CHECKPOINTS: Dict[Stage, ArtifactType] = {
    Stage.SCRIPT_GENERATION: ArtifactType.SCRIPT,
    Stage.SCENE_PLANNING: ArtifactType.SCENE_PLAN,
    Stage.VOICEOVER_GENERATION: ArtifactType.VOICEOVER,
}


async def _initialize(ctx: StepContext) -> None:
    """Providers are resolved before the stage loop; record what was loaded."""
    providers = ctx.providers
    await ctx.progress(
        "Providers loaded",
        {
            "text": providers.text.name,
            "speech": providers.speech.name,
            "video": providers.video.name,
            "assembly": providers.assembly.name,
            "video_max_concurrency": providers.video.max_concurrency,
        },
    )


STEP_EXECUTORS: Dict[Stage, Callable[[StepContext], Awaitable]] = {
    Stage.INITIALIZATION: _initialize,
    Stage.SCRIPT_GENERATION: generate_script,
    Stage.SCENE_PLANNING: plan_scenes,
    Stage.VOICEOVER_GENERATION: generate_voiceover,
    Stage.VIDEO_CLIP_GENERATION: generate_video_clips,
    Stage.VIDEO_ASSEMBLY: assemble_video,
}


async def count_stage_failures(session: AsyncSession, job_id: uuid.UUID, stage: Stage) -> int:
    """Number of runs of this job that failed at ``stage``."""
    result = await session.execute(
        select(func.count(PipelineRun.id))
        .where(PipelineRun.job_id == job_id)
        .where(PipelineRun.outcome == "failed")
        .where(PipelineRun.failed_step == stage.value)
    )
    return result.scalar() or 0


async def record_stage_failure(session: AsyncSession, job_id: uuid.UUID, stage: Stage) -> None:
    """Charge a failure that surfaced outside a run to the run that suspended.

    Callback and watchdog failures land after the orchestrator returned, so
    the latest suspended run is closed as failed. A job with no such run gets
    a synthetic failed run.
    """
    result = await session.execute(
        select(PipelineRun)
        .where(PipelineRun.job_id == job_id)
        .where(PipelineRun.outcome == PipelineOutcome.SUSPENDED.value)
        .order_by(PipelineRun.started_at.desc())
        .limit(1)
    )
    run = result.scalars().first()
    if run is None:
        run = PipelineRun(job_id=job_id, resume_step=stage.value)
        session.add(run)
    run.outcome = "failed"
    run.failed_step = stage.value
    run.completed_at = utcnow()
    await session.commit()


async def check_retry_ceiling(session: AsyncSession, job_id: uuid.UUID, stage: Stage) -> None:
    """Refuse another attempt at a stage that already failed too often.

    Raises:
        InputValidationError: stage failed max_stage_attempts times
    """
    limit = settings.pipeline.max_stage_attempts
    failures = await count_stage_failures(session, job_id, stage)
    if failures >= limit:
        raise InputValidationError(
            f"Stage '{stage.value}' has failed {failures} times "
            f"(limit {limit}); refusing to resume job {job_id}",
            details={"stage": stage.value, "failures": failures, "limit": limit},
        )


async def _verify_checkpoints(
    artifacts: ArtifactRepository, job_id: uuid.UUID, start: Stage
) -> None:
    """Fail fast if a stage before the resume point left no artifact."""
    for stage, artifact_type in STAGE_CHECKPOINTS.items():
        if not is_before(stage, start):
            continue
        if await artifacts.get_stage_artifact(job_id, artifact_type) is None:
            raise StateConsistencyError(
                f"Cannot resume at '{start.value}': no {artifact_type.value} "
                f"checkpoint from '{stage.value}'",
                details={"resume_step": start.value, "missing": artifact_type.value},
            )


def _failure_message(stage: Stage, exc: BaseException) -> str:
    message = exc.message if isinstance(exc, PipelineError) else str(exc)
    return f"{stage.value} failed: {message or type(exc).__name__}"


async def run_pipeline(
    session: AsyncSession,
    project_id: uuid.UUID,
    job_id: uuid.UUID,
    resume_step: Optional[str] = None,
    *,
    providers: Optional[ProviderSet] = None,
    storage: Optional[LocalMediaStorage] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> PipelineOutcome:
    """Execute the video generation pipeline with idempotent resume capability.

    Args:
        session: Async database session for all operations
        project_id: UUID of the project the job belongs to
        job_id: UUID of the job to execute
        resume_step: Stage to start from; defaults to the job's current_step
            for failed/running jobs and to the first stage otherwise
        providers: Provider set to use instead of the configured one
        storage: Durable media storage (defaults to LocalMediaStorage())
        progress_callback: Optional callback for status updates (e.g., CLI progress display)

    Returns:
        COMPLETED when the final video is persisted, SUSPENDED when the clip
        stage is waiting on in-flight generations, SKIPPED for a job that
        was already completed.

    Raises:
        InputValidationError: unknown job/stage or retry ceiling reached
            (raised before any job mutation)
        Exception: Re-raises any stage failure after persisting failed state
    """
    jobs = JobRepository(session)
    artifacts = ArtifactRepository(session)
    events = EventLog(session)

    job = await jobs.get(job_id)
    if job is None or job.project_id != project_id:
        raise InputValidationError(f"Job {job_id} not found for project {project_id}")
    project = await session.get(Project, project_id)

    if job.status == "completed":
        logger.info(f"Job {job_id} already completed; nothing to do")
        return PipelineOutcome.SKIPPED

    start = resolve_resume_step(job.status, job.current_step, resume_step)
    await check_retry_ceiling(session, job_id, start)
    logger.info(
        f"Starting pipeline for job {job_id} at {start.value} "
        f"(status={job.status}, current_step={job.current_step})"
    )

    run = PipelineRun(job_id=job_id, resume_step=start.value)
    session.add(run)
    await session.commit()
    run_id = run.id

    owns_providers = providers is None
    step_log: Dict[str, float] = {}
    pipeline_start = time.monotonic()
    stage = start

    async def finish_run(outcome: str, failed_step: Optional[str] = None) -> None:
        record = await session.get(PipelineRun, run_id)
        record.outcome = outcome
        record.failed_step = failed_step
        record.completed_at = utcnow()
        record.total_duration_seconds = time.monotonic() - pipeline_start
        record.log = dict(step_log)
        await session.commit()

    try:
        await _verify_checkpoints(artifacts, job_id, start)

        if not is_before(Stage.SCENE_PLANNING, start):
            dropped = await artifacts.reset_scene_outputs(job_id)
            if dropped:
                logger.info(
                    f"Job {job_id}: restarting at {start.value}, "
                    f"discarded {dropped} clip artifact(s) from the previous scene plan"
                )

        if providers is None:
            providers = build_provider_set(
                text=project.text_provider,
                speech=project.speech_provider,
                video=project.video_provider,
                assembly=project.assembly_provider,
            )
        ctx = StepContext(
            session=session,
            project=project,
            job=job,
            providers=providers,
            storage=storage or LocalMediaStorage(),
            artifacts=artifacts,
            jobs=jobs,
            events=events,
        )

        for stage in stages_from(start):
            begin, end = STAGE_PROGRESS[stage]
            description = STAGE_DESCRIPTIONS[stage]
            ctx.stage = stage

            await jobs.mark_running(job, stage.value, begin)
            await events.emit(
                job.id, stage.value, EventType.STEP_STARTED, f"{description}...", progress=begin
            )
            if progress_callback:
                progress_callback(f"{description}...")

            step_start = time.monotonic()
            result = await STEP_EXECUTORS[stage](ctx)
            step_log[stage.value] = time.monotonic() - step_start

            if isinstance(result, ClipStageResult) and not result.is_complete:
                await events.emit(
                    job.id,
                    stage.value,
                    EventType.STEP_PROGRESS,
                    f"Waiting on in-flight generations: {result.completed}/{result.total} "
                    f"clips complete, {result.pending} pending",
                    progress=job.progress,
                    data=result.summary(),
                )
                if progress_callback:
                    progress_callback(
                        f"Suspended: {result.completed}/{result.total} clips, "
                        f"{result.pending} in flight"
                    )
                await finish_run(PipelineOutcome.SUSPENDED.value)
                logger.info(f"Job {job_id} suspended at {stage.value}")
                return PipelineOutcome.SUSPENDED

            await jobs.set_progress(job, stage.value, end)
            await events.emit(
                job.id,
                stage.value,
                EventType.STEP_FINISHED,
                f"{description} finished in {step_log[stage.value]:.1f}s",
                progress=end,
                data=result.summary() if isinstance(result, ClipStageResult) else None,
            )
            logger.info(f"{stage.value} completed in {step_log[stage.value]:.2f}s")

        await jobs.mark_completed(job)
        await events.emit(
            job.id,
            Stage.COMPLETED.value,
            EventType.STEP_FINISHED,
            "Video generation completed",
            progress=100,
        )
        if progress_callback:
            progress_callback("Done")
        await finish_run(PipelineOutcome.COMPLETED.value)

        logger.info(
            f"Pipeline for job {job_id} completed in {time.monotonic() - pipeline_start:.2f}s"
        )
        return PipelineOutcome.COMPLETED

    except Exception as e:
        message = _failure_message(stage, e)
        logger.error(f"Pipeline failed at step {stage.value}: {type(e).__name__}: {e}")

        # Discard any half-written state before recording the failure
        await session.rollback()
        job = await jobs.get(job_id)

        await jobs.mark_failed(job, stage.value, message)
        await events.emit(
            job.id,
            stage.value,
            EventType.STEP_FAILED,
            message,
            progress=job.progress,
            data={
                "error_category": error_category(e),
                "exception_type": type(e).__name__,
                "details": e.details if isinstance(e, PipelineError) else {},
                "traceback": traceback.format_exc(),
            },
        )
        await finish_run("failed", failed_step=stage.value)

        # Re-raise exception for caller to handle
        raise
    finally:
        if owns_providers and providers is not None:
            await providers.close()
