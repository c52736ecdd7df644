"""Asynchronous completion handling for callback-delivered clips.

Shared by the webhook endpoint and the watchdog: both turn a terminal
provider status into the same artifact and job transitions.

Success: re-host the media, create the video_clip and drop the pending
marker in one transaction, emit a success event, then resume the job:
- every scene has a clip -> resume at video_assembly
- some scenes were never submitted -> resume at video_clip_generation

Failure: drop the pending marker, emit step_failed, fail the job and
charge the failure to the clip stage retry ceiling. A single scene failure
is fatal to the whole job.

Duplicate and out-of-order notifications are benign no-ops, as are results
for scenes outside the current plan or without a matching pending marker.
A failure reaching a job that already failed keeps the first error.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db.models import ArtifactType, EventType, Job, JobStatus
from reelforge.db.repository import ArtifactRepository, EventLog, JobRepository
from reelforge.orchestrator.pipeline import record_stage_failure
from reelforge.orchestrator.state import Stage, clip_progress
from reelforge.pipeline.video_clips import clip_filename
from reelforge.services.errors import InputValidationError
from reelforge.services.providers.base import GenerationState, GenerationStatus
from reelforge.services.storage import LocalMediaStorage

logger = logging.getLogger(__name__)

# resumer(project_id, job_id, resume_step) schedules an orchestrator run
Resumer = Callable[[uuid.UUID, uuid.UUID, str], None]

CLIP_STAGE = Stage.VIDEO_CLIP_GENERATION.value


class NotificationOutcome(str, enum.Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass
class ClipNotification:
    """A provider status correlated to one scene of one job."""

    job_id: uuid.UUID
    project_id: uuid.UUID
    scene_index: int
    provider: str
    status: GenerationStatus


def _default_resumer() -> Resumer:
    from reelforge.workers.tasks import schedule_pipeline

    return schedule_pipeline


async def handle_clip_notification(
    session: AsyncSession,
    notification: ClipNotification,
    *,
    storage: LocalMediaStorage,
    resumer: Optional[Resumer] = None,
    source: str = "callback",
) -> NotificationOutcome:
    """Apply one provider notification to persisted state.

    Raises:
        InputValidationError: the job does not exist or belongs to another project
    """
    jobs = JobRepository(session)
    job = await jobs.get(notification.job_id)
    if job is None or job.project_id != notification.project_id:
        raise InputValidationError(
            f"Unknown job {notification.job_id} for project {notification.project_id}"
        )

    status = notification.status
    data = {
        "provider": notification.provider,
        "generation_id": status.generation_id,
        "scene_index": notification.scene_index,
        "state": status.state.value,
        "recovered_by_watchdog": source == "watchdog",
    }

    if not status.is_terminal:
        await EventLog(session).emit(
            job.id,
            CLIP_STAGE,
            EventType.STEP_PROGRESS,
            f"Scene {notification.scene_index}: generation {status.state.value}",
            progress=job.progress,
            data=data,
        )
        return NotificationOutcome.PROGRESS

    if status.state == GenerationState.SUCCEEDED and status.has_media:
        return await finalize_clip_success(
            session, job, notification, storage=storage, resumer=resumer, data=data
        )

    if status.state == GenerationState.SUCCEEDED:
        reason = "provider reported success without a media URL"
    else:
        reason = status.error or "unknown error"
    return await finalize_clip_failure(
        session, job, notification.scene_index, reason,
        generation_id=status.generation_id, data=data,
    )


async def finalize_clip_success(
    session: AsyncSession,
    job: Job,
    notification: ClipNotification,
    *,
    storage: LocalMediaStorage,
    resumer: Optional[Resumer] = None,
    data: Optional[dict] = None,
) -> NotificationOutcome:
    artifacts = ArtifactRepository(session)
    idx = notification.scene_index
    status = notification.status

    if await artifacts.get_clip(job.id, idx) is not None:
        await artifacts.delete_pending(job.id, idx)
        logger.info(f"Job {job.id}: scene {idx} clip already recorded, ignoring duplicate")
        return NotificationOutcome.DUPLICATE

    plan = await artifacts.get_stage_artifact(job.id, ArtifactType.SCENE_PLAN)
    scene_indexes = {s["index"] for s in plan.meta["scenes"]} if plan else set()
    if idx not in scene_indexes:
        logger.warning(f"Job {job.id}: scene {idx} is not in the scene plan, ignoring result")
        return NotificationOutcome.DUPLICATE
    if not await _is_tracked(artifacts, job.id, idx, status.generation_id):
        logger.warning(
            f"Job {job.id}: no pending generation {status.generation_id} for scene {idx}, "
            f"ignoring result"
        )
        return NotificationOutcome.DUPLICATE

    source = status.media_bytes if status.media_bytes else status.media_url
    url = await storage.ensure_durable(source, clip_filename(idx), job.id)
    created = await artifacts.complete_clip(
        job.id,
        job.project_id,
        idx,
        url,
        meta={
            "provider": notification.provider,
            "generation_id": status.generation_id,
            "original_url": status.media_url,
        },
    )
    if not created:
        return NotificationOutcome.DUPLICATE

    total = len(scene_indexes)
    completed = await artifacts.count_clips(job.id)
    await EventLog(session).emit(
        job.id,
        CLIP_STAGE,
        EventType.STEP_PROGRESS,
        f"Scene {idx}: clip completed ({completed}/{total})",
        progress=clip_progress(completed, total),
        data={**(data or {}), "file_url": url},
        level="success",
    )

    await maybe_resume(session, job.id, resumer=resumer)
    return NotificationOutcome.COMPLETED


async def finalize_clip_failure(
    session: AsyncSession,
    job: Job,
    scene_index: int,
    reason: str,
    *,
    generation_id: Optional[str] = None,
    data: Optional[dict] = None,
    category: str = "provider_terminal",
) -> NotificationOutcome:
    """Fail the job for a scene whose generation ended without a clip.

    Only a running job transitions. A failure arriving for a job that is
    already failed or completed drops the marker and leaves the recorded
    error untouched.
    """
    artifacts = ArtifactRepository(session)
    jobs = JobRepository(session)

    if await artifacts.get_clip(job.id, scene_index) is not None:
        await artifacts.delete_pending(job.id, scene_index)
        logger.info(
            f"Job {job.id}: failure for scene {scene_index} arrived after its clip, ignoring"
        )
        return NotificationOutcome.DUPLICATE
    if not await _is_tracked(artifacts, job.id, scene_index, generation_id):
        logger.info(f"Job {job.id}: scene {scene_index} failure already handled")
        return NotificationOutcome.DUPLICATE

    await artifacts.delete_pending(job.id, scene_index)
    message = f"Video generation failed at scene {scene_index}: {reason}"
    if job.status != JobStatus.RUNNING.value:
        await EventLog(session).emit(
            job.id,
            CLIP_STAGE,
            EventType.STEP_PROGRESS,
            f"Scene {scene_index}: late failure ignored, job is already {job.status}",
            progress=job.progress,
            data={**(data or {}), "error_category": category, "reason": reason},
            level="warning",
        )
        logger.warning(f"Job {job.id}: {message} (job already {job.status})")
        return NotificationOutcome.DUPLICATE

    await EventLog(session).emit(
        job.id,
        CLIP_STAGE,
        EventType.STEP_FAILED,
        message,
        progress=job.progress,
        data={**(data or {}), "error_category": category, "reason": reason},
    )
    await jobs.mark_failed(job, CLIP_STAGE, message)
    await record_stage_failure(session, job.id, Stage.VIDEO_CLIP_GENERATION)
    return NotificationOutcome.FAILED


async def _is_tracked(
    artifacts: ArtifactRepository,
    job_id: uuid.UUID,
    scene_index: int,
    generation_id: Optional[str],
) -> bool:
    """True if a pending marker exists for this scene and generation."""
    pending = await artifacts.get_pending_clip(job_id, scene_index)
    if pending is None:
        return False
    tracked = pending.meta.get("generation_id")
    return generation_id is None or tracked is None or tracked == generation_id


async def maybe_resume(
    session: AsyncSession,
    job_id: uuid.UUID,
    *,
    resumer: Optional[Resumer] = None,
) -> Optional[str]:
    """Re-invoke the orchestrator if the job can make progress.

    Only running jobs are resumed; a failed job keeps its recorded clips
    for an explicit resume later.

    Returns:
        The stage the job was resumed at, or None.
    """
    job = await JobRepository(session).get(job_id)
    if job is None or job.status != JobStatus.RUNNING.value:
        return None

    artifacts = ArtifactRepository(session)
    plan = await artifacts.get_stage_artifact(job.id, ArtifactType.SCENE_PLAN)
    if plan is None:
        return None

    scene_indexes = [s["index"] for s in plan.meta["scenes"]]
    completed = {c.scene_index for c in await artifacts.list_clips(job.id)}

    if all(i in completed for i in scene_indexes):
        step = Stage.VIDEO_ASSEMBLY.value
    else:
        unsubmitted = [
            i for i in scene_indexes
            if i not in completed and await artifacts.get_pending_clip(job.id, i) is None
        ]
        if not unsubmitted:
            return None
        step = Stage.VIDEO_CLIP_GENERATION.value

    logger.info(f"Job {job.id}: resuming at {step}")
    (resumer or _default_resumer())(job.project_id, job.id, step)
    return step
