"""Keyed repositories over the artifact store, job state and event log.

All pipeline components (orchestrator, step executors, completion gateway,
watchdog) read and write persisted state exclusively through these classes.
Every mutating method commits its own transaction.

Clip artifacts are written idempotently per (job_id, scene_index):
check-then-insert backed by the unique index on
(job_id, artifact_type, scene_index). Losing an insert race is reported
as a ``False`` return value, never as an error.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db.models import (
    Artifact,
    ArtifactType,
    EventType,
    Job,
    JobEvent,
    JobStatus,
    Project,
    SINGLETON_ARTIFACT_TYPES,
    utcnow,
)

logger = logging.getLogger(__name__)


class ArtifactRepository:
    """Per-stage outputs keyed by (job_id, artifact_type, scene_index)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # -- stage artifacts (one per job) -------------------------------------

    async def get_stage_artifact(
        self, job_id: uuid.UUID, artifact_type: ArtifactType
    ) -> Optional[Artifact]:
        result = await self.session.execute(
            select(Artifact)
            .where(Artifact.job_id == job_id)
            .where(Artifact.artifact_type == artifact_type.value)
            .order_by(Artifact.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def put_stage_artifact(
        self,
        job_id: uuid.UUID,
        project_id: uuid.UUID,
        artifact_type: ArtifactType,
        *,
        file_url: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> Artifact:
        """Store a stage output, replacing any previous one of the same type."""
        if artifact_type not in SINGLETON_ARTIFACT_TYPES:
            raise ValueError(f"{artifact_type.value} is not a per-job artifact type")

        await self.session.execute(
            delete(Artifact)
            .where(Artifact.job_id == job_id)
            .where(Artifact.artifact_type == artifact_type.value)
        )
        artifact = Artifact(
            job_id=job_id,
            project_id=project_id,
            artifact_type=artifact_type.value,
            file_url=file_url,
            meta=meta or {},
        )
        self.session.add(artifact)
        await self.session.commit()
        return artifact

    # -- clips -------------------------------------------------------------

    async def _get_scene_artifact(
        self, job_id: uuid.UUID, artifact_type: ArtifactType, scene_index: int
    ) -> Optional[Artifact]:
        result = await self.session.execute(
            select(Artifact)
            .where(Artifact.job_id == job_id)
            .where(Artifact.artifact_type == artifact_type.value)
            .where(Artifact.scene_index == scene_index)
        )
        return result.scalar_one_or_none()

    async def get_clip(self, job_id: uuid.UUID, scene_index: int) -> Optional[Artifact]:
        return await self._get_scene_artifact(job_id, ArtifactType.VIDEO_CLIP, scene_index)

    async def get_pending_clip(
        self, job_id: uuid.UUID, scene_index: int
    ) -> Optional[Artifact]:
        return await self._get_scene_artifact(
            job_id, ArtifactType.VIDEO_CLIP_PENDING, scene_index
        )

    async def _count(self, job_id: uuid.UUID, artifact_type: ArtifactType) -> int:
        result = await self.session.execute(
            select(func.count(Artifact.id))
            .where(Artifact.job_id == job_id)
            .where(Artifact.artifact_type == artifact_type.value)
        )
        return result.scalar() or 0

    async def count_pending(self, job_id: uuid.UUID) -> int:
        """Live in-flight generations for a job (the admission-control input)."""
        return await self._count(job_id, ArtifactType.VIDEO_CLIP_PENDING)

    async def count_clips(self, job_id: uuid.UUID) -> int:
        return await self._count(job_id, ArtifactType.VIDEO_CLIP)

    async def list_clips(self, job_id: uuid.UUID) -> list[Artifact]:
        result = await self.session.execute(
            select(Artifact)
            .where(Artifact.job_id == job_id)
            .where(Artifact.artifact_type == ArtifactType.VIDEO_CLIP.value)
            .order_by(Artifact.scene_index)
        )
        return list(result.scalars().all())

    async def list_for_job(self, job_id: uuid.UUID) -> list[Artifact]:
        result = await self.session.execute(
            select(Artifact)
            .where(Artifact.job_id == job_id)
            .order_by(Artifact.created_at, Artifact.scene_index)
        )
        return list(result.scalars().all())

    async def list_all_pending(self) -> list[Artifact]:
        """Every live pending marker across all jobs, oldest first."""
        result = await self.session.execute(
            select(Artifact)
            .where(Artifact.artifact_type == ArtifactType.VIDEO_CLIP_PENDING.value)
            .order_by(Artifact.created_at)
        )
        return list(result.scalars().all())

    async def create_pending(
        self,
        job_id: uuid.UUID,
        project_id: uuid.UUID,
        scene_index: int,
        *,
        provider: str,
        generation_id: str,
        submitted_at: Optional[datetime] = None,
    ) -> bool:
        """Record an in-flight callback generation.

        Returns False when a pending marker or completed clip already exists
        for the scene.
        """
        if await self.get_clip(job_id, scene_index) is not None:
            return False
        if await self.get_pending_clip(job_id, scene_index) is not None:
            return False

        submitted = submitted_at or utcnow()
        self.session.add(
            Artifact(
                job_id=job_id,
                project_id=project_id,
                artifact_type=ArtifactType.VIDEO_CLIP_PENDING.value,
                scene_index=scene_index,
                meta={
                    "provider": provider,
                    "generation_id": generation_id,
                    "status": "pending",
                    "submitted_at": submitted.isoformat(),
                },
            )
        )
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(
                f"Pending marker for job {job_id} scene {scene_index} already exists"
            )
            return False
        return True

    async def complete_clip(
        self,
        job_id: uuid.UUID,
        project_id: uuid.UUID,
        scene_index: int,
        file_url: str,
        meta: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Create the completed clip and drop its pending marker atomically.

        Returns False if the clip already existed (duplicate completion); any
        stale pending marker is still removed.
        """
        existing = await self.get_clip(job_id, scene_index)
        await self.session.execute(
            delete(Artifact)
            .where(Artifact.job_id == job_id)
            .where(Artifact.artifact_type == ArtifactType.VIDEO_CLIP_PENDING.value)
            .where(Artifact.scene_index == scene_index)
        )
        if existing is not None:
            await self.session.commit()
            return False

        self.session.add(
            Artifact(
                job_id=job_id,
                project_id=project_id,
                artifact_type=ArtifactType.VIDEO_CLIP.value,
                scene_index=scene_index,
                file_url=file_url,
                meta=meta or {},
            )
        )
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Clip for job {job_id} scene {scene_index} already recorded")
            return False
        return True

    async def delete_pending(self, job_id: uuid.UUID, scene_index: int) -> bool:
        """Remove a pending marker. Returns False if it was already gone."""
        result = await self.session.execute(
            delete(Artifact)
            .where(Artifact.job_id == job_id)
            .where(Artifact.artifact_type == ArtifactType.VIDEO_CLIP_PENDING.value)
            .where(Artifact.scene_index == scene_index)
        )
        await self.session.commit()
        return (result.rowcount or 0) > 0

    async def reset_scene_outputs(self, job_id: uuid.UUID) -> int:
        """Drop clips, pending markers and the final video of a job.

        These are keyed by scene index, so they are only valid for the
        scene plan they were generated against.
        """
        result = await self.session.execute(
            delete(Artifact)
            .where(Artifact.job_id == job_id)
            .where(
                Artifact.artifact_type.in_(
                    [
                        ArtifactType.VIDEO_CLIP.value,
                        ArtifactType.VIDEO_CLIP_PENDING.value,
                        ArtifactType.FINAL_VIDEO.value,
                    ]
                )
            )
        )
        await self.session.commit()
        return result.rowcount or 0


class JobRepository:
    """Job state transitions. The single source of truth for status."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, job_id: uuid.UUID) -> Optional[Job]:
        """Load a job, always re-reading its row (other writers may have moved it)."""
        return await self.session.get(Job, job_id, populate_existing=True)

    async def latest_for_project(self, project_id: uuid.UUID) -> Optional[Job]:
        result = await self.session.execute(
            select(Job)
            .where(Job.project_id == project_id)
            .order_by(Job.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_running(self, job: Job, step: str, progress: int) -> None:
        job.status = JobStatus.RUNNING.value
        job.current_step = step
        job.progress = progress
        job.error_message = None
        job.finished_at = None
        if job.started_at is None:
            job.started_at = utcnow()
        await self.session.commit()

    async def set_progress(self, job: Job, step: str, progress: int) -> None:
        job.current_step = step
        job.progress = progress
        await self.session.commit()

    async def mark_failed(self, job: Job, step: str, message: str) -> None:
        job.status = JobStatus.FAILED.value
        job.current_step = step
        job.error_message = message
        job.finished_at = utcnow()
        await self.session.commit()

    async def mark_completed(self, job: Job) -> None:
        job.status = JobStatus.COMPLETED.value
        job.current_step = "completed"
        job.progress = 100
        job.error_message = None
        job.finished_at = utcnow()
        await self.session.commit()


def event_level(event_type: EventType) -> str:
    """Default severity for an event type."""
    if event_type == EventType.STEP_FAILED:
        return "error"
    if event_type == EventType.STEP_FINISHED:
        return "success"
    return "info"


class EventLog:
    """Append-only step lifecycle audit trail.

    Events are never updated or deleted: only ``emit`` and read methods
    exist.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def emit(
        self,
        job_id: uuid.UUID,
        step: str,
        event_type: EventType,
        message: str,
        *,
        progress: Optional[int] = None,
        data: Optional[dict[str, Any]] = None,
        level: Optional[str] = None,
    ) -> JobEvent:
        event = JobEvent(
            job_id=job_id,
            level=level or event_level(event_type),
            step=step,
            event_type=event_type.value,
            message=message,
            progress=progress,
            data=data,
        )
        self.session.add(event)
        await self.session.commit()

        log_line = f"[job {job_id}][{step}][{event_type.value}] {message}"
        if event.level == "error":
            logger.error(log_line)
        elif event.level == "warning":
            logger.warning(log_line)
        else:
            logger.info(log_line)
        return event

    async def list_for_job(self, job_id: uuid.UUID) -> list[JobEvent]:
        result = await self.session.execute(
            select(JobEvent)
            .where(JobEvent.job_id == job_id)
            .order_by(JobEvent.id)
        )
        return list(result.scalars().all())


@dataclass
class ProjectView:
    """Read projection of a project joined with its latest job."""

    project: Project
    job: Optional[Job]

    @property
    def status(self) -> str:
        return self.job.status if self.job else JobStatus.PENDING.value

    @property
    def current_step(self) -> str:
        return self.job.current_step if self.job else "initialization"

    @property
    def progress(self) -> int:
        return self.job.progress if self.job else 0

    @property
    def error_message(self) -> Optional[str]:
        return self.job.error_message if self.job else None


async def project_view(session: AsyncSession, project_id: uuid.UUID) -> Optional[ProjectView]:
    """Derive a project's status/step/progress from its most recent job."""
    project = await session.get(Project, project_id)
    if project is None:
        return None
    job = await JobRepository(session).latest_for_project(project_id)
    return ProjectView(project=project, job=job)
