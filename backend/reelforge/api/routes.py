"""API route handlers and Pydantic request/response schemas."""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge import __version__
from reelforge.config import settings
from reelforge.db import get_session
from reelforge.db.models import Job, Project
from reelforge.db.repository import ArtifactRepository, EventLog, JobRepository, project_view
from reelforge.orchestrator.completion import (
    ClipNotification,
    Resumer,
    handle_clip_notification,
)
from reelforge.orchestrator.pipeline import check_retry_ceiling
from reelforge.orchestrator.state import can_resume, resolve_resume_step
from reelforge.orchestrator.watchdog import sweep_pending_clips
from reelforge.services.errors import InputValidationError
from reelforge.services.providers.base import CallbackVideoProvider
from reelforge.services.providers.registry import get_video_provider, is_video_provider
from reelforge.services.storage import LocalMediaStorage
from reelforge.workers.tasks import run_pipeline_background, schedule_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

ALLOWED_ASPECT_RATIOS = {"16:9", "9:16", "1:1"}


# ============================================================================
# Dependencies
# ============================================================================

def get_storage() -> LocalMediaStorage:
    return LocalMediaStorage()


def get_resumer() -> Resumer:
    return schedule_pipeline


# ============================================================================
# Pydantic Schemas
# ============================================================================

class CreateProjectRequest(BaseModel):
    """Request schema for POST /api/projects."""
    topic: str = Field(min_length=1)
    duration: int = Field(gt=0, le=600)
    language: str = "en"
    style: str = "cinematic"
    aspect_ratio: str = "9:16"
    text_provider: Optional[str] = None
    speech_provider: Optional[str] = None
    video_provider: Optional[str] = None
    assembly_provider: Optional[str] = None

    @field_validator("aspect_ratio")
    @classmethod
    def check_aspect_ratio(cls, v: str) -> str:
        if v not in ALLOWED_ASPECT_RATIOS:
            raise ValueError(f"aspect_ratio must be one of {sorted(ALLOWED_ASPECT_RATIOS)}")
        return v

    @field_validator("video_provider")
    @classmethod
    def check_video_provider(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_video_provider(v):
            raise ValueError(f"Unknown video provider: {v}")
        return v


class CreateProjectResponse(BaseModel):
    """Response schema for POST /api/projects."""
    project_id: str
    job_id: str
    status: str
    status_url: str


class StartJobRequest(BaseModel):
    resume_step: Optional[str] = None


class StartJobResponse(BaseModel):
    job_id: str
    status: str
    resume_step: str
    status_url: str


class JobStatusResponse(BaseModel):
    """Response schema for GET /api/jobs/{id}."""
    job_id: str
    project_id: str
    status: str
    current_step: str
    progress: int
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class EventResponse(BaseModel):
    id: int
    level: str
    step: str
    event_type: str
    message: str
    progress: Optional[int] = None
    data: Optional[dict[str, Any]] = None
    timestamp: str


class ArtifactResponse(BaseModel):
    id: str
    artifact_type: str
    scene_index: Optional[int] = None
    file_url: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: str


class ProjectDetail(BaseModel):
    """Response schema for GET /api/projects/{id}; status fields come from the latest job."""
    project_id: str
    topic: str
    duration: int
    language: str
    style: str
    aspect_ratio: str
    job_id: Optional[str] = None
    status: str
    current_step: str
    progress: int
    error_message: Optional[str] = None
    created_at: str


class CallbackResponse(BaseModel):
    outcome: str


class WatchdogResponse(BaseModel):
    checked: int
    timed_out: int
    completed: int
    failed: int
    in_progress: int
    errors: list[str]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


async def _get_job_or_404(session: AsyncSession, job_id: uuid.UUID) -> Job:
    job = await JobRepository(session).get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.post("/projects", status_code=202, response_model=CreateProjectResponse)
async def create_project(
    request: CreateProjectRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
):
    """Create a project and its job, then start the pipeline in background.

    Returns 202 Accepted with the ids and a status URL.
    """
    project = Project(
        topic=request.topic,
        duration=request.duration,
        language=request.language,
        style=request.style,
        aspect_ratio=request.aspect_ratio,
        text_provider=request.text_provider,
        speech_provider=request.speech_provider,
        video_provider=request.video_provider,
        assembly_provider=request.assembly_provider,
    )
    session.add(project)
    await session.flush()

    job = Job(project_id=project.id)
    session.add(job)
    await session.commit()

    logger.info(f"Created project {project.id} (job {job.id}) for topic: {request.topic[:50]}...")

    # Add background task AFTER committing project
    background_tasks.add_task(run_pipeline_background, project.id, job.id)

    return CreateProjectResponse(
        project_id=str(project.id),
        job_id=str(job.id),
        status=job.status,
        status_url=f"/api/jobs/{job.id}",
    )


@router.post("/jobs/{job_id}/start", status_code=202, response_model=StartJobResponse)
async def start_job(
    job_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    request: Optional[StartJobRequest] = None,
    session: AsyncSession = Depends(get_session),
):
    """Start or resume a job in background.

    Returns 409 if the job is completed or its resume stage has failed
    too many times.
    """
    job = await _get_job_or_404(session, job_id)

    if not can_resume(job.status):
        raise HTTPException(
            status_code=409,
            detail=f"Job cannot be started from status '{job.status}'",
        )

    resume_step = request.resume_step if request else None
    stage = resolve_resume_step(job.status, job.current_step, resume_step)
    try:
        await check_retry_ceiling(session, job.id, stage)
    except InputValidationError as e:
        raise HTTPException(status_code=409, detail=e.message)

    logger.info(f"Starting job {job_id} at {stage.value} (status {job.status})")
    background_tasks.add_task(run_pipeline_background, job.project_id, job.id, resume_step)

    return StartJobResponse(
        job_id=str(job.id),
        status=job.status,
        resume_step=stage.value,
        status_url=f"/api/jobs/{job.id}",
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    """Get lightweight job status for polling."""
    job = await _get_job_or_404(session, job_id)
    return JobStatusResponse(
        job_id=str(job.id),
        project_id=str(job.project_id),
        status=job.status,
        current_step=job.current_step,
        progress=job.progress,
        error_message=job.error_message,
        started_at=_iso(job.started_at),
        finished_at=_iso(job.finished_at),
    )


@router.get("/jobs/{job_id}/events", response_model=list[EventResponse])
async def get_job_events(job_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    await _get_job_or_404(session, job_id)
    events = await EventLog(session).list_for_job(job_id)
    return [
        EventResponse(
            id=e.id,
            level=e.level,
            step=e.step,
            event_type=e.event_type,
            message=e.message,
            progress=e.progress,
            data=e.data,
            timestamp=e.timestamp.isoformat(),
        )
        for e in events
    ]


@router.get("/jobs/{job_id}/artifacts", response_model=list[ArtifactResponse])
async def get_job_artifacts(job_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    await _get_job_or_404(session, job_id)
    artifacts = await ArtifactRepository(session).list_for_job(job_id)
    return [
        ArtifactResponse(
            id=str(a.id),
            artifact_type=a.artifact_type,
            scene_index=a.scene_index,
            file_url=a.file_url,
            metadata=a.meta or {},
            created_at=a.created_at.isoformat(),
        )
        for a in artifacts
    ]


@router.get("/projects", response_model=list[ProjectDetail])
async def list_projects(session: AsyncSession = Depends(get_session)):
    """List projects, newest first, with status from their latest job."""
    result = await session.execute(select(Project.id).order_by(Project.created_at.desc()))
    items = []
    for project_id in result.scalars().all():
        view = await project_view(session, project_id)
        items.append(_project_detail(view))
    return items


@router.get("/projects/{project_id}", response_model=ProjectDetail)
async def get_project_detail(project_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    view = await project_view(session, project_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return _project_detail(view)


def _project_detail(view) -> ProjectDetail:
    project = view.project
    return ProjectDetail(
        project_id=str(project.id),
        topic=project.topic,
        duration=project.duration,
        language=project.language,
        style=project.style,
        aspect_ratio=project.aspect_ratio,
        job_id=str(view.job.id) if view.job else None,
        status=view.status,
        current_step=view.current_step,
        progress=view.progress,
        error_message=view.error_message,
        created_at=project.created_at.isoformat(),
    )


@router.post("/callbacks/{provider}", response_model=CallbackResponse)
async def provider_callback(
    provider: str,
    request: Request,
    job_id: Optional[uuid.UUID] = None,
    project_id: Optional[uuid.UUID] = None,
    scene_index: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
    storage: LocalMediaStorage = Depends(get_storage),
    resumer: Resumer = Depends(get_resumer),
):
    """Receive an asynchronous completion notification from a video provider.

    The job/project/scene context travels in the callback URL's query
    string; the body is the provider's own payload.
    """
    if job_id is None or project_id is None or scene_index is None:
        raise HTTPException(
            status_code=400,
            detail="Callback requires job_id, project_id and scene_index query parameters",
        )
    if not is_video_provider(provider):
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    adapter = get_video_provider(provider)
    if not isinstance(adapter, CallbackVideoProvider):
        await adapter.close()
        raise HTTPException(status_code=404, detail=f"Provider {provider} does not use callbacks")

    try:
        status = adapter.parse_notification(await request.json())
    finally:
        await adapter.close()
    logger.info(
        f"Callback from {provider} for job {job_id} scene {scene_index}: {status.state.value}"
    )

    try:
        outcome = await handle_clip_notification(
            session,
            ClipNotification(
                job_id=job_id,
                project_id=project_id,
                scene_index=scene_index,
                provider=provider,
                status=status,
            ),
            storage=storage,
            resumer=resumer,
        )
    except InputValidationError as e:
        raise HTTPException(status_code=404, detail=e.message)

    return CallbackResponse(outcome=outcome.value)


@router.post("/watchdog/sweep", response_model=WatchdogResponse)
async def run_watchdog_sweep(
    session: AsyncSession = Depends(get_session),
    storage: LocalMediaStorage = Depends(get_storage),
    resumer: Resumer = Depends(get_resumer),
):
    """Run one reconciliation sweep over pending generations."""
    summary = await sweep_pending_clips(session, storage=storage, resumer=resumer)
    return WatchdogResponse(**summary.as_dict())


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "video_provider": settings.providers.video,
    }
