"""SQLAlchemy 2.0 ORM models for reelforge."""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, Float, ForeignKey, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ArtifactType(str, enum.Enum):
    SCRIPT = "script"
    SCENE_PLAN = "scene_plan"
    VOICEOVER = "voiceover"
    VIDEO_CLIP = "video_clip"
    VIDEO_CLIP_PENDING = "video_clip_pending"
    FINAL_VIDEO = "final_video"


# One artifact of these types per job; re-running the stage replaces it
SINGLETON_ARTIFACT_TYPES = {
    ArtifactType.SCRIPT,
    ArtifactType.SCENE_PLAN,
    ArtifactType.VOICEOVER,
    ArtifactType.FINAL_VIDEO,
}


class EventType(str, enum.Enum):
    STEP_STARTED = "step_started"
    STEP_PROGRESS = "step_progress"
    STEP_FINISHED = "step_finished"
    STEP_FAILED = "step_failed"


class Project(Base):
    """Content brief for one short-form video.

    Status, step and progress are not stored here: they are projected from
    the project's latest Job (see repository.project_view).
    """
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    topic: Mapped[str] = mapped_column(Text)
    duration: Mapped[int] = mapped_column(Integer)  # target seconds
    language: Mapped[str] = mapped_column(String(20), default="en")
    style: Mapped[str] = mapped_column(String(100), default="cinematic")
    aspect_ratio: Mapped[str] = mapped_column(String(10), default="9:16")
    text_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    speech_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    video_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    assembly_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Job(Base):
    """One execution of the pipeline for a project."""
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value)
    current_step: Mapped[str] = mapped_column(String(50), default="initialization")
    progress: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Artifact(Base):
    """Persisted output of one pipeline stage.

    video_clip_pending rows mark in-flight callback generations; they carry
    provider, generation_id and submitted_at in ``meta``.
    """
    __tablename__ = "artifacts"
    __table_args__ = (
        Index(
            "uq_artifacts_job_type_scene",
            "job_id", "artifact_type", "scene_index",
            unique=True,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("jobs.id"), index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    artifact_type: Mapped[str] = mapped_column(String(30), index=True)
    scene_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    file_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class JobEvent(Base):
    """Append-only step lifecycle audit record."""
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # insertion order
    job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("jobs.id"), index=True)
    level: Mapped[str] = mapped_column(String(10))
    step: Mapped[str] = mapped_column(String(50))
    event_type: Mapped[str] = mapped_column(String(20))
    message: Mapped[str] = mapped_column(Text)
    progress: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(default=utcnow, index=True)


class PipelineRun(Base):
    """One orchestrator invocation for a job, with per-stage timing."""
    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("jobs.id"), index=True)
    resume_step: Mapped[str] = mapped_column(String(50))
    outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    failed_step: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    started_at: Mapped[datetime] = mapped_column(default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    total_duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    log: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
