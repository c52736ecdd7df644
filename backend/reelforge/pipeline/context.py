"""Shared state handed to every step executor."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db.models import Artifact, ArtifactType, EventType, Job, Project
from reelforge.db.repository import ArtifactRepository, EventLog, JobRepository
from reelforge.orchestrator.state import Stage
from reelforge.services.errors import StateConsistencyError
from reelforge.services.providers.base import ProviderSet
from reelforge.services.storage import LocalMediaStorage

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    session: AsyncSession
    project: Project
    job: Job
    providers: ProviderSet
    storage: LocalMediaStorage
    artifacts: ArtifactRepository
    jobs: JobRepository
    events: EventLog
    stage: Stage = Stage.INITIALIZATION

    async def progress(
        self,
        message: str,
        data: Optional[dict[str, Any]] = None,
        *,
        progress: Optional[int] = None,
        level: Optional[str] = None,
    ) -> None:
        """Emit a step_progress event for the running stage, optionally advancing progress."""
        if progress is not None:
            await self.jobs.set_progress(self.job, self.stage.value, progress)
        await self.events.emit(
            self.job.id,
            self.stage.value,
            EventType.STEP_PROGRESS,
            message,
            progress=progress if progress is not None else self.job.progress,
            data=data,
            level=level,
        )

    async def require_artifact(self, artifact_type: ArtifactType) -> Artifact:
        """Load a checkpoint produced by an earlier stage."""
        artifact = await self.artifacts.get_stage_artifact(self.job.id, artifact_type)
        if artifact is None:
            raise StateConsistencyError(
                f"Missing {artifact_type.value} artifact for job {self.job.id}; "
                f"resume from the stage that produces it",
                details={"artifact_type": artifact_type.value},
            )
        return artifact
