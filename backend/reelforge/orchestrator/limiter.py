"""Admission control for in-flight clip generations.

The limiter keeps no in-memory counters: admission is recomputed from the
number of live video_clip_pending artifacts each time, so it survives
process restarts and is shared by every process that writes to the same
database.
"""

import logging
import uuid
from typing import Optional

from reelforge.db.repository import ArtifactRepository

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Per-job ceiling on outstanding asynchronous generations."""

    def __init__(self, artifacts: ArtifactRepository, max_concurrency: Optional[int]):
        self.artifacts = artifacts
        self.max_concurrency = max_concurrency

    @property
    def unlimited(self) -> bool:
        return self.max_concurrency is None

    async def in_flight(self, job_id: uuid.UUID) -> int:
        return await self.artifacts.count_pending(job_id)

    async def admit(self, job_id: uuid.UUID) -> bool:
        """Return True if one more generation may be submitted for the job."""
        if self.max_concurrency is None:
            return True
        in_flight = await self.in_flight(job_id)
        if in_flight >= self.max_concurrency:
            logger.info(
                f"Job {job_id}: concurrency ceiling reached "
                f"({in_flight}/{self.max_concurrency} in flight)"
            )
            return False
        return True
