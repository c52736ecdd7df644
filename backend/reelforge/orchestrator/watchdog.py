"""Reconciler for callback generations whose notification never arrived.

Each sweep walks every live video_clip_pending marker system-wide:
- older than pipeline.pending_max_age_minutes: the scene is timed out and
  the job failed, without contacting the provider
- otherwise the provider is polled once; terminal results go through the
  same code path as the webhook, in-progress results are left alone

Errors on one marker are logged and collected; they never stop the sweep.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.config import settings
from reelforge.db.models import utcnow
from reelforge.db.repository import ArtifactRepository, JobRepository
from reelforge.orchestrator.completion import (
    ClipNotification,
    NotificationOutcome,
    Resumer,
    finalize_clip_failure,
    handle_clip_notification,
)
from reelforge.services.providers.base import VideoProvider
from reelforge.services.providers.registry import get_video_provider
from reelforge.services.storage import LocalMediaStorage

logger = logging.getLogger(__name__)


@dataclass
class WatchdogSummary:
    checked: int = 0
    timed_out: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "timed_out": self.timed_out,
            "completed": self.completed,
            "failed": self.failed,
            "in_progress": self.in_progress,
            "errors": list(self.errors),
        }


@dataclass
class _PendingSnapshot:
    job_id: uuid.UUID
    project_id: uuid.UUID
    scene_index: int
    provider: str
    generation_id: str
    submitted_at: datetime


def _submitted_at(meta: dict, fallback: datetime) -> datetime:
    raw = meta.get("submitted_at")
    if not raw:
        return fallback
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning(f"Unparseable submitted_at {raw!r}; using row creation time")
        return fallback


async def sweep_pending_clips(
    session: AsyncSession,
    *,
    storage: Optional[LocalMediaStorage] = None,
    resumer: Optional[Resumer] = None,
    provider_lookup: Optional[Callable[[str], VideoProvider]] = None,
    now: Optional[datetime] = None,
) -> WatchdogSummary:
    """Resolve stale or finished callback generations.

    Args:
        session: Async database session
        storage: Durable storage for recovered media
        resumer: Schedules orchestrator re-invocations (see completion.maybe_resume)
        provider_lookup: Maps a provider name to a video provider instance
        now: Reference time for age checks (naive UTC)

    Returns:
        Counters for this sweep plus per-marker error strings.
    """
    storage = storage or LocalMediaStorage()
    lookup = provider_lookup or get_video_provider
    now = now or utcnow()
    max_age = timedelta(minutes=settings.pipeline.pending_max_age_minutes)

    artifacts = ArtifactRepository(session)
    jobs = JobRepository(session)
    summary = WatchdogSummary()
    providers: dict[str, VideoProvider] = {}

    # Copy rows into plain values; a rollback after a failed marker expires them
    snapshots = [
        _PendingSnapshot(
            job_id=row.job_id,
            project_id=row.project_id,
            scene_index=row.scene_index,
            provider=row.meta.get("provider", ""),
            generation_id=row.meta.get("generation_id", ""),
            submitted_at=_submitted_at(row.meta, row.created_at),
        )
        for row in await artifacts.list_all_pending()
    ]
    logger.info(f"Watchdog sweep: {len(snapshots)} pending generation(s)")

    try:
        for pending in snapshots:
            summary.checked += 1
            label = f"job {pending.job_id} scene {pending.scene_index}"
            try:
                age = now - pending.submitted_at
                if age > max_age:
                    job = await jobs.get(pending.job_id)
                    if job is None:
                        await artifacts.delete_pending(pending.job_id, pending.scene_index)
                        continue
                    minutes = int(age.total_seconds() // 60)
                    await finalize_clip_failure(
                        session,
                        job,
                        pending.scene_index,
                        f"no completion received after {minutes} minutes",
                        generation_id=pending.generation_id,
                        data={
                            "provider": pending.provider,
                            "generation_id": pending.generation_id,
                            "scene_index": pending.scene_index,
                            "age_minutes": minutes,
                            "recovered_by_watchdog": True,
                        },
                        category="timeout",
                    )
                    summary.timed_out += 1
                    continue

                provider = providers.get(pending.provider)
                if provider is None:
                    provider = lookup(pending.provider)
                    providers[pending.provider] = provider

                status = await provider.poll_status(pending.generation_id)
                if not status.is_terminal:
                    summary.in_progress += 1
                    continue
                if status.generation_id is None:
                    status.generation_id = pending.generation_id

                outcome = await handle_clip_notification(
                    session,
                    ClipNotification(
                        job_id=pending.job_id,
                        project_id=pending.project_id,
                        scene_index=pending.scene_index,
                        provider=pending.provider,
                        status=status,
                    ),
                    storage=storage,
                    resumer=resumer,
                    source="watchdog",
                )
                if outcome == NotificationOutcome.COMPLETED:
                    summary.completed += 1
                elif outcome == NotificationOutcome.FAILED:
                    summary.failed += 1
            except Exception as e:
                logger.error(f"Watchdog failed on {label}: {type(e).__name__}: {e}")
                await session.rollback()
                summary.errors.append(f"{label}: {type(e).__name__}: {e}")
    finally:
        for provider in providers.values():
            await provider.close()

    logger.info(f"Watchdog sweep finished: {summary.as_dict()}")
    return summary
