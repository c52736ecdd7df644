"""Background execution of pipeline runs and the periodic watchdog.

Runs of the same job are serialized: a resume requested while a run for
that job is active is coalesced into one follow-up run, started after the
active run returns.
"""

import asyncio
import logging
import uuid
from typing import Optional

from reelforge.config import settings
from reelforge.db import async_session
from reelforge.orchestrator.pipeline import run_pipeline
from reelforge.orchestrator.watchdog import sweep_pending_clips

logger = logging.getLogger(__name__)

# Jobs with a run in progress in this process
_active_runs: set[uuid.UUID] = set()
# job_id -> (project_id, resume_step) of the follow-up run
_rerun_requested: dict[uuid.UUID, tuple[uuid.UUID, Optional[str]]] = {}
# Strong references so scheduled tasks are not garbage collected mid-run
_background_tasks: set[asyncio.Task] = set()


async def _run_once(project_id: uuid.UUID, job_id: uuid.UUID, resume_step: Optional[str]) -> None:
    """Run pipeline with a fresh session.

    Never share a session across async boundaries; failures are already
    persisted by the orchestrator and only logged here.
    """
    async with async_session() as session:
        try:
            outcome = await run_pipeline(session, project_id, job_id, resume_step)
            logger.info(f"Background run for job {job_id} finished: {outcome.value}")
        except Exception as e:
            logger.error(f"Background pipeline failed for job {job_id}: {type(e).__name__}: {str(e)}")


async def run_pipeline_background(
    project_id: uuid.UUID,
    job_id: uuid.UUID,
    resume_step: Optional[str] = None,
) -> None:
    if job_id in _active_runs:
        _rerun_requested[job_id] = (project_id, resume_step)
        logger.info(f"Job {job_id} already running; queued follow-up run at {resume_step}")
        return

    _active_runs.add(job_id)
    try:
        await _run_once(project_id, job_id, resume_step)
        while job_id in _rerun_requested:
            project_id, resume_step = _rerun_requested.pop(job_id)
            await _run_once(project_id, job_id, resume_step)
    finally:
        _active_runs.discard(job_id)


def schedule_pipeline(
    project_id: uuid.UUID,
    job_id: uuid.UUID,
    resume_step: Optional[str] = None,
) -> None:
    """Start a pipeline run on the running event loop without awaiting it."""
    task = asyncio.get_running_loop().create_task(
        run_pipeline_background(project_id, job_id, resume_step)
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def is_running(job_id: uuid.UUID) -> bool:
    return job_id in _active_runs


async def watchdog_loop(interval: Optional[float] = None) -> None:
    """Sweep pending generations forever; cancel the task to stop."""
    interval = interval or settings.pipeline.watchdog_interval_seconds
    logger.info(f"Watchdog started (interval {interval:.0f}s)")
    while True:
        try:
            async with async_session() as session:
                await sweep_pending_clips(session, resumer=schedule_pipeline)
        except Exception as e:
            logger.error(f"Watchdog sweep failed: {type(e).__name__}: {e}", exc_info=True)
        await asyncio.sleep(interval)
