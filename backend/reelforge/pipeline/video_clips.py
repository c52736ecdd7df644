"""Per-scene video clip generation with persisted admission control.

Scenes are walked in index order:
1. a completed video_clip exists -> skipped
2. a video_clip_pending exists -> skipped (generation already in flight)
3. the concurrency limiter denies admission -> the stage stops and reports
   itself incomplete; the completion gateway or watchdog resumes it later
4. otherwise the scene is handed to the video provider. Polling providers
   return the clip; callback providers record a pending marker and return.

The stage is complete only when every scene has a completed clip.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from reelforge.db.models import ArtifactType
from reelforge.orchestrator.limiter import ConcurrencyLimiter
from reelforge.orchestrator.state import clip_progress
from reelforge.pipeline.context import StepContext
from reelforge.services.providers.base import ClipRequest

logger = logging.getLogger(__name__)


def submission_duration(seconds: float, min_seconds: int = 4, max_seconds: int = 8) -> int:
    """Whole-second clip length sent to providers."""
    return max(min_seconds, min(max_seconds, round(seconds)))


def clip_filename(scene_index: int) -> str:
    return f"clip_{scene_index:02d}.mp4"


@dataclass
class ClipStageResult:
    total: int
    completed: int
    pending: int
    submitted: int = 0
    halted_by_limiter: bool = False
    missing: list[int] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.missing

    def summary(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "pending": self.pending,
            "submitted": self.submitted,
            "halted_by_limiter": self.halted_by_limiter,
            "missing": self.missing,
        }


class _SceneTracker:
    """ClipTracker bound to one scene of one job."""

    def __init__(self, ctx: StepContext, scene_index: int, provider: str):
        self.ctx = ctx
        self.scene_index = scene_index
        self.provider = provider

    async def progress(self, message: str, data: Optional[dict[str, Any]] = None) -> None:
        await self.ctx.progress(message, {"provider": self.provider, **(data or {})})

    async def mark_pending(self, generation_id: str) -> None:
        created = await self.ctx.artifacts.create_pending(
            self.ctx.job.id,
            self.ctx.project.id,
            self.scene_index,
            provider=self.provider,
            generation_id=generation_id,
        )
        if created:
            await self.ctx.progress(
                f"Scene {self.scene_index}: submitted to {self.provider}, awaiting callback",
                {
                    "provider": self.provider,
                    "generation_id": generation_id,
                    "scene_index": self.scene_index,
                },
            )
        else:
            logger.warning(
                f"Job {self.ctx.job.id}: scene {self.scene_index} already tracked; "
                f"generation {generation_id} not recorded"
            )


async def generate_video_clips(ctx: StepContext) -> ClipStageResult:
    job = ctx.job
    plan = await ctx.require_artifact(ArtifactType.SCENE_PLAN)
    scenes = plan.meta["scenes"]
    total = len(scenes)

    provider = ctx.providers.video
    limiter = ConcurrencyLimiter(ctx.artifacts, provider.max_concurrency)
    submitted = 0
    halted = False

    for scene in scenes:
        idx = scene["index"]

        if await ctx.artifacts.get_clip(job.id, idx) is not None:
            await ctx.progress(
                f"Scene {idx}: clip already generated, skipped",
                {"scene_index": idx, "skipped": True},
            )
            continue

        if await ctx.artifacts.get_pending_clip(job.id, idx) is not None:
            logger.info(f"Job {job.id}: scene {idx} generation already in flight, skipped")
            continue

        if not await limiter.admit(job.id):
            in_flight = await limiter.in_flight(job.id)
            await ctx.progress(
                f"Concurrency ceiling reached ({in_flight}/{limiter.max_concurrency} in flight); "
                f"pausing before scene {idx}",
                {"scene_index": idx, "in_flight": in_flight, "ceiling": limiter.max_concurrency},
            )
            halted = True
            break

        request = ClipRequest(
            job_id=job.id,
            project_id=ctx.project.id,
            scene_index=idx,
            prompt=scene["prompt"],
            duration_seconds=submission_duration(scene["duration"]),
            aspect_ratio=ctx.project.aspect_ratio,
            style=ctx.project.style,
        )
        media = await provider.generate(request, _SceneTracker(ctx, idx, provider.name))
        submitted += 1

        if media is None:
            continue

        url = await ctx.storage.ensure_durable(media.source, clip_filename(idx), job.id)
        await ctx.artifacts.complete_clip(
            job.id,
            ctx.project.id,
            idx,
            url,
            meta={"provider": provider.name, "duration": scene["duration"], **media.meta},
        )
        completed = await ctx.artifacts.count_clips(job.id)
        await ctx.progress(
            f"Scene {idx}: clip ready ({completed}/{total})",
            {"scene_index": idx, "file_url": url},
            progress=clip_progress(completed, total),
            level="success",
        )

    done = {c.scene_index for c in await ctx.artifacts.list_clips(job.id)}
    result = ClipStageResult(
        total=total,
        completed=sum(1 for s in scenes if s["index"] in done),
        pending=await ctx.artifacts.count_pending(job.id),
        submitted=submitted,
        halted_by_limiter=halted,
        missing=[s["index"] for s in scenes if s["index"] not in done],
    )
    logger.info(f"Job {job.id}: clip stage pass finished {result.summary()}")
    return result
