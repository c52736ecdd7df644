"""Final assembly: scene clips + voiceover -> final video."""

import logging
from typing import Optional

from reelforge.config import settings
from reelforge.db.models import Artifact, ArtifactType
from reelforge.pipeline.context import StepContext
from reelforge.services.errors import StateConsistencyError
from reelforge.services.providers.base import AssemblyClip, AssemblyRequest

logger = logging.getLogger(__name__)


def _local_path_or_none(ctx: StepContext, url: Optional[str]):
    if url and ctx.storage.is_durable(url):
        return ctx.storage.local_path(url)
    return None


async def assemble_video(ctx: StepContext) -> Artifact:
    job = ctx.job
    plan = await ctx.require_artifact(ArtifactType.SCENE_PLAN)
    voiceover = await ctx.require_artifact(ArtifactType.VOICEOVER)

    scenes = plan.meta["scenes"]
    clips = {clip.scene_index: clip for clip in await ctx.artifacts.list_clips(job.id)}
    missing = [s["index"] for s in scenes if s["index"] not in clips]
    if missing:
        raise StateConsistencyError(
            f"Cannot assemble: clips missing for scenes {missing}",
            details={"missing_scenes": missing, "scene_count": len(scenes)},
        )

    request = AssemblyRequest(
        job_id=job.id,
        clips=[
            AssemblyClip(
                scene_index=s["index"],
                url=clips[s["index"]].file_url,
                duration_seconds=s["duration"],
                path=_local_path_or_none(ctx, clips[s["index"]].file_url),
            )
            for s in scenes
        ],
        voiceover_url=voiceover.file_url,
        voiceover_path=_local_path_or_none(ctx, voiceover.file_url),
        aspect_ratio=ctx.project.aspect_ratio,
        crossfade_seconds=settings.pipeline.crossfade_seconds,
    )

    assembler = ctx.providers.assembly
    media = await assembler.assemble(request)
    url = await ctx.storage.ensure_durable(media.source, request.output_name, job.id)
    logger.info(f"Job {job.id}: final video stored at {url}")

    return await ctx.artifacts.put_stage_artifact(
        job.id,
        ctx.project.id,
        ArtifactType.FINAL_VIDEO,
        file_url=url,
        meta={
            "provider": assembler.name,
            "clip_count": len(scenes),
            "duration": media.duration_seconds or plan.meta.get("total_duration"),
        },
    )
