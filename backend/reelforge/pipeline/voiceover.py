"""Voiceover synthesis: script -> durable audio file."""

import logging

from reelforge.db.models import Artifact, ArtifactType
from reelforge.pipeline.context import StepContext

logger = logging.getLogger(__name__)


async def generate_voiceover(ctx: StepContext) -> Artifact:
    script = await ctx.require_artifact(ArtifactType.SCRIPT)
    speech = ctx.providers.speech

    media = await speech.synthesize(script.meta["text"], ctx.project.language)
    url = await ctx.storage.ensure_durable(media.source, "voiceover.mp3", ctx.job.id)
    logger.info(f"Job {ctx.job.id}: voiceover stored at {url}")

    return await ctx.artifacts.put_stage_artifact(
        ctx.job.id,
        ctx.project.id,
        ArtifactType.VOICEOVER,
        file_url=url,
        meta={"provider": speech.name, **media.meta},
    )
