"""Script generation: topic brief -> voiceover narration."""

import logging

from reelforge.db.models import Artifact, ArtifactType
from reelforge.pipeline.context import StepContext
from reelforge.schemas.script import ScriptOutput
from reelforge.services.errors import ProviderTerminalError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a professional video script writer for short-form social video."


def build_script_prompt(topic: str, duration: int, language: str, style: str) -> str:
    return (
        f"Create an engaging, concise script for a {duration}-second video about: {topic}\n\n"
        "Requirements:\n"
        f"- Language: {language}\n"
        f"- Duration: Exactly {duration} seconds when read at natural pace\n"
        f"- Style: {style or 'engaging and informative'}\n"
        "- Format: Write ONLY the script narration, no titles or scene descriptions\n"
        "- Tone: Captivating, suitable for social media\n"
        "- Structure: Hook in first 3 seconds, clear flow, strong conclusion"
    )


async def generate_script(ctx: StepContext) -> Artifact:
    project = ctx.project
    prompt = build_script_prompt(
        project.topic, project.duration, project.language, project.style
    )

    output = await ctx.providers.text.generate_text(
        prompt, ScriptOutput, system_prompt=SYSTEM_PROMPT
    )
    script = output.script.strip()
    if not script:
        raise ProviderTerminalError(f"{ctx.providers.text.name} returned an empty script")

    word_count = len(script.split())
    logger.info(f"Job {ctx.job.id}: script generated ({word_count} words)")

    return await ctx.artifacts.put_stage_artifact(
        ctx.job.id,
        project.id,
        ArtifactType.SCRIPT,
        meta={
            "text": script,
            "word_count": word_count,
            "provider": ctx.providers.text.name,
        },
    )
