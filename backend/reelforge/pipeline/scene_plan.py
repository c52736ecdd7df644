"""Scene planning: script -> scene list with normalized durations.

Every scene is rendered as one provider clip, so scene durations must fall
inside the clip-length bounds while the scenes together still fill the
requested video length.
"""

import logging
from typing import Sequence

from reelforge.config import settings
from reelforge.db.models import Artifact, ArtifactType
from reelforge.pipeline.context import StepContext
from reelforge.schemas.script import ScenePlanOutput
from reelforge.services.errors import InputValidationError, ProviderTerminalError

logger = logging.getLogger(__name__)

SUM_TOLERANCE = 0.01
REDISTRIBUTE_THRESHOLD = 0.1


class DurationOverflowError(InputValidationError):
    """Target duration cannot be reached with every scene at the maximum length."""


def normalize_scene_durations(
    durations: Sequence[float],
    target: float,
    min_seconds: float = 4.0,
    max_seconds: float = 8.0,
    *,
    overflow_policy: str = "best_effort",
) -> list[float]:
    """Scale proposed durations so they sum to ``target`` with each in bounds.

    1. scale every scene by target / sum(durations)
    2. clamp into [min_seconds, max_seconds]
    3. if the residual exceeds 0.1s, spread it evenly and re-clamp
    4. push any remainder above 0.01s onto the longest scene (first on
       ties), then onto the next-longest while clamping leaves some over

    For n*min <= target <= n*max the result sums to target within 0.01s.
    Above n*max, "best_effort" returns every scene at max_seconds and
    "fail" raises DurationOverflowError.

    Raises:
        InputValidationError: empty list, non-positive values, or a target
            shorter than n*min_seconds
    """
    n = len(durations)
    if n == 0:
        raise InputValidationError("Scene plan contains no scenes")
    if target <= 0:
        raise InputValidationError(f"Target duration must be positive, got {target}")
    if any(d <= 0 for d in durations):
        raise InputValidationError(f"Scene durations must be positive, got {list(durations)}")

    if target < n * min_seconds - SUM_TOLERANCE:
        raise InputValidationError(
            f"Target {target}s is too short for {n} scenes of at least {min_seconds}s"
        )
    if target > n * max_seconds + SUM_TOLERANCE:
        if overflow_policy == "fail":
            raise DurationOverflowError(
                f"Target {target}s exceeds {n} scenes of at most {max_seconds}s",
                details={"scene_count": n, "target": target},
            )
        return [float(max_seconds)] * n

    def clamp(value: float) -> float:
        return max(min_seconds, min(max_seconds, value))

    scale = target / sum(durations)
    result = [clamp(d * scale) for d in durations]

    residual = target - sum(result)
    if abs(residual) > REDISTRIBUTE_THRESHOLD:
        share = residual / n
        result = [clamp(d + share) for d in result]

    remainder = target - sum(result)
    if abs(remainder) > SUM_TOLERANCE:
        # Longest first; sorted() is stable so ties keep scene order
        for i in sorted(range(n), key=lambda i: -result[i]):
            before = result[i]
            result[i] = clamp(before + remainder)
            remainder -= result[i] - before
            if abs(remainder) <= SUM_TOLERANCE:
                break

    return result


def build_scene_plan_prompt(script: str, duration: int, style: str) -> str:
    return (
        "Analyze this script and create a scene breakdown for video generation.\n\n"
        f'Script: "{script}"\n\n'
        f"Total Duration: {duration} seconds\n"
        f"Visual Style: {style or 'cinematic'}\n\n"
        "Create 3-5 scenes that:\n"
        "- Cover the entire script duration\n"
        "- Each scene should be 3-10 seconds\n"
        f"- Total duration must equal {duration} seconds\n"
        f"- Include detailed visual prompts for AI video generation, {style} style"
    )


async def plan_scenes(ctx: StepContext) -> Artifact:
    project = ctx.project
    script = await ctx.require_artifact(ArtifactType.SCRIPT)

    output = await ctx.providers.text.generate_text(
        build_scene_plan_prompt(script.meta["text"], project.duration, project.style),
        ScenePlanOutput,
        system_prompt="You are a video production planner.",
    )
    if not output.scenes:
        raise ProviderTerminalError(f"{ctx.providers.text.name} returned no scenes")

    cfg = settings.pipeline
    proposed = [s.duration for s in output.scenes]
    n = len(proposed)
    overflow = project.duration > n * cfg.max_scene_seconds
    durations = normalize_scene_durations(
        proposed,
        project.duration,
        cfg.min_scene_seconds,
        cfg.max_scene_seconds,
        overflow_policy=cfg.duration_overflow_policy,
    )
    if overflow:
        await ctx.progress(
            f"Target {project.duration}s exceeds {n} scenes x {cfg.max_scene_seconds:g}s; "
            f"video will run {sum(durations):g}s",
            {"target": project.duration, "scene_count": n, "total": sum(durations)},
            level="warning",
        )

    scenes = [
        {
            "index": i,
            "duration": round(duration, 3),
            "proposed_duration": proposed[i],
            "text": entry.text,
            "prompt": entry.prompt,
        }
        for i, (entry, duration) in enumerate(zip(output.scenes, durations))
    ]
    logger.info(
        f"Job {ctx.job.id}: {n} scenes planned, durations "
        f"{[s['duration'] for s in scenes]} (target {project.duration}s)"
    )

    return await ctx.artifacts.put_stage_artifact(
        ctx.job.id,
        project.id,
        ArtifactType.SCENE_PLAN,
        meta={
            "scenes": scenes,
            "scene_count": n,
            "total_duration": sum(durations),
            "target_duration": project.duration,
            "overflow": overflow,
        },
    )
