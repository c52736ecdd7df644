"""State machine constants and transition logic for pipeline orchestrator.

Defines the ordered stage sequence that governs pipeline execution with
idempotent resume capability from any interrupted or failed stage.
"""

import enum
from typing import Optional

from reelforge.services.errors import InputValidationError


class Stage(str, enum.Enum):
    """Pipeline stages in execution order."""

    INITIALIZATION = "initialization"
    SCRIPT_GENERATION = "script_generation"
    SCENE_PLANNING = "scene_planning"
    VOICEOVER_GENERATION = "voiceover_generation"
    VIDEO_CLIP_GENERATION = "video_clip_generation"
    VIDEO_ASSEMBLY = "video_assembly"
    COMPLETED = "completed"


STAGE_ORDER: list[Stage] = list(Stage)

# Executable stages (COMPLETED is a marker, not a step)
PIPELINE_STAGES: list[Stage] = STAGE_ORDER[:-1]

# (start, end) progress for each stage
STAGE_PROGRESS: dict[Stage, tuple[int, int]] = {
    Stage.INITIALIZATION: (0, 10),
    Stage.SCRIPT_GENERATION: (15, 30),
    Stage.SCENE_PLANNING: (35, 45),
    Stage.VOICEOVER_GENERATION: (50, 60),
    Stage.VIDEO_CLIP_GENERATION: (65, 80),
    Stage.VIDEO_ASSEMBLY: (85, 95),
    Stage.COMPLETED: (100, 100),
}

STAGE_DESCRIPTIONS: dict[Stage, str] = {
    Stage.INITIALIZATION: "Loading providers",
    Stage.SCRIPT_GENERATION: "Writing script",
    Stage.SCENE_PLANNING: "Planning scenes",
    Stage.VOICEOVER_GENERATION: "Synthesizing voiceover",
    Stage.VIDEO_CLIP_GENERATION: "Generating video clips",
    Stage.VIDEO_ASSEMBLY: "Assembling final video",
    Stage.COMPLETED: "Done",
}

# Job statuses from which a run continues at job.current_step
RESUMABLE_STATUSES = {"failed", "running"}


def parse_stage(value: str) -> Stage:
    """Convert a stage name to a Stage, rejecting unknown names."""
    try:
        return Stage(value)
    except ValueError:
        valid = ", ".join(s.value for s in PIPELINE_STAGES)
        raise InputValidationError(
            f"Unknown pipeline stage '{value}'. Valid stages: {valid}"
        ) from None


def resolve_resume_step(
    job_status: str, current_step: str, resume_step: Optional[str] = None
) -> Stage:
    """Determine which stage a run starts from.

    An explicit resume_step always wins. Otherwise failed and running jobs
    continue at their recorded current_step; anything else starts from the
    beginning.

    Examples:
        >>> resolve_resume_step("pending", "initialization")
        <Stage.INITIALIZATION: 'initialization'>
        >>> resolve_resume_step("failed", "scene_planning")
        <Stage.SCENE_PLANNING: 'scene_planning'>
    """
    if resume_step is not None:
        stage = parse_stage(resume_step)
    elif job_status in RESUMABLE_STATUSES:
        stage = parse_stage(current_step)
    else:
        stage = Stage.INITIALIZATION

    if stage == Stage.COMPLETED:
        raise InputValidationError("Cannot resume a pipeline at 'completed'")
    return stage


def stages_from(stage: Stage) -> list[Stage]:
    """Executable stages at or after ``stage``."""
    return PIPELINE_STAGES[PIPELINE_STAGES.index(stage):]


def is_before(stage: Stage, other: Stage) -> bool:
    return STAGE_ORDER.index(stage) < STAGE_ORDER.index(other)


def can_resume(status: str) -> bool:
    """Check if a job can be (re)started from the given status.

    Completed jobs are terminal.
    """
    return status != "completed"


def clip_progress(completed: int, total: int) -> int:
    """Progress value inside the clip stage's range for completed/total scenes."""
    start, end = STAGE_PROGRESS[Stage.VIDEO_CLIP_GENERATION]
    if total <= 0:
        return start
    return start + (completed * (end - start)) // total
