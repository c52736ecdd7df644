"""Stage ordering and resume-point resolution."""

import pytest

from reelforge.orchestrator.state import (
    PIPELINE_STAGES,
    STAGE_PROGRESS,
    Stage,
    can_resume,
    clip_progress,
    is_before,
    parse_stage,
    resolve_resume_step,
    stages_from,
)
from reelforge.services.errors import InputValidationError


def test_canonical_stage_order():
    assert [s.value for s in PIPELINE_STAGES] == [
        "initialization",
        "script_generation",
        "scene_planning",
        "voiceover_generation",
        "video_clip_generation",
        "video_assembly",
    ]


def test_progress_ranges_are_monotonic():
    previous_end = -1
    for stage in PIPELINE_STAGES:
        start, end = STAGE_PROGRESS[stage]
        assert previous_end < start <= end
        previous_end = end
    assert STAGE_PROGRESS[Stage.COMPLETED] == (100, 100)


@pytest.mark.parametrize(
    "status,current_step,resume_step,expected",
    [
        ("pending", "initialization", None, Stage.INITIALIZATION),
        ("failed", "voiceover_generation", None, Stage.VOICEOVER_GENERATION),
        ("running", "video_clip_generation", None, Stage.VIDEO_CLIP_GENERATION),
        ("failed", "voiceover_generation", "script_generation", Stage.SCRIPT_GENERATION),
        ("pending", "scene_planning", None, Stage.INITIALIZATION),
    ],
)
def test_resolve_resume_step(status, current_step, resume_step, expected):
    assert resolve_resume_step(status, current_step, resume_step) == expected


def test_resolve_rejects_unknown_and_completed_stage():
    with pytest.raises(InputValidationError):
        resolve_resume_step("failed", "rendering")
    with pytest.raises(InputValidationError):
        resolve_resume_step("failed", "scene_planning", "completed")


def test_parse_stage_lists_valid_names():
    with pytest.raises(InputValidationError, match="script_generation"):
        parse_stage("scripting")


def test_stages_from_and_is_before():
    assert stages_from(Stage.VIDEO_CLIP_GENERATION) == [
        Stage.VIDEO_CLIP_GENERATION,
        Stage.VIDEO_ASSEMBLY,
    ]
    assert is_before(Stage.SCRIPT_GENERATION, Stage.SCENE_PLANNING)
    assert not is_before(Stage.VIDEO_ASSEMBLY, Stage.VIDEO_ASSEMBLY)


def test_can_resume():
    assert can_resume("failed")
    assert can_resume("running")
    assert can_resume("pending")
    assert not can_resume("completed")


def test_clip_progress_stays_inside_stage_range():
    assert clip_progress(0, 5) == 65
    assert clip_progress(5, 5) == 80
    assert 65 < clip_progress(2, 5) < 80
    assert clip_progress(0, 0) == 65
