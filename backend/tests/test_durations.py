"""Scene-duration normalization."""

import random

import pytest

from reelforge.pipeline.scene_plan import DurationOverflowError, normalize_scene_durations
from reelforge.services.errors import InputValidationError


def _assert_valid(result, target, n):
    assert len(result) == n
    assert all(4.0 <= d <= 8.0 for d in result)
    assert sum(result) == pytest.approx(target, abs=0.01)


def test_equal_scenes_scale_to_target():
    result = normalize_scene_durations([3, 3, 3, 3, 3], 30)
    assert result == pytest.approx([6.0] * 5)


def test_short_scenes_are_clamped_and_rebalanced():
    result = normalize_scene_durations([1, 10, 10], 18)
    _assert_valid(result, 18, 3)


def test_clamped_remainder_spills_past_the_longest_scene():
    # Scaling gives [0.06, 6.47, 6.47]; the first scene is clamped up to 4
    # and the longest scene alone cannot absorb the remaining overshoot
    result = normalize_scene_durations([1, 100, 100], 13)
    _assert_valid(result, 13, 3)
    assert result[0] == pytest.approx(4.0)


def test_tie_goes_to_first_longest_scene():
    # Scenes 1 and 2 are equal after redistribution; only scene 1 is trimmed
    result = normalize_scene_durations([1, 8, 8], 16)
    _assert_valid(result, 16, 3)
    assert result[1] < result[2]


def test_exact_bounds():
    _assert_valid(normalize_scene_durations([1, 2, 3], 12), 12, 3)
    _assert_valid(normalize_scene_durations([9, 2, 3], 24), 24, 3)


@pytest.mark.parametrize("seed", range(20))
def test_random_plans_hold_invariant(seed):
    rng = random.Random(seed)
    n = rng.randint(1, 8)
    durations = [rng.uniform(0.5, 15) for _ in range(n)]
    target = rng.uniform(n * 4, n * 8)
    _assert_valid(normalize_scene_durations(durations, target), target, n)


def test_target_too_short_is_rejected():
    with pytest.raises(InputValidationError, match="too short"):
        normalize_scene_durations([5, 5, 5], 10)


@pytest.mark.parametrize(
    "durations,target",
    [([], 30), ([3, 0, 3], 12), ([3, -1], 10), ([3, 3], 0)],
)
def test_invalid_inputs(durations, target):
    with pytest.raises(InputValidationError):
        normalize_scene_durations(durations, target)


def test_overflow_best_effort_caps_every_scene():
    assert normalize_scene_durations([5, 5, 5], 40) == [8.0, 8.0, 8.0]


def test_overflow_fail_policy_raises():
    with pytest.raises(DurationOverflowError) as exc_info:
        normalize_scene_durations([5, 5, 5], 40, overflow_policy="fail")
    assert exc_info.value.category == "input_validation"
    assert exc_info.value.details["scene_count"] == 3
