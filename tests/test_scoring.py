from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_learning.scoring import (  # noqa: E402
    TechniqueMetricState,
    experience_gain,
    merge_technique_metric_state,
    rating_of,
    reaction_of,
)


@pytest.mark.parametrize(
    ("sentiment", "expected"),
    [
        (1.0, "amazed"),
        (0.7, "amazed"),
        (0.69, "engaged"),
        (0.3, "engaged"),
        (0.29, "neutral"),
        (-0.3, "neutral"),
        (-0.31, "skeptical"),
        (-0.7, "skeptical"),
        (-0.71, "confused"),
        (-1.0, "confused"),
    ],
)
def test_reaction_boundaries_resolve_to_higher_bucket(sentiment: float, expected: str) -> None:
    assert reaction_of(sentiment) == expected


def test_rating_lookup_defaults_to_neutral_for_unknown_reaction() -> None:
    assert [rating_of(r) for r in ("amazed", "engaged", "neutral", "skeptical", "confused")] == [5.0, 4.0, 3.0, 2.0, 1.0]
    assert rating_of("bewildered") == 3.0


def test_experience_gain_adds_reaction_lesson_and_long_session_bonus() -> None:
    assert experience_gain("amazed", "smile more", 6) == 35
    assert experience_gain("skeptical", "", 6) == 10
    assert experience_gain("neutral", "", 14) == 19
    assert experience_gain("engaged", "x", 40) == 35


def test_merge_creates_fresh_row_for_missing_or_empty_prior() -> None:
    fresh = merge_technique_metric_state(None, success=True, rating=5.0)
    assert fresh == TechniqueMetricState(total_attempts=1, success_count=1, success_rate=1.0, average_rating=5.0)

    zeroed = TechniqueMetricState(total_attempts=0, success_count=0, success_rate=0.0, average_rating=0.0)
    miss = merge_technique_metric_state(zeroed, success=False, rating=2.0)
    assert miss == TechniqueMetricState(total_attempts=1, success_count=0, success_rate=0.0, average_rating=2.0)


def test_merge_running_mean_matches_arithmetic_mean() -> None:
    ratings = [5.0, 2.0, 4.0, 1.0, 3.0, 5.0, 5.0, 2.0, 4.0, 3.0, 1.0]
    successes = [True, False, True, False, False, True, True, False, True, False, False]
    state = None
    for count, (rating, success) in enumerate(zip(ratings, successes), start=1):
        state = merge_technique_metric_state(state, success=success, rating=rating)
        assert state.total_attempts == count
        assert state.success_count == sum(successes[:count])
        assert state.success_rate == state.success_count / count
        assert state.average_rating == pytest.approx(sum(ratings[:count]) / count)


def test_merge_second_attempt_matches_skeptical_scenario() -> None:
    first = merge_technique_metric_state(None, success=True, rating=5.0)
    second = merge_technique_metric_state(first, success=False, rating=2.0)
    assert second.total_attempts == 2
    assert second.success_count == 1
    assert second.success_rate == 0.5
    assert second.average_rating == pytest.approx(3.5)
