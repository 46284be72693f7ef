from __future__ import annotations

from dataclasses import dataclass


DEFAULT_TECHNIQUE = "general_interaction"

REACTIONS = ("amazed", "engaged", "neutral", "skeptical", "confused")
SUCCESS_REACTIONS = frozenset({"amazed", "engaged"})

# Checked in order, so a sentiment sitting exactly on a boundary lands in the higher bucket.
_REACTION_THRESHOLDS = (
    (0.7, "amazed"),
    (0.3, "engaged"),
    (-0.3, "neutral"),
    (-0.7, "skeptical"),
)

_REACTION_RATINGS = {
    "amazed": 5.0,
    "engaged": 4.0,
    "neutral": 3.0,
    "skeptical": 2.0,
    "confused": 1.0,
}

_REACTION_EXP_BONUS = {
    "amazed": 20,
    "engaged": 10,
    "neutral": 5,
    "skeptical": 0,
    "confused": 0,
}

BASE_EXP_GAIN = 10
LESSON_EXP_BONUS = 5
LONG_SESSION_TURNS = 10
LONG_SESSION_MAX_BONUS = 10


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_sentiment(value: float) -> float:
    return _clamp(float(value), -1.0, 1.0)


def reaction_of(sentiment: float) -> str:
    value = float(sentiment)
    for threshold, reaction in _REACTION_THRESHOLDS:
        if value >= threshold:
            return reaction
    return "confused"


def is_success(reaction: str) -> bool:
    return reaction in SUCCESS_REACTIONS


def rating_of(reaction: str) -> float:
    return _REACTION_RATINGS.get(str(reaction or "").strip().lower(), 3.0)


def experience_gain(reaction: str, lesson_learned: str, turn_count: int) -> int:
    gain = BASE_EXP_GAIN + _REACTION_EXP_BONUS.get(reaction, 0)
    if str(lesson_learned or "").strip():
        gain += LESSON_EXP_BONUS
    gain += min(max(int(turn_count) - LONG_SESSION_TURNS, 0), LONG_SESSION_MAX_BONUS)
    return gain


@dataclass(slots=True)
class TechniqueMetricState:
    total_attempts: int
    success_count: int
    success_rate: float
    average_rating: float


def merge_technique_metric_state(
    prior: TechniqueMetricState | None,
    *,
    success: bool,
    rating: float,
) -> TechniqueMetricState:
    """Fold one attempt into a technique's running counters without re-reading history."""
    rating_value = _clamp(float(rating), 0.0, 5.0)
    hit = 1 if success else 0

    if prior is None or int(prior.total_attempts) <= 0:
        return TechniqueMetricState(
            total_attempts=1,
            success_count=hit,
            success_rate=float(hit),
            average_rating=rating_value,
        )

    prior_total = int(prior.total_attempts)
    next_total = prior_total + 1
    next_success_count = max(0, int(prior.success_count)) + hit
    next_average = (float(prior.average_rating) * prior_total + rating_value) / next_total
    return TechniqueMetricState(
        total_attempts=next_total,
        success_count=next_success_count,
        success_rate=next_success_count / next_total,
        average_rating=_clamp(next_average, 0.0, 5.0),
    )
