from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..models import Outcome, TechniqueMetric
from ..scoring import SUCCESS_REACTIONS

NO_EXPERIENCE_SENTINEL = "## No learning experiences yet. This is your first performance!"

TOP_TECHNIQUE_LIMIT = 5
BEST_CONTEXT_LIMIT = 3
REFINEMENT_LIMIT = 3
INSIGHT_LIMIT = 3
_CONTEXT_MIN_WORD_LEN = 5
_CONTEXT_STRIP = ".,;:!?\"'()[]{}*"


@dataclass(slots=True)
class TechniquePattern:
    name: str
    success_rate: float
    best_contexts: List[str]
    key_insight: str
    times_performed: int


@dataclass(slots=True)
class Refinement:
    technique: str
    improvement: str
    experiences: int


@dataclass(slots=True)
class UserPreferencePattern:
    pattern: str
    frequency: int
    adaptation: str


@dataclass(slots=True)
class RecoveryStrategy:
    situation: str
    strategy: str
    effectiveness: int


@dataclass(slots=True)
class ContextualInsight:
    context: str
    insight: str


@dataclass(slots=True)
class LearningPatterns:
    successful_techniques: List[TechniquePattern] = field(default_factory=list)
    refinements: List[Refinement] = field(default_factory=list)
    user_preferences: List[UserPreferencePattern] = field(default_factory=list)
    recovery_strategies: List[RecoveryStrategy] = field(default_factory=list)
    contextual_insights: List[ContextualInsight] = field(default_factory=list)


@dataclass(slots=True)
class LearningSummary:
    persona_id: str
    experience_window: int
    total_experiences: int
    average_success_rate: float
    top_techniques: List[TechniqueMetric]
    recent_learnings: List[str]


def round_percent(fraction: float) -> int:
    """Percentage of ``fraction`` rounded half up."""
    return int(math.floor(fraction * 100.0 + 0.5))


def _is_success(outcome: Outcome) -> bool:
    return outcome.reaction in SUCCESS_REACTIONS


def extract_common_contexts(context_texts: Sequence[str]) -> List[str]:
    words: List[str] = []
    for text in context_texts:
        for raw in str(text).lower().split():
            word = raw.strip(_CONTEXT_STRIP)
            if len(word) >= _CONTEXT_MIN_WORD_LEN:
                words.append(word)
    if not words:
        return ["Various situations"]
    return [word for word, _ in Counter(words).most_common(BEST_CONTEXT_LIMIT)]


def analyze_successful_techniques(outcomes: Sequence[Outcome]) -> List[TechniquePattern]:
    groups: Dict[str, List[Outcome]] = {}
    for outcome in outcomes:
        groups.setdefault(outcome.technique_used, []).append(outcome)

    patterns: List[TechniquePattern] = []
    for technique, group in groups.items():
        successes = sum(1 for outcome in group if _is_success(outcome))
        # Groups keep the window's most-recent-first order.
        lessons = [outcome.lesson_learned for outcome in group if outcome.lesson_learned.strip()]
        contexts = ["; ".join(outcome.key_moments) for outcome in group if outcome.key_moments]
        patterns.append(
            TechniquePattern(
                name=technique,
                success_rate=successes / len(group) * 100.0,
                best_contexts=extract_common_contexts(contexts),
                key_insight=lessons[0] if lessons else "Consistent performance",
                times_performed=len(group),
            )
        )
    patterns.sort(key=lambda item: (-item.success_rate, -item.times_performed))
    return patterns[:TOP_TECHNIQUE_LIMIT]


def extract_refinements(outcomes: Sequence[Outcome]) -> List[Refinement]:
    lessons = Counter(
        outcome.lesson_learned
        for outcome in outcomes
        if outcome.reaction == "amazed" and outcome.lesson_learned.strip()
    )
    return [
        Refinement(technique=" ".join(lesson.split(" ")[:3]), improvement=lesson, experiences=count)
        for lesson, count in lessons.most_common(REFINEMENT_LIMIT)
    ]


def detect_user_patterns(outcomes: Sequence[Outcome]) -> List[UserPreferencePattern]:
    total = len(outcomes)
    patterns: List[UserPreferencePattern] = []
    if total == 0:
        return [UserPreferencePattern("Building baseline understanding", 100, "Continue gathering experience")]

    quick = sum(1 for outcome in outcomes if outcome.turn_count <= 5 and outcome.reaction == "amazed")
    if quick > total * 0.2:
        patterns.append(
            UserPreferencePattern(
                "Users engage quickly with direct mind-reading attempts",
                round_percent(quick / total),
                "Lead with strong opening tricks",
            )
        )

    long_form = sum(1 for outcome in outcomes if outcome.turn_count > 15)
    if long_form > total * 0.3:
        patterns.append(
            UserPreferencePattern(
                "Users enjoy extended interactions and storytelling",
                round_percent(long_form / total),
                "Develop narrative and build multiple reveals",
            )
        )

    positive = sum(1 for outcome in outcomes if outcome.sentiment > 0.5)
    if positive > total * 0.6:
        patterns.append(
            UserPreferencePattern(
                "Overall positive audience reception",
                round_percent(positive / total),
                "Current approach is working well",
            )
        )

    if not patterns:
        patterns.append(UserPreferencePattern("Building baseline understanding", 100, "Continue gathering experience"))
    return patterns


def learn_recovery_strategies(outcomes: Sequence[Outcome]) -> List[RecoveryStrategy]:
    total = len(outcomes)
    strategies: List[RecoveryStrategy] = []

    recovered = sum(
        1
        for outcome in outcomes
        if outcome.what_worked.strip()
        and outcome.what_did_not_work.strip()
        and outcome.reaction in {"engaged", "neutral"}
    )
    if recovered:
        strategies.append(
            RecoveryStrategy(
                "When initial approach misses",
                "Pivot gracefully and try alternative reading",
                round_percent(recovered / total),
            )
        )

    transitions = sum(
        1
        for previous, current in zip(outcomes, outcomes[1:])
        if previous.reaction == "skeptical" and current.reaction != "skeptical"
    )
    if transitions:
        strategies.append(
            RecoveryStrategy(
                "Skeptical audience",
                "Address skepticism directly, demonstrate specific technique",
                round_percent(transitions / total),
            )
        )

    if not strategies:
        strategies.append(
            RecoveryStrategy("General adaptability", "Stay in character and maintain confidence", 75)
        )
    return strategies


def time_of_day_bucket(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 18:
        return "afternoon"
    return "evening"


def extract_contextual_insights(outcomes: Sequence[Outcome]) -> List[ContextualInsight]:
    buckets: Dict[str, List[float]] = {"morning": [], "afternoon": [], "evening": []}
    for outcome in outcomes:
        local_hour = outcome.created_at.astimezone().hour
        buckets[time_of_day_bucket(local_hour)].append(outcome.sentiment)

    insights: List[ContextualInsight] = []
    for bucket, sentiments in buckets.items():
        if len(sentiments) > 3 and sum(sentiments) / len(sentiments) > 0.6:
            insights.append(ContextualInsight(f"Performances in the {bucket}", "Show particularly high engagement"))

    if not insights:
        insights.append(ContextualInsight("All time periods", "Show consistent performance"))
    return insights[:INSIGHT_LIMIT]


def identify_patterns(outcomes: Sequence[Outcome]) -> LearningPatterns:
    """Mine a most-recent-first window of outcomes. Advisory text only, not a stable contract."""
    return LearningPatterns(
        successful_techniques=analyze_successful_techniques(outcomes),
        refinements=extract_refinements(outcomes),
        user_preferences=detect_user_patterns(outcomes),
        recovery_strategies=learn_recovery_strategies(outcomes),
        contextual_insights=extract_contextual_insights(outcomes),
    )


def render_briefing(total: int, patterns: LearningPatterns) -> str:
    lines: List[str] = [f"## LEARNED FROM {total} PERFORMANCES:", "", "### Most Successful Approaches:"]
    for item in patterns.successful_techniques:
        lines.append(f"- **{item.name}**: {item.success_rate:.1f}% success rate ({item.times_performed} uses)")
        lines.append(f"  Best contexts: {', '.join(item.best_contexts)}")
        lines.append(f"  Key insight: {item.key_insight}")

    lines += ["", "### Refined Techniques:"]
    for item in patterns.refinements:
        lines.append(f"- **{item.technique}**: {item.improvement}")
        lines.append(f"  Proven through {item.experiences} similar situations")

    lines += ["", "### User Preference Patterns:"]
    for item in patterns.user_preferences:
        lines.append(f"- {item.pattern} (observed in {item.frequency}% of interactions)")
        lines.append(f"  Adaptation: {item.adaptation}")

    lines += ["", "### Recovery Strategies (when improvising):"]
    for item in patterns.recovery_strategies:
        lines.append(f"- **{item.situation}**: {item.strategy}")
        lines.append(f"  Effectiveness: {item.effectiveness}%")

    lines += ["", "### Contextual Insights:"]
    for item in patterns.contextual_insights:
        lines.append(f"- {item.context}: {item.insight}")

    lines += ["", f"**You've performed {total} times. Use this experience wisely.**"]
    return "\n".join(lines)


class KnowledgeSynthesizer:
    def __init__(self, store: Any, *, window_size: int = 100, top_metrics_limit: int = TOP_TECHNIQUE_LIMIT) -> None:
        self.store = store
        self.window_size = max(1, int(window_size))
        self.top_metrics_limit = max(1, int(top_metrics_limit))

    async def synthesize_learnings(self, persona_id: str, window_size: int | None = None) -> str:
        window = self.window_size if window_size is None else max(1, int(window_size))
        outcomes = await self.store.list_recent_outcomes(persona_id, window)
        if not outcomes:
            return NO_EXPERIENCE_SENTINEL
        return render_briefing(len(outcomes), identify_patterns(outcomes))

    async def get_learning_summary(self, persona_id: str) -> LearningSummary:
        outcomes = await self.store.list_recent_outcomes(persona_id, self.window_size)
        metrics = await self.store.list_technique_metrics(persona_id, limit=self.top_metrics_limit)
        total = len(outcomes)
        successes = sum(1 for outcome in outcomes if _is_success(outcome))
        return LearningSummary(
            persona_id=persona_id,
            experience_window=self.window_size,
            total_experiences=total,
            average_success_rate=(successes / total * 100.0) if total else 0.0,
            top_techniques=list(metrics),
            recent_learnings=[o.lesson_learned for o in outcomes if o.lesson_learned.strip()][:5],
        )
