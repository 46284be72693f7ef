from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from ..models import Outcome, Persona, TechniqueMetric
from .knowledge import KnowledgeSynthesizer
from .user_memory import UserMemoryService

logger = logging.getLogger("persona_learning")

EMPTY_METRICS_LINE = "- Building performance history..."
EMPTY_SUCCESSES_LINE = "### Building experience base..."


def format_metric_lines(metrics: Sequence[TechniqueMetric]) -> str:
    if not metrics:
        return EMPTY_METRICS_LINE
    return "\n".join(
        f"{rank}. {metric.technique}: {metric.success_rate * 100:.1f}% success "
        f"({metric.total_attempts} uses, {metric.average_rating:.1f}★ avg)"
        for rank, metric in enumerate(metrics, start=1)
    )


def format_recent_successes(outcomes: Sequence[Outcome]) -> str:
    if not outcomes:
        return EMPTY_SUCCESSES_LINE
    blocks: List[str] = []
    for index, outcome in enumerate(outcomes, start=1):
        blocks.append(
            "\n".join(
                [
                    f"### Success {index}:",
                    f"Technique: {outcome.technique_used}",
                    f"What worked: {outcome.what_worked or 'Effective execution'}",
                    f"Lesson: {outcome.lesson_learned or 'Effective execution'}",
                ]
            )
        )
    return "\n\n".join(blocks)


def compose_context(
    *,
    persona: Persona,
    base_prompt: str,
    knowledge_base: str,
    briefing: str,
    metrics: Sequence[TechniqueMetric],
    recent_successes: Sequence[Outcome],
    user_briefing: Optional[str] = None,
) -> str:
    sections = [
        base_prompt.strip(),
        f"## YOUR FOUNDATION KNOWLEDGE:\n{knowledge_base.strip()}",
        (
            f"## YOUR EXPERIENCE ({persona.total_sessions} performances, Level {persona.experience_level}):\n"
            f"{briefing.strip()}"
        ),
        f"## YOUR STRONGEST TECHNIQUES:\n{format_metric_lines(metrics)}",
        f"## RECENT SUCCESSFUL MOMENTS:\n{format_recent_successes(recent_successes)}",
        (
            f"**IMPORTANT**: Draw on your accumulated experience. You've performed {persona.total_sessions} times "
            "and learned what works. Use techniques you've proven successful. Adapt based on patterns you've discovered."
        ),
    ]
    if persona.specialty:
        sections.append(f"**Specialty Developing**: {persona.specialty}")
    if user_briefing:
        sections.append(user_briefing.strip())
    return "\n\n".join(section for section in sections if section)


class ContextBuilder:
    def __init__(
        self,
        store: Any,
        synthesizer: KnowledgeSynthesizer,
        user_memory: UserMemoryService,
        *,
        top_metrics_limit: int = 5,
        recent_success_limit: int = 3,
    ) -> None:
        self.store = store
        self.synthesizer = synthesizer
        self.user_memory = user_memory
        self.top_metrics_limit = max(1, int(top_metrics_limit))
        self.recent_success_limit = max(0, int(recent_success_limit))

    async def build_context(
        self,
        persona_id: str,
        user_id: str | None = None,
        *,
        base_prompt: str | None = None,
        knowledge_base: str | None = None,
    ) -> str:
        """Compose the instruction text for the next turn from persona text and accumulated learning."""
        persona = await self.store.get_persona(persona_id)
        if persona is None:
            logger.warning("Context requested for unknown persona %s; using base text only", persona_id)
            return "\n\n".join(part for part in (base_prompt or "", knowledge_base or "") if part)

        briefing = await self.synthesizer.synthesize_learnings(persona_id)
        metrics = await self.store.list_technique_metrics(persona_id, limit=self.top_metrics_limit)
        successes: List[Outcome] = []
        if self.recent_success_limit:
            successes = await self.store.list_recent_successes(persona_id, self.recent_success_limit)
        user_briefing = None
        if user_id:
            user_briefing = await self.user_memory.generate_memory_summary(user_id, persona_id)

        return compose_context(
            persona=persona,
            base_prompt=persona.base_prompt if base_prompt is None else base_prompt,
            knowledge_base=persona.knowledge_base if knowledge_base is None else knowledge_base,
            briefing=briefing,
            metrics=metrics,
            recent_successes=successes,
            user_briefing=user_briefing,
        )
