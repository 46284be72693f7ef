from __future__ import annotations

import asyncio
import os
import sys
import uuid
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_learning.errors import SessionClosed, UnknownPersona  # noqa: E402
from persona_learning.memory.postgres_store import PostgresLearningStore  # noqa: E402
from persona_learning.models import AnalyzedBy, ConversationAnalysis  # noqa: E402
from persona_learning.personas import PersonaProfile  # noqa: E402

_DSN = os.getenv("MEMORY_POSTGRES_TEST_DSN", "").strip()

pytestmark = pytest.mark.skipif(not _DSN, reason="MEMORY_POSTGRES_TEST_DSN is not set")


def _profile() -> PersonaProfile:
    suffix = uuid.uuid4().hex[:10]
    return PersonaProfile(
        persona_id=f"pg_{suffix}",
        name="Test Mentalist",
        title="Tester",
        tagline="",
        base_prompt="You are a test mentalist.",
        knowledge_base="Test knowledge.",
    )


def test_empty_dsn_is_rejected() -> None:
    with pytest.raises(ValueError):
        PostgresLearningStore("  ")


def test_postgres_session_and_capture_flow() -> None:
    async def scenario() -> None:
        store = PostgresLearningStore(_DSN)
        try:
            await store.init()
            await store.init()
            profile = _profile()
            persona = await store.ensure_persona(profile)
            assert persona.display_text == "Tester"

            with pytest.raises(UnknownPersona):
                await store.get_or_create_session("user_pg", "pg_missing_persona")

            ids = await asyncio.gather(*(store.get_or_create_session("user_pg", profile.persona_id) for _ in range(4)))
            assert len(set(ids)) == 1
            session_id = ids[0]

            await store.append_message(session_id, "user", "Pick a number")
            await store.append_message(session_id, "assistant", "Seven")
            transcript = await store.list_messages(session_id)
            assert [turn.role for turn in transcript] == ["user", "agent"]

            analysis = ConversationAnalysis(
                sentiment=0.8,
                technique_used="number_force",
                lesson_learned="Keep it short",
                what_worked=["Quick reveal"],
                analyzed_by=AnalyzedBy.EXTERNAL,
            )
            outcome = await store.capture_experience(profile.persona_id, "user_pg", session_id, analysis, transcript, 20)
            again = await store.capture_experience(profile.persona_id, "user_pg", session_id, analysis, transcript, 20)
            assert again.outcome_id == outcome.outcome_id
            assert outcome.reaction == "amazed"

            persona = await store.require_persona(profile.persona_id)
            assert (persona.experience_level, persona.total_sessions) == (35, 1)
            assert persona.known_successful_techniques == ["number_force"]

            metric = await store.get_technique_metric(profile.persona_id, "number_force")
            assert metric is not None
            assert (metric.total_attempts, metric.success_count, metric.average_rating) == (1, 1, 5.0)

            with pytest.raises(SessionClosed):
                await store.append_message(session_id, "user", "one more")

            await asyncio.gather(
                *(store.record_attempt(profile.persona_id, "cold_read", i % 2 == 0, 3.0) for i in range(6))
            )
            cold = await store.get_technique_metric(profile.persona_id, "cold_read")
            assert cold is not None and (cold.total_attempts, cold.success_count) == (6, 3)

            assert await store.count_user_outcomes("user_pg", profile.persona_id) == 1
            assert await store.list_user_technique_counts("user_pg", profile.persona_id) == [("number_force", 1)]
        finally:
            await store.close()

    asyncio.run(scenario())
