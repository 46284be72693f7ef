from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_learning.learning.context import (  # noqa: E402
    EMPTY_METRICS_LINE,
    EMPTY_SUCCESSES_LINE,
    ContextBuilder,
    format_metric_lines,
)
from persona_learning.learning.knowledge import NO_EXPERIENCE_SENTINEL, KnowledgeSynthesizer  # noqa: E402
from persona_learning.learning.user_memory import NEW_USER_SENTINEL, UserMemoryService  # noqa: E402
from persona_learning.memory.store import LearningStore  # noqa: E402
from persona_learning.models import AnalyzedBy, ConversationAnalysis, TechniqueMetric  # noqa: E402
from persona_learning.personas import DEFAULT_PERSONAS  # noqa: E402


def _builder(store: LearningStore) -> ContextBuilder:
    synthesizer = KnowledgeSynthesizer(store)
    return ContextBuilder(store, synthesizer, UserMemoryService(store))


async def _ready_store(db_path: Path) -> LearningStore:
    store = LearningStore(db_path)
    await store.init()
    await store.ensure_persona(DEFAULT_PERSONAS["astra"])
    return store


def test_metric_lines_use_rank_percent_and_stars() -> None:
    now = datetime.now(timezone.utc)
    metrics = [
        TechniqueMetric("astra", "card_force", 1, 1, 1.0, 5.0, now),
        TechniqueMetric("astra", "cold_read", 3, 2, 2 / 3, 13 / 3, now),
    ]
    assert format_metric_lines(metrics) == (
        "1. card_force: 100.0% success (1 uses, 5.0★ avg)\n"
        "2. cold_read: 66.7% success (3 uses, 4.3★ avg)"
    )
    assert format_metric_lines([]) == EMPTY_METRICS_LINE


def test_fresh_persona_context_has_placeholders_and_no_user_section(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        text = await _builder(store).build_context("astra")

        astra = DEFAULT_PERSONAS["astra"]
        assert text.startswith(astra.base_prompt)
        assert f"## YOUR FOUNDATION KNOWLEDGE:\n{astra.knowledge_base}" in text
        assert "## YOUR EXPERIENCE (0 performances, Level 0):" in text
        assert NO_EXPERIENCE_SENTINEL in text
        assert EMPTY_METRICS_LINE in text
        assert EMPTY_SUCCESSES_LINE in text
        assert "You've performed 0 times" in text
        assert "REMEMBER THIS USER" not in text
        assert NEW_USER_SENTINEL not in text

        with_new_user = await _builder(store).build_context("astra", "user_new")
        assert with_new_user.endswith(NEW_USER_SENTINEL)

    asyncio.run(scenario())


def test_context_reflects_captured_experience_and_user_memory(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        session_id = await store.get_or_create_session("user_a", "astra")
        await store.append_message(session_id, "user", "Guess my card")
        await store.append_message(session_id, "agent", "Seven of hearts")
        transcript = await store.list_messages(session_id)
        analysis = ConversationAnalysis(
            sentiment=0.9,
            technique_used="card_force",
            what_worked=["Confident reveal"],
            lesson_learned="Pause before the reveal",
            analyzed_by=AnalyzedBy.EXTERNAL,
        )
        await store.capture_experience("astra", "user_a", session_id, analysis, transcript, 40)

        text = await _builder(store).build_context("astra", "user_a")
        assert "## YOUR EXPERIENCE (1 performances, Level 35):" in text
        assert "## LEARNED FROM 1 PERFORMANCES:" in text
        assert "1. card_force: 100.0% success (1 uses, 5.0★ avg)" in text
        assert "### Success 1:\nTechnique: card_force\nWhat worked: Confident reveal\nLesson: Pause before the reveal" in text
        assert "## REMEMBER THIS USER" in text

        overridden = await _builder(store).build_context("astra", base_prompt="Custom opener", knowledge_base="Custom notes")
        assert overridden.startswith("Custom opener\n\n## YOUR FOUNDATION KNOWLEDGE:\nCustom notes")

    asyncio.run(scenario())


def test_unknown_persona_falls_back_to_base_text(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> str:
        store = await _ready_store(tmp_path / "learning.db")
        return await _builder(store).build_context("nobody", base_prompt="Base", knowledge_base="Notes")

    with caplog.at_level(logging.WARNING, logger="persona_learning"):
        text = asyncio.run(scenario())
    assert text == "Base\n\nNotes"
    assert "unknown persona nobody" in caplog.text
