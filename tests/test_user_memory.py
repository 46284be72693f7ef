from __future__ import annotations

import asyncio
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_learning.learning.user_memory import (  # noqa: E402
    NEW_USER_SENTINEL,
    UserMemoryService,
    days_since,
    sentiment_to_text,
)
from persona_learning.memory.store import LearningStore  # noqa: E402
from persona_learning.models import AnalyzedBy, ConversationAnalysis  # noqa: E402
from persona_learning.personas import DEFAULT_PERSONAS  # noqa: E402


async def _store_with_history(db_path: Path) -> LearningStore:
    store = LearningStore(db_path)
    await store.init()
    await store.ensure_persona(DEFAULT_PERSONAS["astra"])
    await store.ensure_persona(DEFAULT_PERSONAS["silas"])
    sessions = [
        (0.9, "card_force", "Pause before the reveal", ["Confident reveal"]),
        (0.0, "cold_read", "", []),
        (0.4, "card_force", "", ["Steady patter"]),
    ]
    for sentiment, technique, lesson, worked in sessions:
        session_id = await store.get_or_create_session("user_a", "astra")
        await store.append_message(session_id, "user", "hello again")
        await store.append_message(session_id, "agent", "welcome back")
        analysis = ConversationAnalysis(
            sentiment=sentiment,
            technique_used=technique,
            what_worked=worked,
            lesson_learned=lesson,
            analyzed_by=AnalyzedBy.EXTERNAL,
        )
        transcript = await store.list_messages(session_id)
        await store.capture_experience("astra", "user_a", session_id, analysis, transcript, 45)
    return store


def test_sentiment_labels_and_day_counting() -> None:
    assert sentiment_to_text(0.7) == "Very positive - they love your performances!"
    assert sentiment_to_text(0.3) == "Positive - engaged and interested"
    assert sentiment_to_text(0.0) == "Neutral - curious but reserved"
    assert sentiment_to_text(-0.5) == "Skeptical - needs convincing"
    assert sentiment_to_text(-0.9) == "Very skeptical - work to win them over"

    moment = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
    assert days_since(moment, now=moment.timestamp() + 86399) == 0
    assert days_since(moment, now=moment.timestamp() + 2 * 86400) == 2
    assert days_since(moment, now=moment.timestamp() - 500) == 0


def test_new_user_gets_sentinel_and_empty_stats(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store_with_history(tmp_path / "learning.db")
        memory = UserMemoryService(store)

        assert await memory.generate_memory_summary("user_b", "astra") == NEW_USER_SENTINEL
        assert await memory.generate_memory_summary("user_a", "silas") == NEW_USER_SENTINEL
        assert await memory.is_returning_user("user_b", "astra") is False

        stats = await memory.get_user_stats("user_b", "astra")
        assert (stats.total_sessions, stats.average_rating, stats.last_seen, stats.returning_user) == (
            0,
            0.0,
            "Never",
            False,
        )

    asyncio.run(scenario())


def test_history_tracks_topics_sentiment_and_memorable_moments(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store_with_history(tmp_path / "learning.db")
        memory = UserMemoryService(store)

        history = await memory.get_user_history("user_a", "astra")
        assert history.total_conversations == 3
        assert history.favorite_topics == ["card_force", "cold_read"]
        assert history.recent_topics == ["card_force", "cold_read"]
        assert history.sentiment_trend == pytest.approx((0.9 + 0.0 + 0.4) / 3)
        assert [moment.reaction for moment in history.memorable_experiences] == ["amazed"]

        assert await memory.is_returning_user("user_a", "astra") is True

    asyncio.run(scenario())


def test_memory_summary_renders_today_and_elapsed_days(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store_with_history(tmp_path / "learning.db")
        memory = UserMemoryService(store)

        summary = await memory.generate_memory_summary("user_a", "astra")
        assert summary.startswith("## REMEMBER THIS USER")
        assert "**Total conversations:** 3" in summary
        assert "**Last interaction:** Today" in summary
        assert "**Their favorite topics:** card_force, cold_read" in summary
        assert "**Overall sentiment:** Positive - engaged and interested" in summary
        assert "1. **Earlier today:** Confident reveal (amazed)" in summary
        assert "**IMPORTANT:**" in summary

        later = await memory.generate_memory_summary("user_a", "astra", now=time.time() + 3 * 86400 + 60)
        assert "**Last interaction:** 3 days ago" in later
        assert "1. **3 days ago:** Confident reveal (amazed)" in later

    asyncio.run(scenario())


def test_user_stats_map_sentiment_onto_five_star_rating(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store_with_history(tmp_path / "learning.db")
        stats = await UserMemoryService(store).get_user_stats("user_a", "astra")
        assert stats.total_sessions == 3
        assert stats.returning_user is True
        assert stats.average_rating == pytest.approx(((0.9 + 0.0 + 0.4) / 3 + 1.0) / 2.0 * 5.0)
        assert stats.last_seen != "Never"

    asyncio.run(scenario())
