from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_learning.errors import SessionClosed, UnknownPersona, UnknownSession  # noqa: E402
from persona_learning.memory.store import LearningStore  # noqa: E402
from persona_learning.personas import DEFAULT_PERSONAS, PersonaProfile  # noqa: E402


async def _ready_store(db_path: Path) -> LearningStore:
    store = LearningStore(db_path)
    await store.init()
    await store.ensure_persona(DEFAULT_PERSONAS["astra"])
    return store


def test_get_or_create_returns_same_session_until_ended(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        first = await store.get_or_create_session("user_a", "astra")
        second = await store.get_or_create_session("user_a", "astra")
        assert first == second
        assert first.startswith("session_")

        other_user = await store.get_or_create_session("user_b", "astra")
        assert other_user != first

        ended = await store.end_session(first)
        assert ended.active is False
        assert ended.ended_at is not None

        third = await store.get_or_create_session("user_a", "astra")
        assert third != first

    asyncio.run(scenario())


def test_concurrent_get_or_create_yields_single_active_session(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        ids = await asyncio.gather(*(store.get_or_create_session("user_a", "astra") for _ in range(5)))
        assert len(set(ids)) == 1

    asyncio.run(scenario())


def test_get_or_create_rejects_unknown_persona(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        with pytest.raises(UnknownPersona):
            await store.get_or_create_session("user_a", "nobody")

    asyncio.run(scenario())


def test_append_message_orders_turns_and_counts(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        session_id = await store.get_or_create_session("user_a", "astra")
        await store.append_message(session_id, "user", "Read my mind")
        await store.append_message(session_id, "assistant", "You are thinking of a seven")
        await store.append_message(session_id, "user", "Wow!")

        turns = await store.list_messages(session_id)
        assert [turn.role for turn in turns] == ["user", "agent", "user"]
        assert [turn.content for turn in turns] == ["Read my mind", "You are thinking of a seven", "Wow!"]
        assert [turn.message_id for turn in turns] == sorted(turn.message_id for turn in turns)

        session = await store.get_session(session_id)
        assert session is not None
        assert session.message_count == 3

    asyncio.run(scenario())


def test_append_message_errors_for_unknown_and_ended_sessions(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        with pytest.raises(UnknownSession):
            await store.append_message("session_missing", "user", "hello")
        with pytest.raises(UnknownSession):
            await store.list_messages("session_missing")
        with pytest.raises(UnknownSession):
            await store.end_session("session_missing")

        session_id = await store.get_or_create_session("user_a", "astra")
        await store.end_session(session_id)
        with pytest.raises(SessionClosed):
            await store.append_message(session_id, "user", "still there?")
        with pytest.raises(ValueError):
            await store.append_message(await store.get_or_create_session("user_a", "astra"), "narrator", "x")

    asyncio.run(scenario())


def test_end_session_is_idempotent(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        session_id = await store.get_or_create_session("user_a", "astra")
        first = await store.end_session(session_id)
        second = await store.end_session(session_id)
        assert first.ended_at == second.ended_at
        assert second.active is False

    asyncio.run(scenario())


def test_list_idle_sessions_uses_latest_activity(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        session_id = await store.get_or_create_session("user_a", "astra")
        await store.append_message(session_id, "user", "hello")

        assert await store.list_idle_sessions(600) == []
        idle = await store.list_idle_sessions(600, now=time.time() + 3600)
        assert [session.session_id for session in idle] == [session_id]

        await store.end_session(session_id)
        assert await store.list_idle_sessions(600, now=time.time() + 3600) == []

    asyncio.run(scenario())


def test_ensure_persona_refreshes_catalog_text_without_touching_counters(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _ready_store(tmp_path / "learning.db")
        await store.set_persona_learning_enabled("astra", False)
        updated = PersonaProfile(
            persona_id="astra",
            name="Astra Vale",
            title="Headliner",
            tagline="",
            base_prompt="New prompt",
            knowledge_base="New knowledge",
        )
        persona = await store.ensure_persona(updated)
        assert persona.base_prompt == "New prompt"
        assert persona.display_text == "Headliner"
        assert persona.experience_level == 0
        assert persona.learning_enabled is False

        with pytest.raises(UnknownPersona):
            await store.set_persona_learning_enabled("nobody", True)
        with pytest.raises(UnknownPersona):
            await store.require_persona("nobody")

    asyncio.run(scenario())
