from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_learning.identity import anonymous_user_id, generate_user_id, is_valid_user_id  # noqa: E402
from persona_learning.memory.store import LearningStore  # noqa: E402
from persona_learning.personas import DEFAULT_PERSONAS, load_persona_catalog, provision_personas  # noqa: E402


def test_catalog_defaults_and_json_overlay(tmp_path: Path) -> None:
    assert set(load_persona_catalog()) == {"astra", "silas"}

    catalog_path = tmp_path / "personas.json"
    catalog_path.write_text(
        json.dumps(
            [
                {"id": "nova", "name": "Nova Quill", "title": "Street Mentalist", "system_prompt": "You are Nova."},
                {"persona_id": "astra", "name": "Astra Vale", "base_prompt": "Replaced", "specialty": "Book tests"},
            ]
        ),
        encoding="utf-8",
    )
    catalog = load_persona_catalog(catalog_path)
    assert set(catalog) == {"astra", "silas", "nova"}
    assert catalog["nova"].base_prompt == "You are Nova."
    assert catalog["nova"].display_text == "Street Mentalist"
    assert catalog["astra"].base_prompt == "Replaced"
    assert catalog["astra"].specialty == "Book tests"
    assert DEFAULT_PERSONAS["astra"].base_prompt != "Replaced"


def test_catalog_object_form_and_invalid_entries(tmp_path: Path) -> None:
    keyed = tmp_path / "keyed.json"
    keyed.write_text(json.dumps({"echo": {"name": "Echo", "tagline": "I hear you."}}), encoding="utf-8")
    assert load_persona_catalog(keyed)["echo"].display_text == "I hear you."

    missing_name = tmp_path / "missing.json"
    missing_name.write_text(json.dumps([{"id": "ghost"}]), encoding="utf-8")
    with pytest.raises(ValueError):
        load_persona_catalog(missing_name)

    scalar = tmp_path / "scalar.json"
    scalar.write_text("42", encoding="utf-8")
    with pytest.raises(ValueError):
        load_persona_catalog(scalar)


def test_provision_personas_is_repeatable(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = LearningStore(tmp_path / "learning.db")
        await store.init()
        first = await provision_personas(store, load_persona_catalog())
        second = await provision_personas(store, load_persona_catalog())
        assert [persona.persona_id for persona in first] == [persona.persona_id for persona in second]
        personas = await store.list_personas()
        assert sorted(persona.persona_id for persona in personas) == ["astra", "silas"]
        astra = await store.require_persona("astra")
        assert astra.display_text == DEFAULT_PERSONAS["astra"].display_text

    asyncio.run(scenario())


def test_user_ids_are_stable_and_well_formed() -> None:
    fingerprint = {"user_agent": "Mozilla/5.0", "language": "en-US", "timezone": "Europe/Kyiv"}
    reordered = dict(reversed(list(fingerprint.items())))
    user_id = generate_user_id(fingerprint)

    assert user_id == generate_user_id(reordered)
    assert user_id != generate_user_id({**fingerprint, "language": "uk-UA"})
    assert is_valid_user_id(user_id)

    anon = anonymous_user_id()
    assert anon.startswith("user_anon_")
    assert is_valid_user_id(anon)
    assert anon != anonymous_user_id()

    assert not is_valid_user_id("User_ABC")
    assert not is_valid_user_id("session_123")
    assert not is_valid_user_id("")
