from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_learning.config import Settings  # noqa: E402
from persona_learning.memory.factory import build_learning_store  # noqa: E402
from persona_learning.memory.store import LearningStore  # noqa: E402
from persona_learning.prompts.analysis import (  # noqa: E402
    ANALYSIS_SYSTEM_PROMPT,
    build_analysis_user_prompt,
    format_transcript_lines,
)
from persona_learning.prompts.json_loader import load_prompt_json  # noqa: E402

_ENV_KEYS = (
    "LLM_API_KEY",
    "OPENROUTER_API_KEY",
    "LLM_BASE_URL",
    "LLM_CHAT_MODEL",
    "LLM_ANALYSIS_MODEL",
    "LLM_TIMEOUT_SECONDS",
    "LLM_CHAT_TEMPERATURE",
    "LLM_CHAT_MAX_TOKENS",
    "LLM_ANALYSIS_TEMPERATURE",
    "LLM_ANALYSIS_TIMEOUT_SECONDS",
    "LLM_APP_TITLE",
    "MEMORY_BACKEND",
    "SQLITE_PATH",
    "MEMORY_POSTGRES_DSN",
    "LEARNING_ENABLED",
    "LEARNING_ANALYSIS_ENABLED",
    "KNOWLEDGE_WINDOW_SIZE",
    "USER_MEMORY_LIMIT",
    "TOP_METRICS_LIMIT",
    "RECENT_SUCCESS_LIMIT",
    "SESSION_IDLE_TIMEOUT_SECONDS",
    "DEFAULT_PERSONA_ID",
    "PERSONA_CATALOG_PATH",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults_validate_without_llm_key(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()
    assert settings.llm_api_key == ""
    assert settings.memory_backend == "sqlite"
    assert settings.knowledge_window_size == 100
    assert settings.user_memory_limit == 5
    assert settings.analysis_model == settings.llm_chat_model
    assert settings.persona_catalog_path is None
    settings.validate(require_llm=False)
    with pytest.raises(ValueError, match="LLM_API_KEY"):
        settings.validate()


def test_api_key_alias_and_bearer_prefix_are_normalized(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("OPENROUTER_API_KEY", ' Bearer "sk-or-123" ')
    settings = Settings.from_env()
    assert settings.llm_api_key == "sk-or-123"
    settings.validate()

    clean_env.setenv("LLM_API_KEY", "primary")
    assert Settings.from_env().llm_api_key == "primary"


def test_env_overrides_and_bad_numbers_fall_back(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("LLM_ANALYSIS_MODEL", "analysis/model")
    clean_env.setenv("KNOWLEDGE_WINDOW_SIZE", "25")
    clean_env.setenv("TOP_METRICS_LIMIT", "not-a-number")
    clean_env.setenv("LEARNING_ENABLED", "off")
    clean_env.setenv("MEMORY_BACKEND", "SQLITE")
    clean_env.setenv("SQLITE_PATH", str(tmp_path / "custom.db"))
    clean_env.setenv("PERSONA_CATALOG_PATH", str(tmp_path / "catalog.json"))

    settings = Settings.from_env()
    assert settings.analysis_model == "analysis/model"
    assert settings.knowledge_window_size == 25
    assert settings.top_metrics_limit == 5
    assert settings.learning_enabled is False
    assert settings.memory_backend == "sqlite"
    assert settings.sqlite_path == tmp_path / "custom.db"
    assert settings.persona_catalog_path == tmp_path / "catalog.json"


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("MEMORY_BACKEND", "redis", "MEMORY_BACKEND"),
        ("MEMORY_BACKEND", "postgres", "MEMORY_POSTGRES_DSN"),
        ("KNOWLEDGE_WINDOW_SIZE", "0", "KNOWLEDGE_WINDOW_SIZE"),
        ("LLM_CHAT_TEMPERATURE", "3.5", "LLM_CHAT_TEMPERATURE"),
        ("SESSION_IDLE_TIMEOUT_SECONDS", "30", "SESSION_IDLE_TIMEOUT_SECONDS"),
        ("LLM_BASE_URL", "ftp://example", "LLM_BASE_URL"),
    ],
)
def test_validate_rejects_bad_values(clean_env: pytest.MonkeyPatch, key: str, value: str, message: str) -> None:
    clean_env.setenv(key, value)
    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate(require_llm=False)


def test_store_factory_selects_backend(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("SQLITE_PATH", str(tmp_path / "factory.db"))
    store = build_learning_store(Settings.from_env())
    assert isinstance(store, LearningStore)

    clean_env.setenv("MEMORY_BACKEND", "postgres")
    with pytest.raises(ValueError, match="MEMORY_POSTGRES_DSN"):
        build_learning_store(Settings.from_env())


def test_prompt_loader_merges_overrides_and_tolerates_bad_files(tmp_path: Path) -> None:
    defaults = {"template": "default {x}", "nested": {"a": 1, "b": 2}}
    (tmp_path / "good.json").write_text(json.dumps({"nested": {"b": 3}, "extra": "y"}), encoding="utf-8")
    (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "list.json").write_text("[1, 2]", encoding="utf-8")

    merged = load_prompt_json("good.json", defaults, data_dir=tmp_path)
    assert merged == {"template": "default {x}", "nested": {"a": 1, "b": 3}, "extra": "y"}
    merged["nested"]["a"] = 99
    assert load_prompt_json("good.json", defaults, data_dir=tmp_path)["nested"]["a"] == 1

    assert load_prompt_json("bad.json", defaults, data_dir=tmp_path) == defaults
    assert load_prompt_json("list.json", defaults, data_dir=tmp_path) == defaults
    assert load_prompt_json("missing.json", defaults, data_dir=tmp_path) == defaults


def test_analysis_prompts_render_transcript() -> None:
    assert "Schema hint:" in ANALYSIS_SYSTEM_PROMPT
    assert "{schema_hint}" not in ANALYSIS_SYSTEM_PROMPT
    conversation = format_transcript_lines([("user", "Pick a card"), ("agent", "Seven of hearts"), ("user", " ")])
    assert conversation == "USER: Pick a card\n\nAGENT: Seven of hearts"
    assert format_transcript_lines([]) == "(empty conversation)"
    assert "USER: Pick a card" in build_analysis_user_prompt(conversation)


def test_prompt_loader_reads_bom_files_and_reloads_on_change(tmp_path: Path) -> None:
    path = tmp_path / "bom.json"
    path.write_bytes(b"\xef\xbb\xbf" + json.dumps({"template": "first"}).encode("utf-8"))
    assert load_prompt_json("bom.json", {"template": "default"}, data_dir=tmp_path)["template"] == "first"

    path.write_text(json.dumps({"template": "second"}), encoding="utf-8")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    assert load_prompt_json("bom.json", {"template": "default"}, data_dir=tmp_path)["template"] == "second"
