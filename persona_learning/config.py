from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _clean_api_key(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bearer "):
        cleaned = cleaned[7:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    llm_api_key: str
    llm_base_url: str
    llm_chat_model: str
    llm_analysis_model: str
    llm_timeout_seconds: int
    llm_chat_temperature: float
    llm_chat_max_tokens: int
    llm_analysis_temperature: float
    llm_analysis_timeout_seconds: int
    llm_app_title: str

    memory_backend: str
    sqlite_path: Path
    postgres_dsn: str

    learning_enabled: bool
    analysis_enabled: bool
    knowledge_window_size: int
    user_memory_limit: int
    top_metrics_limit: int
    recent_success_limit: int
    session_idle_timeout_seconds: int

    default_persona_id: str
    persona_catalog_path: Path | None

    @classmethod
    def from_env(cls) -> "Settings":
        catalog_raw = _env_str("PERSONA_CATALOG_PATH", "")
        return cls(
            llm_api_key=_clean_api_key(_env_lookup("LLM_API_KEY", aliases=("OPENROUTER_API_KEY",)) or ""),
            llm_base_url=_env_str("LLM_BASE_URL", "https://openrouter.ai/api/v1"),
            llm_chat_model=_env_str("LLM_CHAT_MODEL", "openai/gpt-4o-mini"),
            llm_analysis_model=_env_str("LLM_ANALYSIS_MODEL", "", aliases=("LLM_CHAT_MODEL",)),
            llm_timeout_seconds=_env_int("LLM_TIMEOUT_SECONDS", 90),
            llm_chat_temperature=_env_float("LLM_CHAT_TEMPERATURE", 0.9),
            llm_chat_max_tokens=_env_int("LLM_CHAT_MAX_TOKENS", 1024),
            llm_analysis_temperature=_env_float("LLM_ANALYSIS_TEMPERATURE", 0.3),
            llm_analysis_timeout_seconds=_env_int("LLM_ANALYSIS_TIMEOUT_SECONDS", 45),
            llm_app_title=_env_str("LLM_APP_TITLE", "Persona Learning"),
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/persona_learning.db")).expanduser(),
            postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", ""),
            learning_enabled=_env_bool("LEARNING_ENABLED", True),
            analysis_enabled=_env_bool("LEARNING_ANALYSIS_ENABLED", True),
            knowledge_window_size=_env_int("KNOWLEDGE_WINDOW_SIZE", 100),
            user_memory_limit=_env_int("USER_MEMORY_LIMIT", 5),
            top_metrics_limit=_env_int("TOP_METRICS_LIMIT", 5),
            recent_success_limit=_env_int("RECENT_SUCCESS_LIMIT", 3),
            session_idle_timeout_seconds=_env_int("SESSION_IDLE_TIMEOUT_SECONDS", 0),
            default_persona_id=_env_str("DEFAULT_PERSONA_ID", "astra"),
            persona_catalog_path=Path(catalog_raw).expanduser() if catalog_raw else None,
        )

    @property
    def analysis_model(self) -> str:
        return self.llm_analysis_model or self.llm_chat_model

    def validate(self, *, require_llm: bool = True) -> None:
        if require_llm:
            if not self.llm_api_key:
                raise ValueError("LLM_API_KEY is required")
            if self.llm_api_key == "put_your_api_key_here":
                raise ValueError("LLM_API_KEY is still placeholder")
        if not self.llm_base_url.startswith(("http://", "https://")):
            raise ValueError("LLM_BASE_URL must be an http(s) URL")
        if not self.llm_chat_model:
            raise ValueError("LLM_CHAT_MODEL cannot be empty")
        if self.llm_timeout_seconds < 10:
            raise ValueError("LLM_TIMEOUT_SECONDS must be >= 10")
        if self.llm_analysis_timeout_seconds < 5:
            raise ValueError("LLM_ANALYSIS_TIMEOUT_SECONDS must be >= 5")
        if self.llm_chat_max_tokens < 0:
            raise ValueError("LLM_CHAT_MAX_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.llm_chat_temperature < 0.0 or self.llm_chat_temperature > 2.0:
            raise ValueError("LLM_CHAT_TEMPERATURE must be in [0, 2]")
        if self.llm_analysis_temperature < 0.0 or self.llm_analysis_temperature > 2.0:
            raise ValueError("LLM_ANALYSIS_TEMPERATURE must be in [0, 2]")

        if self.memory_backend not in {"sqlite", "postgres"}:
            raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
        if self.memory_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

        if self.knowledge_window_size < 1:
            raise ValueError("KNOWLEDGE_WINDOW_SIZE must be >= 1")
        if self.user_memory_limit < 1:
            raise ValueError("USER_MEMORY_LIMIT must be >= 1")
        if self.top_metrics_limit < 1:
            raise ValueError("TOP_METRICS_LIMIT must be >= 1")
        if self.recent_success_limit < 0:
            raise ValueError("RECENT_SUCCESS_LIMIT must be >= 0")
        if self.session_idle_timeout_seconds < 0:
            raise ValueError("SESSION_IDLE_TIMEOUT_SECONDS must be >= 0 (0 disables the idle reaper)")
        if self.session_idle_timeout_seconds and self.session_idle_timeout_seconds < 60:
            raise ValueError("SESSION_IDLE_TIMEOUT_SECONDS must be 0 or >= 60")
        if not self.default_persona_id:
            raise ValueError("DEFAULT_PERSONA_ID cannot be empty")
