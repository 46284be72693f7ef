from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List

from .scoring import DEFAULT_TECHNIQUE, reaction_of


TURN_ROLES = ("user", "agent", "system")

_TURN_ROLE_ALIASES = {
    "assistant": "agent",
    "model": "agent",
    "bot": "agent",
    "persona": "agent",
    "human": "user",
}


def normalize_turn_role(role: str) -> str:
    raw = str(role or "").strip().lower()
    normalized = _TURN_ROLE_ALIASES.get(raw, raw)
    if normalized not in TURN_ROLES:
        raise ValueError(f"Unsupported turn role: {role!r}")
    return normalized


class AnalyzedBy(str, Enum):
    EXTERNAL = "external"
    HEURISTIC = "heuristic"


@dataclass(slots=True)
class Persona:
    persona_id: str
    name: str
    display_text: str = ""
    base_prompt: str = ""
    knowledge_base: str = ""
    experience_level: int = 0
    total_sessions: int = 0
    known_successful_techniques: List[str] = field(default_factory=list)
    learning_enabled: bool = True
    specialty: str | None = None
    created_at: datetime | None = None
    last_session_at: datetime | None = None


@dataclass(slots=True)
class ChatSession:
    session_id: str
    user_id: str
    persona_id: str
    started_at: datetime
    ended_at: datetime | None = None
    active: bool = True
    message_count: int = 0


@dataclass(slots=True)
class TurnRecord:
    message_id: int
    session_id: str
    role: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class AnalysisDiagnostics:
    backend_name: str
    model_name: str
    latency_ms: int
    llm_attempted: bool
    llm_ok: bool
    json_valid: bool
    fallback_used: bool
    error: str = ""


@dataclass(slots=True)
class ConversationAnalysis:
    sentiment: float
    technique_used: str = DEFAULT_TECHNIQUE
    what_worked: List[str] = field(default_factory=list)
    what_did_not_work: List[str] = field(default_factory=list)
    lesson_learned: str = ""
    key_moments: List[str] = field(default_factory=list)
    suggested_improvements: List[str] = field(default_factory=list)
    mentalist_success: bool = False
    analyzed_by: AnalyzedBy = AnalyzedBy.HEURISTIC
    diagnostics: AnalysisDiagnostics | None = None

    @property
    def reaction(self) -> str:
        return reaction_of(self.sentiment)


@dataclass(slots=True)
class Outcome:
    outcome_id: str
    persona_id: str
    user_id: str
    session_id: str
    created_at: datetime
    sentiment: float
    reaction: str
    technique_used: str = DEFAULT_TECHNIQUE
    what_worked: str = ""
    what_did_not_work: str = ""
    lesson_learned: str = ""
    turn_count: int = 0
    duration_seconds: int = 0
    key_moments: List[str] = field(default_factory=list)
    conversation_summary: str = ""
    analyzed_by: AnalyzedBy = AnalyzedBy.HEURISTIC


@dataclass(slots=True)
class TechniqueMetric:
    persona_id: str
    technique: str
    total_attempts: int
    success_count: int
    success_rate: float
    average_rating: float
    last_updated_at: datetime
