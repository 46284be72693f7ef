from __future__ import annotations

import json
from typing import Iterable

from .json_loader import load_prompt_json

_DEFAULTS = {
    "analysis_schema_hint_object": {
        "technique_used": "name of the main trick or technique used (or 'general_interaction')",
        "sentiment": -1.0,
        "key_moments": ["moment"],
        "mentalist_success": False,
        "lesson_learned": "key lesson from this interaction",
        "what_worked": ["thing"],
        "what_did_not_work": ["thing"],
        "suggested_improvements": ["improvement"],
    },
    "analysis_system_prompt_template": (
        "You are an expert at analyzing mentalist performances. "
        "Return only valid JSON object with no markdown and no additional commentary. "
        "sentiment is a number from -1 (very negative) to 1 (very positive) describing the user's reaction. "
        "Schema hint: {schema_hint}"
    ),
    "analysis_user_prompt_template": (
        "Analyze this mentalism performance conversation. Provide a structured analysis.\n\n"
        "CONVERSATION:\n{conversation}\n\n"
        "Return JSON."
    ),
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("analysis.json", _DEFAULTS)


_CFG = _cfg()
_SCHEMA_OBJ = _CFG.get("analysis_schema_hint_object", _DEFAULTS["analysis_schema_hint_object"])
if not isinstance(_SCHEMA_OBJ, dict):
    _SCHEMA_OBJ = _DEFAULTS["analysis_schema_hint_object"]

ANALYSIS_SCHEMA_HINT = json.dumps(_SCHEMA_OBJ, ensure_ascii=False, separators=(",", ":"))
ANALYSIS_SYSTEM_PROMPT = str(
    _CFG.get("analysis_system_prompt_template", _DEFAULTS["analysis_system_prompt_template"])
).format(schema_hint=ANALYSIS_SCHEMA_HINT)


def format_transcript_lines(lines: Iterable[tuple[str, str]]) -> str:
    """Render ``(role, content)`` pairs as ``ROLE: content`` blocks."""
    rendered = [f"{role.upper()}: {content}" for role, content in lines if str(content).strip()]
    return "\n\n".join(rendered) or "(empty conversation)"


def build_analysis_user_prompt(conversation: str) -> str:
    template = str(_cfg().get("analysis_user_prompt_template", _DEFAULTS["analysis_user_prompt_template"]))
    return template.format(conversation=conversation)
