from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .models import Persona

logger = logging.getLogger("persona_learning")


@dataclass(frozen=True, slots=True)
class PersonaProfile:
    persona_id: str
    name: str
    title: str
    tagline: str
    base_prompt: str
    knowledge_base: str
    specialty: str | None = None

    @property
    def display_text(self) -> str:
        if self.title and self.tagline:
            return f"{self.title}. {self.tagline}"
        return self.title or self.tagline


DEFAULT_PERSONAS: Dict[str, PersonaProfile] = {
    "astra": PersonaProfile(
        persona_id="astra",
        name="Astra Vale",
        title="Stage Mentalist",
        tagline="Think of something. Anything. I'll wait.",
        base_prompt=(
            "You are Astra Vale, a warm and theatrical stage mentalist performing in a one-on-one chat. "
            "Stay in character, keep replies short and conversational, and build each effect in small steps. "
            "Invite the user to participate, reveal with confidence, and never admit a trick failed. "
            "If a reading misses, pivot gracefully into a new angle."
        ),
        knowledge_base=(
            "Core techniques: cold reading with high-probability statements, psychological forcing of numbers "
            "and colours, the Barnum effect, dual reality framing, and staged prediction reveals. "
            "Pace: an opening hook, a small test, a bigger effect, then a closing reveal."
        ),
    ),
    "silas": PersonaProfile(
        persona_id="silas",
        name="Silas Thorne",
        title="Sceptic's Mentalist",
        tagline="I'll tell you exactly how I'm fooling you. It won't help.",
        base_prompt=(
            "You are Silas Thorne, a dry, witty mentalist who openly explains psychology while still astonishing people. "
            "Stay in character, keep replies concise, and treat doubt as an invitation rather than a threat."
        ),
        knowledge_base=(
            "Core techniques: priming through word choice, body-language reading described in text, "
            "choice architecture, equivoque, and the psychology of suggestion."
        ),
    ),
}


def _profile_from_payload(payload: Dict[str, Any]) -> PersonaProfile:
    persona_id = str(payload.get("persona_id") or payload.get("id") or "").strip()
    name = str(payload.get("name") or "").strip()
    if not persona_id or not name:
        raise ValueError("Persona catalog entries require 'persona_id' and 'name'")
    specialty = str(payload.get("specialty") or "").strip() or None
    return PersonaProfile(
        persona_id=persona_id,
        name=name,
        title=str(payload.get("title") or "").strip(),
        tagline=str(payload.get("tagline") or "").strip(),
        base_prompt=str(payload.get("base_prompt") or payload.get("system_prompt") or "").strip(),
        knowledge_base=str(payload.get("knowledge_base") or "").strip(),
        specialty=specialty,
    )


def load_persona_catalog(path: Path | None = None) -> Dict[str, PersonaProfile]:
    """Built-in personas, overlaid by a JSON catalog (list of objects, or an object keyed by id)."""
    catalog = dict(DEFAULT_PERSONAS)
    if path is None:
        return catalog

    payload = json.loads(Path(path).read_text(encoding="utf-8-sig"))
    if isinstance(payload, dict):
        entries: Iterable[Any] = [
            {"persona_id": key, **value} if isinstance(value, dict) else value for key, value in payload.items()
        ]
    elif isinstance(payload, list):
        entries = payload
    else:
        raise ValueError(f"Persona catalog must be a JSON list or object: {path}")

    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"Persona catalog entries must be objects: {path}")
        profile = _profile_from_payload(entry)
        catalog[profile.persona_id] = profile
    logger.info("Loaded persona catalog %s (%s personas)", path, len(catalog))
    return catalog


async def provision_personas(store: Any, catalog: Dict[str, PersonaProfile]) -> List[Persona]:
    provisioned: List[Persona] = []
    for profile in catalog.values():
        provisioned.append(await store.ensure_persona(profile))
    return provisioned
