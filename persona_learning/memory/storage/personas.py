from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

import aiosqlite

from ...errors import UnknownPersona
from ...models import Persona
from .utils import _now_ts, _persona_from_row, _sqlite_memory_connection

if TYPE_CHECKING:
    from ...personas import PersonaProfile


class LearningPersonasMixin:
    async def ensure_persona(self, profile: "PersonaProfile") -> Persona:
        """Provision a persona; catalog text is refreshed, learning counters are never touched."""
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                INSERT INTO personas (
                    persona_id, name, display_text, base_prompt, knowledge_base, specialty, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(persona_id) DO UPDATE SET
                    name = excluded.name,
                    display_text = excluded.display_text,
                    base_prompt = excluded.base_prompt,
                    knowledge_base = excluded.knowledge_base,
                    specialty = COALESCE(personas.specialty, excluded.specialty)
                """,
                (
                    profile.persona_id,
                    profile.name,
                    profile.display_text,
                    profile.base_prompt,
                    profile.knowledge_base,
                    profile.specialty,
                    _now_ts(),
                ),
            )
            await db.commit()
            row = await self._fetch_persona_row(db, profile.persona_id)
        assert row is not None
        return _persona_from_row(row)

    async def _fetch_persona_row(self, db: aiosqlite.Connection, persona_id: str) -> Optional[aiosqlite.Row]:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            """
            SELECT persona_id, name, display_text, base_prompt, knowledge_base, experience_level,
                   total_sessions, successful_techniques, learning_enabled, specialty, created_at,
                   last_session_at
            FROM personas
            WHERE persona_id = ?
            """,
            (persona_id,),
        ) as cursor:
            return await cursor.fetchone()

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        async with _sqlite_memory_connection(self.db_path) as db:
            row = await self._fetch_persona_row(db, persona_id)
        if row is None:
            return None
        return _persona_from_row(row)

    async def require_persona(self, persona_id: str) -> Persona:
        persona = await self.get_persona(persona_id)
        if persona is None:
            raise UnknownPersona(persona_id)
        return persona

    async def list_personas(self) -> List[Persona]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT persona_id, name, display_text, base_prompt, knowledge_base, experience_level,
                       total_sessions, successful_techniques, learning_enabled, specialty, created_at,
                       last_session_at
                FROM personas
                ORDER BY persona_id
                """
            ) as cursor:
                rows = await cursor.fetchall()
        return [_persona_from_row(row) for row in rows]

    async def set_persona_learning_enabled(self, persona_id: str, enabled: bool) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE personas SET learning_enabled = ? WHERE persona_id = ?",
                (1 if enabled else 0, persona_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise UnknownPersona(persona_id)
