from __future__ import annotations

from typing import List, Optional

import aiosqlite

from ...errors import SessionClosed, UnknownPersona, UnknownSession
from ...models import ChatSession, TurnRecord, normalize_turn_role
from .utils import (
    _new_id,
    _now_ts,
    _session_from_row,
    _sqlite_memory_connection,
    _sqlite_write_transaction,
    _turn_from_row,
)

_SESSION_COLUMNS = "session_id, user_id, persona_id, started_at, ended_at, is_active, message_count"


class LearningSessionsMixin:
    async def _fetch_session_row(self, db: aiosqlite.Connection, session_id: str) -> Optional[aiosqlite.Row]:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE session_id = ?",
            (session_id,),
        ) as cursor:
            return await cursor.fetchone()

    async def get_or_create_session(self, user_id: str, persona_id: str) -> str:
        async with _sqlite_write_transaction(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT session_id
                FROM chat_sessions
                WHERE user_id = ? AND persona_id = ? AND is_active = 1
                ORDER BY started_at DESC, rowid DESC
                LIMIT 1
                """,
                (user_id, persona_id),
            ) as cursor:
                row = await cursor.fetchone()
            if row is not None:
                return str(row["session_id"])

            async with db.execute("SELECT 1 FROM personas WHERE persona_id = ?", (persona_id,)) as cursor:
                if await cursor.fetchone() is None:
                    raise UnknownPersona(persona_id)

            session_id = _new_id("session")
            await db.execute(
                """
                INSERT INTO chat_sessions (session_id, user_id, persona_id, started_at, is_active, message_count)
                VALUES (?, ?, ?, ?, 1, 0)
                """,
                (session_id, user_id, persona_id, _now_ts()),
            )
            return session_id

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        async with _sqlite_memory_connection(self.db_path) as db:
            row = await self._fetch_session_row(db, session_id)
        if row is None:
            return None
        return _session_from_row(row)

    async def append_message(self, session_id: str, role: str, content: str) -> TurnRecord:
        normalized_role = normalize_turn_role(role)
        async with _sqlite_write_transaction(self.db_path) as db:
            row = await self._fetch_session_row(db, session_id)
            if row is None:
                raise UnknownSession(session_id)
            if not bool(row["is_active"]):
                raise SessionClosed(session_id)

            created_at = _now_ts()
            cursor = await db.execute(
                """
                INSERT INTO session_messages (session_id, role, content, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, normalized_role, str(content), created_at),
            )
            message_id = int(cursor.lastrowid)
            await db.execute(
                "UPDATE chat_sessions SET message_count = message_count + 1 WHERE session_id = ?",
                (session_id,),
            )
        return _turn_from_row(
            {
                "message_id": message_id,
                "session_id": session_id,
                "role": normalized_role,
                "content": str(content),
                "created_at": created_at,
            }
        )

    async def end_session(self, session_id: str) -> ChatSession:
        async with _sqlite_write_transaction(self.db_path) as db:
            row = await self._fetch_session_row(db, session_id)
            if row is None:
                raise UnknownSession(session_id)
            if bool(row["is_active"]):
                await db.execute(
                    "UPDATE chat_sessions SET is_active = 0, ended_at = ? WHERE session_id = ?",
                    (_now_ts(), session_id),
                )
                row = await self._fetch_session_row(db, session_id)
        assert row is not None
        return _session_from_row(row)

    async def list_messages(self, session_id: str) -> List[TurnRecord]:
        async with _sqlite_memory_connection(self.db_path) as db:
            if await self._fetch_session_row(db, session_id) is None:
                raise UnknownSession(session_id)
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT message_id, session_id, role, content, created_at
                FROM session_messages
                WHERE session_id = ?
                ORDER BY created_at ASC, message_id ASC
                """,
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_turn_from_row(row) for row in rows]

    async def list_idle_sessions(self, idle_seconds: float, *, now: float | None = None) -> List[ChatSession]:
        cutoff = (_now_ts() if now is None else float(now)) - max(0.0, float(idle_seconds))
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM chat_sessions s
                WHERE s.is_active = 1
                  AND COALESCE(
                    (SELECT MAX(m.created_at) FROM session_messages m WHERE m.session_id = s.session_id),
                    s.started_at
                  ) < ?
                ORDER BY s.started_at ASC
                """,
                (cutoff,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_session_from_row(row) for row in rows]
