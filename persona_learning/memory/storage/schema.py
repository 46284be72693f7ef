from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class LearningSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            # Every statement is IF NOT EXISTS, so re-running it heals a partially created schema.
            await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "technique_metrics",
            "experiences",
            "session_messages",
            "chat_sessions",
            "personas",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS personas (
                persona_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                display_text TEXT NOT NULL DEFAULT '',
                base_prompt TEXT NOT NULL DEFAULT '',
                knowledge_base TEXT NOT NULL DEFAULT '',
                experience_level INTEGER NOT NULL DEFAULT 0,
                total_sessions INTEGER NOT NULL DEFAULT 0,
                successful_techniques TEXT NOT NULL DEFAULT '[]',
                learning_enabled INTEGER NOT NULL DEFAULT 1,
                specialty TEXT,
                created_at REAL NOT NULL,
                last_session_at REAL
            );

            CREATE TABLE IF NOT EXISTS chat_sessions (
                session_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                started_at REAL NOT NULL,
                ended_at REAL,
                is_active INTEGER NOT NULL DEFAULT 1,
                message_count INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (persona_id) REFERENCES personas(persona_id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_single_active
            ON chat_sessions(user_id, persona_id)
            WHERE is_active = 1;

            CREATE INDEX IF NOT EXISTS idx_sessions_lookup
            ON chat_sessions(user_id, persona_id, is_active, started_at DESC);

            CREATE TABLE IF NOT EXISTS session_messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'agent', 'system')),
                content TEXT NOT NULL,
                created_at REAL NOT NULL,
                FOREIGN KEY (session_id) REFERENCES chat_sessions(session_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_order
            ON session_messages(session_id, created_at, message_id);

            CREATE TABLE IF NOT EXISTS experiences (
                outcome_id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                session_id TEXT NOT NULL UNIQUE,
                created_at REAL NOT NULL,
                conversation_summary TEXT NOT NULL DEFAULT '',
                technique_used TEXT NOT NULL,
                reaction TEXT NOT NULL,
                sentiment REAL NOT NULL,
                what_worked TEXT NOT NULL DEFAULT '',
                what_did_not_work TEXT NOT NULL DEFAULT '',
                lesson_learned TEXT NOT NULL DEFAULT '',
                turn_count INTEGER NOT NULL DEFAULT 0,
                duration_seconds INTEGER NOT NULL DEFAULT 0,
                key_moments TEXT NOT NULL DEFAULT '[]',
                analyzed_by TEXT NOT NULL DEFAULT 'heuristic',
                FOREIGN KEY (persona_id) REFERENCES personas(persona_id),
                FOREIGN KEY (session_id) REFERENCES chat_sessions(session_id)
            );

            CREATE INDEX IF NOT EXISTS idx_experiences_persona_recent
            ON experiences(persona_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_experiences_user_persona_recent
            ON experiences(user_id, persona_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS technique_metrics (
                persona_id TEXT NOT NULL,
                technique TEXT NOT NULL,
                total_attempts INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                success_rate REAL NOT NULL DEFAULT 0.0,
                average_rating REAL NOT NULL DEFAULT 0.0,
                last_updated_at REAL NOT NULL,
                PRIMARY KEY (persona_id, technique),
                FOREIGN KEY (persona_id) REFERENCES personas(persona_id)
            );

            CREATE INDEX IF NOT EXISTS idx_metrics_persona_rank
            ON technique_metrics(persona_id, success_rate DESC, total_attempts DESC);
            """
        )
