from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Sequence, Tuple

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..errors import SessionClosed, StoreUnavailable, UnknownPersona, UnknownSession
from ..models import ChatSession, ConversationAnalysis, Outcome, Persona, TechniqueMetric, TurnRecord, normalize_turn_role
from ..scoring import TechniqueMetricState, experience_gain, is_success, merge_technique_metric_state, rating_of
from .storage.experiences import build_outcome, merge_successful_techniques
from .storage.utils import (
    _dump_json_list,
    _load_json_list,
    _metric_from_row,
    _new_id,
    _now_ts,
    _outcome_from_row,
    _persona_from_row,
    _session_from_row,
    _turn_from_row,
)

if TYPE_CHECKING:
    from ..personas import PersonaProfile


logger = logging.getLogger("persona_learning")

_PERSONA_COLUMNS = (
    "persona_id, name, display_text, base_prompt, knowledge_base, experience_level, total_sessions, "
    "successful_techniques, learning_enabled, specialty, created_at, last_session_at"
)
_SESSION_COLUMNS = "session_id, user_id, persona_id, started_at, ended_at, is_active, message_count"
_OUTCOME_COLUMNS = (
    "outcome_id, persona_id, user_id, session_id, created_at, conversation_summary, technique_used, "
    "reaction, sentiment, what_worked, what_did_not_work, lesson_learned, turn_count, duration_seconds, "
    "key_moments, analyzed_by"
)
_METRIC_COLUMNS = (
    "persona_id, technique, total_attempts, success_count, success_rate, average_rating, last_updated_at"
)


class PostgresLearningStore:
    """Postgres-backed learning store implementing the same API as LearningStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres learning backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=1,
                    max_size=6,
                    command_timeout=30.0,
                )
            except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
                raise StoreUnavailable(f"Postgres connection failed: {exc}") from exc
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator["asyncpg.Connection"]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise StoreUnavailable(f"Postgres operation failed: {exc}") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        async with self._connection() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self._connection() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres learning schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS learning_schema_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM learning_schema_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO learning_schema_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
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
                learning_enabled BOOLEAN NOT NULL DEFAULT TRUE,
                specialty TEXT,
                created_at DOUBLE PRECISION NOT NULL,
                last_session_at DOUBLE PRECISION
            );

            CREATE TABLE IF NOT EXISTS chat_sessions (
                session_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_id TEXT NOT NULL REFERENCES personas(persona_id),
                started_at DOUBLE PRECISION NOT NULL,
                ended_at DOUBLE PRECISION,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                message_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_single_active
            ON chat_sessions(user_id, persona_id)
            WHERE is_active;

            CREATE TABLE IF NOT EXISTS session_messages (
                message_id BIGSERIAL PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES chat_sessions(session_id),
                role TEXT NOT NULL CHECK (role IN ('user', 'agent', 'system')),
                content TEXT NOT NULL,
                created_at DOUBLE PRECISION NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_order
            ON session_messages(session_id, created_at, message_id);

            CREATE TABLE IF NOT EXISTS experiences (
                outcome_id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL REFERENCES personas(persona_id),
                user_id TEXT NOT NULL,
                session_id TEXT NOT NULL UNIQUE REFERENCES chat_sessions(session_id),
                created_at DOUBLE PRECISION NOT NULL,
                conversation_summary TEXT NOT NULL DEFAULT '',
                technique_used TEXT NOT NULL,
                reaction TEXT NOT NULL,
                sentiment DOUBLE PRECISION NOT NULL,
                what_worked TEXT NOT NULL DEFAULT '',
                what_did_not_work TEXT NOT NULL DEFAULT '',
                lesson_learned TEXT NOT NULL DEFAULT '',
                turn_count INTEGER NOT NULL DEFAULT 0,
                duration_seconds INTEGER NOT NULL DEFAULT 0,
                key_moments TEXT NOT NULL DEFAULT '[]',
                analyzed_by TEXT NOT NULL DEFAULT 'heuristic'
            );

            CREATE INDEX IF NOT EXISTS idx_experiences_persona_recent
            ON experiences(persona_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_experiences_user_persona_recent
            ON experiences(user_id, persona_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS technique_metrics (
                persona_id TEXT NOT NULL REFERENCES personas(persona_id),
                technique TEXT NOT NULL,
                total_attempts INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                success_rate DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                average_rating DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                last_updated_at DOUBLE PRECISION NOT NULL,
                PRIMARY KEY (persona_id, technique)
            );
            """
        )

    async def ensure_persona(self, profile: "PersonaProfile") -> Persona:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO personas (
                    persona_id, name, display_text, base_prompt, knowledge_base, specialty, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT(persona_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    display_text = EXCLUDED.display_text,
                    base_prompt = EXCLUDED.base_prompt,
                    knowledge_base = EXCLUDED.knowledge_base,
                    specialty = COALESCE(personas.specialty, EXCLUDED.specialty)
                RETURNING {_PERSONA_COLUMNS}
                """,
                profile.persona_id,
                profile.name,
                profile.display_text,
                profile.base_prompt,
                profile.knowledge_base,
                profile.specialty,
                _now_ts(),
            )
        return _persona_from_row(row)

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        async with self._connection() as conn:
            row = await conn.fetchrow(f"SELECT {_PERSONA_COLUMNS} FROM personas WHERE persona_id = $1", persona_id)
        if row is None:
            return None
        return _persona_from_row(row)

    async def require_persona(self, persona_id: str) -> Persona:
        persona = await self.get_persona(persona_id)
        if persona is None:
            raise UnknownPersona(persona_id)
        return persona

    async def list_personas(self) -> List[Persona]:
        async with self._connection() as conn:
            rows = await conn.fetch(f"SELECT {_PERSONA_COLUMNS} FROM personas ORDER BY persona_id")
        return [_persona_from_row(row) for row in rows]

    async def set_persona_learning_enabled(self, persona_id: str, enabled: bool) -> None:
        async with self._connection() as conn:
            status = await conn.execute(
                "UPDATE personas SET learning_enabled = $1 WHERE persona_id = $2",
                bool(enabled),
                persona_id,
            )
        if status.endswith(" 0"):
            raise UnknownPersona(persona_id)

    async def get_or_create_session(self, user_id: str, persona_id: str) -> str:
        async with self._connection() as conn:
            async with conn.transaction():
                # Serializes concurrent creators for the same (user, persona) pair.
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1 || ':' || $2))",
                    user_id,
                    persona_id,
                )
                row = await conn.fetchrow(
                    """
                    SELECT session_id
                    FROM chat_sessions
                    WHERE user_id = $1 AND persona_id = $2 AND is_active
                    ORDER BY started_at DESC
                    LIMIT 1
                    """,
                    user_id,
                    persona_id,
                )
                if row is not None:
                    return str(row["session_id"])

                if await conn.fetchval("SELECT 1 FROM personas WHERE persona_id = $1", persona_id) is None:
                    raise UnknownPersona(persona_id)

                session_id = _new_id("session")
                await conn.execute(
                    """
                    INSERT INTO chat_sessions (session_id, user_id, persona_id, started_at, is_active, message_count)
                    VALUES ($1, $2, $3, $4, TRUE, 0)
                    """,
                    session_id,
                    user_id,
                    persona_id,
                    _now_ts(),
                )
                return session_id

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE session_id = $1",
                session_id,
            )
        if row is None:
            return None
        return _session_from_row(row)

    async def append_message(self, session_id: str, role: str, content: str) -> TurnRecord:
        normalized_role = normalize_turn_role(role)
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT is_active FROM chat_sessions WHERE session_id = $1 FOR UPDATE",
                    session_id,
                )
                if row is None:
                    raise UnknownSession(session_id)
                if not bool(row["is_active"]):
                    raise SessionClosed(session_id)
                inserted = await conn.fetchrow(
                    """
                    INSERT INTO session_messages (session_id, role, content, created_at)
                    VALUES ($1, $2, $3, $4)
                    RETURNING message_id, session_id, role, content, created_at
                    """,
                    session_id,
                    normalized_role,
                    str(content),
                    _now_ts(),
                )
                await conn.execute(
                    "UPDATE chat_sessions SET message_count = message_count + 1 WHERE session_id = $1",
                    session_id,
                )
        return _turn_from_row(inserted)

    async def end_session(self, session_id: str) -> ChatSession:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE chat_sessions
                SET is_active = FALSE, ended_at = COALESCE(ended_at, $2)
                WHERE session_id = $1
                RETURNING {_SESSION_COLUMNS}
                """,
                session_id,
                _now_ts(),
            )
        if row is None:
            raise UnknownSession(session_id)
        return _session_from_row(row)

    async def list_messages(self, session_id: str) -> List[TurnRecord]:
        async with self._connection() as conn:
            if await conn.fetchval("SELECT 1 FROM chat_sessions WHERE session_id = $1", session_id) is None:
                raise UnknownSession(session_id)
            rows = await conn.fetch(
                """
                SELECT message_id, session_id, role, content, created_at
                FROM session_messages
                WHERE session_id = $1
                ORDER BY created_at ASC, message_id ASC
                """,
                session_id,
            )
        return [_turn_from_row(row) for row in rows]

    async def list_idle_sessions(self, idle_seconds: float, *, now: float | None = None) -> List[ChatSession]:
        cutoff = (_now_ts() if now is None else float(now)) - max(0.0, float(idle_seconds))
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT s.session_id, s.user_id, s.persona_id, s.started_at, s.ended_at, s.is_active, s.message_count
                FROM chat_sessions s
                WHERE s.is_active
                  AND COALESCE(
                    (SELECT MAX(m.created_at) FROM session_messages m WHERE m.session_id = s.session_id),
                    s.started_at
                  ) < $1
                ORDER BY s.started_at ASC
                """,
                cutoff,
            )
        return [_session_from_row(row) for row in rows]

    async def _apply_technique_attempt(
        self,
        conn: "asyncpg.Connection",
        persona_id: str,
        technique: str,
        *,
        success: bool,
        rating: float,
        now: float,
    ) -> TechniqueMetric:
        # Seed the row so FOR UPDATE always has something to lock.
        await conn.execute(
            """
            INSERT INTO technique_metrics (
                persona_id, technique, total_attempts, success_count, success_rate, average_rating, last_updated_at
            )
            VALUES ($1, $2, 0, 0, 0.0, 0.0, $3)
            ON CONFLICT (persona_id, technique) DO NOTHING
            """,
            persona_id,
            technique,
            now,
        )
        row = await conn.fetchrow(
            f"""
            SELECT {_METRIC_COLUMNS}
            FROM technique_metrics
            WHERE persona_id = $1 AND technique = $2
            FOR UPDATE
            """,
            persona_id,
            technique,
        )
        prior = TechniqueMetricState(
            total_attempts=int(row["total_attempts"]),
            success_count=int(row["success_count"]),
            success_rate=float(row["success_rate"]),
            average_rating=float(row["average_rating"]),
        )
        state = merge_technique_metric_state(prior, success=success, rating=rating)
        updated = await conn.fetchrow(
            f"""
            UPDATE technique_metrics
            SET total_attempts = $3,
                success_count = $4,
                success_rate = $5,
                average_rating = $6,
                last_updated_at = $7
            WHERE persona_id = $1 AND technique = $2
            RETURNING {_METRIC_COLUMNS}
            """,
            persona_id,
            technique,
            state.total_attempts,
            state.success_count,
            state.success_rate,
            state.average_rating,
            now,
        )
        return _metric_from_row(updated)

    async def record_attempt(
        self,
        persona_id: str,
        technique: str,
        success: bool,
        rating: float,
    ) -> TechniqueMetric:
        async with self._connection() as conn:
            async with conn.transaction():
                if await conn.fetchval("SELECT 1 FROM personas WHERE persona_id = $1", persona_id) is None:
                    raise UnknownPersona(persona_id)
                return await self._apply_technique_attempt(
                    conn,
                    persona_id,
                    technique,
                    success=success,
                    rating=rating,
                    now=_now_ts(),
                )

    async def get_technique_metric(self, persona_id: str, technique: str) -> Optional[TechniqueMetric]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_METRIC_COLUMNS} FROM technique_metrics WHERE persona_id = $1 AND technique = $2",
                persona_id,
                technique,
            )
        if row is None:
            return None
        return _metric_from_row(row)

    async def list_technique_metrics(self, persona_id: str, limit: int | None = None) -> List[TechniqueMetric]:
        query = f"""
            SELECT {_METRIC_COLUMNS}
            FROM technique_metrics
            WHERE persona_id = $1 AND total_attempts > 0
            ORDER BY success_rate DESC, total_attempts DESC, technique ASC
        """
        args: list[object] = [persona_id]
        if limit is not None:
            query += " LIMIT $2"
            args.append(max(1, int(limit)))
        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
        return [_metric_from_row(row) for row in rows]

    async def _apply_persona_counters(
        self,
        conn: "asyncpg.Connection",
        persona_row: "asyncpg.Record",
        outcome: Outcome,
        now: float,
    ) -> None:
        gain = experience_gain(outcome.reaction, outcome.lesson_learned, outcome.turn_count)
        techniques = merge_successful_techniques(_load_json_list(persona_row["successful_techniques"]), outcome)
        await conn.execute(
            """
            UPDATE personas
            SET total_sessions = total_sessions + 1,
                experience_level = experience_level + $1,
                successful_techniques = $2,
                last_session_at = $3
            WHERE persona_id = $4
            """,
            gain,
            _dump_json_list(techniques),
            now,
            outcome.persona_id,
        )

    async def capture_experience(
        self,
        persona_id: str,
        user_id: str,
        session_id: str,
        analysis: ConversationAnalysis,
        transcript: Sequence[TurnRecord],
        duration_seconds: int,
    ) -> Outcome:
        now = _now_ts()
        async with self._connection() as conn:
            async with conn.transaction():
                persona_row = await conn.fetchrow(
                    f"SELECT {_PERSONA_COLUMNS} FROM personas WHERE persona_id = $1 FOR UPDATE",
                    persona_id,
                )
                if persona_row is None:
                    raise UnknownPersona(persona_id)
                session_row = await conn.fetchrow(
                    "SELECT session_id FROM chat_sessions WHERE session_id = $1 FOR UPDATE",
                    session_id,
                )
                if session_row is None:
                    raise UnknownSession(session_id)
                existing = await conn.fetchrow(
                    f"SELECT {_OUTCOME_COLUMNS} FROM experiences WHERE session_id = $1",
                    session_id,
                )
                if existing is not None:
                    logger.info("Outcome already captured for session %s; skipping counters", session_id)
                    return _outcome_from_row(existing)

                outcome = build_outcome(
                    persona_id=persona_id,
                    user_id=user_id,
                    session_id=session_id,
                    analysis=analysis,
                    transcript=transcript,
                    duration_seconds=duration_seconds,
                    now=now,
                )
                await conn.execute(
                    f"""
                    INSERT INTO experiences ({_OUTCOME_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
                    """,
                    outcome.outcome_id,
                    outcome.persona_id,
                    outcome.user_id,
                    outcome.session_id,
                    outcome.created_at.timestamp(),
                    outcome.conversation_summary,
                    outcome.technique_used,
                    outcome.reaction,
                    outcome.sentiment,
                    outcome.what_worked,
                    outcome.what_did_not_work,
                    outcome.lesson_learned,
                    outcome.turn_count,
                    outcome.duration_seconds,
                    _dump_json_list(outcome.key_moments),
                    outcome.analyzed_by.value,
                )
                await self._apply_persona_counters(conn, persona_row, outcome, now)
                await self._apply_technique_attempt(
                    conn,
                    persona_id,
                    outcome.technique_used,
                    success=is_success(outcome.reaction),
                    rating=rating_of(outcome.reaction),
                    now=now,
                )
                await conn.execute(
                    """
                    UPDATE chat_sessions
                    SET is_active = FALSE, ended_at = COALESCE(ended_at, $1)
                    WHERE session_id = $2
                    """,
                    now,
                    session_id,
                )

        logger.info(
            "Captured outcome %s persona=%s technique=%s reaction=%s analyzed_by=%s",
            outcome.outcome_id,
            persona_id,
            outcome.technique_used,
            outcome.reaction,
            outcome.analyzed_by.value,
        )
        return outcome

    async def get_outcome_for_session(self, session_id: str) -> Optional[Outcome]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_OUTCOME_COLUMNS} FROM experiences WHERE session_id = $1",
                session_id,
            )
        if row is None:
            return None
        return _outcome_from_row(row)

    async def list_recent_outcomes(self, persona_id: str, limit: int) -> List[Outcome]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_OUTCOME_COLUMNS}
                FROM experiences
                WHERE persona_id = $1
                ORDER BY created_at DESC, outcome_id DESC
                LIMIT $2
                """,
                persona_id,
                max(1, int(limit)),
            )
        return [_outcome_from_row(row) for row in rows]

    async def list_recent_successes(self, persona_id: str, limit: int) -> List[Outcome]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_OUTCOME_COLUMNS}
                FROM experiences
                WHERE persona_id = $1 AND reaction IN ('amazed', 'engaged')
                ORDER BY created_at DESC, outcome_id DESC
                LIMIT $2
                """,
                persona_id,
                max(1, int(limit)),
            )
        return [_outcome_from_row(row) for row in rows]

    async def list_user_outcomes(self, user_id: str, persona_id: str, limit: int) -> List[Outcome]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_OUTCOME_COLUMNS}
                FROM experiences
                WHERE user_id = $1 AND persona_id = $2
                ORDER BY created_at DESC, outcome_id DESC
                LIMIT $3
                """,
                user_id,
                persona_id,
                max(1, int(limit)),
            )
        return [_outcome_from_row(row) for row in rows]

    async def count_user_outcomes(self, user_id: str, persona_id: str) -> int:
        async with self._connection() as conn:
            value = await conn.fetchval(
                "SELECT COUNT(*) FROM experiences WHERE user_id = $1 AND persona_id = $2",
                user_id,
                persona_id,
            )
        return int(value or 0)

    async def list_user_technique_counts(
        self,
        user_id: str,
        persona_id: str,
        limit: int = 3,
    ) -> List[Tuple[str, int]]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT technique_used, COUNT(*) AS uses, MAX(created_at) AS last_used
                FROM experiences
                WHERE user_id = $1 AND persona_id = $2
                GROUP BY technique_used
                ORDER BY uses DESC, last_used DESC
                LIMIT $3
                """,
                user_id,
                persona_id,
                max(1, int(limit)),
            )
        return [(str(row["technique_used"]), int(row["uses"])) for row in rows]
