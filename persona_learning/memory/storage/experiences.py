from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import aiosqlite

from ...errors import UnknownPersona, UnknownSession
from ...models import ConversationAnalysis, Outcome, TurnRecord
from ...scoring import (
    DEFAULT_TECHNIQUE,
    clamp_sentiment,
    experience_gain,
    is_success,
    rating_of,
    reaction_of,
)
from .utils import (
    _dump_json_list,
    _load_json_list,
    _new_id,
    _now_ts,
    _outcome_from_row,
    _sqlite_memory_connection,
    _sqlite_write_transaction,
    _ts_to_datetime,
)

logger = logging.getLogger("persona_learning")

_OUTCOME_COLUMNS = (
    "outcome_id, persona_id, user_id, session_id, created_at, conversation_summary, technique_used, "
    "reaction, sentiment, what_worked, what_did_not_work, lesson_learned, turn_count, duration_seconds, "
    "key_moments, analyzed_by"
)


def _join_points(items: Sequence[str]) -> str:
    return "; ".join(str(item).strip() for item in items if str(item).strip())


def summarize_transcript(transcript: Sequence[TurnRecord]) -> str:
    user_count = sum(1 for turn in transcript if turn.role == "user")
    agent_count = sum(1 for turn in transcript if turn.role == "agent")
    return f"{user_count} user messages, {agent_count} responses."


def build_outcome(
    *,
    persona_id: str,
    user_id: str,
    session_id: str,
    analysis: ConversationAnalysis,
    transcript: Sequence[TurnRecord],
    duration_seconds: int,
    now: float,
) -> Outcome:
    sentiment = clamp_sentiment(analysis.sentiment)
    created_at = _ts_to_datetime(now)
    assert created_at is not None
    return Outcome(
        outcome_id=_new_id("exp"),
        persona_id=persona_id,
        user_id=user_id,
        session_id=session_id,
        created_at=created_at,
        sentiment=sentiment,
        reaction=reaction_of(sentiment),
        technique_used=str(analysis.technique_used or "").strip() or DEFAULT_TECHNIQUE,
        what_worked=_join_points(analysis.what_worked),
        what_did_not_work=_join_points(analysis.what_did_not_work),
        lesson_learned=str(analysis.lesson_learned or "").strip(),
        turn_count=len(transcript),
        duration_seconds=max(0, int(duration_seconds)),
        key_moments=[str(item).strip() for item in analysis.key_moments if str(item).strip()],
        conversation_summary=summarize_transcript(transcript),
        analyzed_by=analysis.analyzed_by,
    )


def merge_successful_techniques(known: Sequence[str], outcome: Outcome) -> List[str]:
    techniques = list(known)
    if is_success(outcome.reaction) and outcome.technique_used not in techniques:
        techniques.append(outcome.technique_used)
    return techniques


class LearningExperiencesMixin:
    async def _fetch_outcome_by_session(self, db: aiosqlite.Connection, session_id: str) -> Optional[Outcome]:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            f"SELECT {_OUTCOME_COLUMNS} FROM experiences WHERE session_id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _outcome_from_row(row)

    async def _insert_outcome(self, db: aiosqlite.Connection, outcome: Outcome) -> None:
        await db.execute(
            f"""
            INSERT INTO experiences ({_OUTCOME_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
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
            ),
        )

    async def _apply_persona_counters(
        self,
        db: aiosqlite.Connection,
        persona_row: aiosqlite.Row,
        outcome: Outcome,
        now: float,
    ) -> None:
        gain = experience_gain(outcome.reaction, outcome.lesson_learned, outcome.turn_count)
        techniques = merge_successful_techniques(_load_json_list(persona_row["successful_techniques"]), outcome)
        await db.execute(
            """
            UPDATE personas
            SET total_sessions = total_sessions + 1,
                experience_level = experience_level + ?,
                successful_techniques = ?,
                last_session_at = ?
            WHERE persona_id = ?
            """,
            (gain, _dump_json_list(techniques), now, outcome.persona_id),
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
        """Record the session outcome, persona counters, technique metric and session close as one unit."""
        now = _now_ts()
        async with _sqlite_write_transaction(self.db_path) as db:
            existing = await self._fetch_outcome_by_session(db, session_id)
            if existing is not None:
                logger.info("Outcome already captured for session %s; skipping counters", session_id)
                return existing

            persona_row = await self._fetch_persona_row(db, persona_id)
            if persona_row is None:
                raise UnknownPersona(persona_id)
            session_row = await self._fetch_session_row(db, session_id)
            if session_row is None:
                raise UnknownSession(session_id)

            outcome = build_outcome(
                persona_id=persona_id,
                user_id=user_id,
                session_id=session_id,
                analysis=analysis,
                transcript=transcript,
                duration_seconds=duration_seconds,
                now=now,
            )
            await self._insert_outcome(db, outcome)
            await self._apply_persona_counters(db, persona_row, outcome, now)
            await self._apply_technique_attempt(
                db,
                persona_id,
                outcome.technique_used,
                success=is_success(outcome.reaction),
                rating=rating_of(outcome.reaction),
                now=now,
            )
            await db.execute(
                """
                UPDATE chat_sessions
                SET is_active = 0, ended_at = COALESCE(ended_at, ?)
                WHERE session_id = ?
                """,
                (now, session_id),
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
        async with _sqlite_memory_connection(self.db_path) as db:
            return await self._fetch_outcome_by_session(db, session_id)

    async def list_recent_outcomes(self, persona_id: str, limit: int) -> List[Outcome]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_OUTCOME_COLUMNS}
                FROM experiences
                WHERE persona_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (persona_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_outcome_from_row(row) for row in rows]

    async def list_recent_successes(self, persona_id: str, limit: int) -> List[Outcome]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_OUTCOME_COLUMNS}
                FROM experiences
                WHERE persona_id = ? AND reaction IN ('amazed', 'engaged')
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (persona_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_outcome_from_row(row) for row in rows]

    async def list_user_outcomes(self, user_id: str, persona_id: str, limit: int) -> List[Outcome]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_OUTCOME_COLUMNS}
                FROM experiences
                WHERE user_id = ? AND persona_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, persona_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_outcome_from_row(row) for row in rows]

    async def count_user_outcomes(self, user_id: str, persona_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM experiences WHERE user_id = ? AND persona_id = ?",
                (user_id, persona_id),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def list_user_technique_counts(
        self,
        user_id: str,
        persona_id: str,
        limit: int = 3,
    ) -> List[Tuple[str, int]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT technique_used, COUNT(*) AS uses, MAX(created_at) AS last_used
                FROM experiences
                WHERE user_id = ? AND persona_id = ?
                GROUP BY technique_used
                ORDER BY uses DESC, last_used DESC
                LIMIT ?
                """,
                (user_id, persona_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [(str(row[0]), int(row[1])) for row in rows]
