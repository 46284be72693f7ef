from __future__ import annotations

import contextlib
import json
import os
import secrets
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, List, Mapping

try:
    import aiosqlite
except Exception:  # pragma: no cover - optional in Postgres-only deployments
    aiosqlite = None  # type: ignore[assignment]

from ...errors import StoreUnavailable
from ...models import AnalyzedBy, ChatSession, Outcome, Persona, TechniqueMetric, TurnRecord


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _now_ts() -> float:
    return time.time()


def _ts_to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _load_json_list(raw: Any) -> List[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(str(raw))
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed if str(item).strip()]


def _dump_json_list(values: List[str]) -> str:
    return json.dumps([str(item) for item in values], ensure_ascii=False)


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(
    db_path: str | Path,
    *,
    autocommit: bool = False,
) -> AsyncIterator["aiosqlite.Connection"]:
    if aiosqlite is None:
        raise RuntimeError("SQLite learning backend requires aiosqlite")
    connect_kwargs: dict[str, Any] = {"isolation_level": None} if autocommit else {}
    try:
        async with aiosqlite.connect(db_path, **connect_kwargs) as db:  # type: ignore[union-attr]
            await db.execute("PRAGMA foreign_keys=ON")
            timeout_ms = _sqlite_busy_timeout_ms()
            if timeout_ms > 0:
                await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
            yield db
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"SQLite operation failed: {exc}") from exc


@asynccontextmanager
async def _sqlite_write_transaction(db_path: str | Path) -> AsyncIterator["aiosqlite.Connection"]:
    # BEGIN IMMEDIATE takes the write lock up front, so every read-modify-write inside runs serialized.
    async with _sqlite_memory_connection(db_path, autocommit=True) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            with contextlib.suppress(sqlite3.Error):
                await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")


def _persona_from_row(row: Mapping[str, Any]) -> Persona:
    return Persona(
        persona_id=str(row["persona_id"]),
        name=str(row["name"]),
        display_text=str(row["display_text"] or ""),
        base_prompt=str(row["base_prompt"] or ""),
        knowledge_base=str(row["knowledge_base"] or ""),
        experience_level=int(row["experience_level"] or 0),
        total_sessions=int(row["total_sessions"] or 0),
        known_successful_techniques=_load_json_list(row["successful_techniques"]),
        learning_enabled=bool(row["learning_enabled"]),
        specialty=str(row["specialty"]) if row["specialty"] else None,
        created_at=_ts_to_datetime(row["created_at"]),
        last_session_at=_ts_to_datetime(row["last_session_at"]),
    )


def _session_from_row(row: Mapping[str, Any]) -> ChatSession:
    started_at = _ts_to_datetime(row["started_at"])
    assert started_at is not None
    return ChatSession(
        session_id=str(row["session_id"]),
        user_id=str(row["user_id"]),
        persona_id=str(row["persona_id"]),
        started_at=started_at,
        ended_at=_ts_to_datetime(row["ended_at"]),
        active=bool(row["is_active"]),
        message_count=int(row["message_count"] or 0),
    )


def _turn_from_row(row: Mapping[str, Any]) -> TurnRecord:
    created_at = _ts_to_datetime(row["created_at"])
    assert created_at is not None
    return TurnRecord(
        message_id=int(row["message_id"]),
        session_id=str(row["session_id"]),
        role=str(row["role"]),
        content=str(row["content"]),
        created_at=created_at,
    )


def _outcome_from_row(row: Mapping[str, Any]) -> Outcome:
    created_at = _ts_to_datetime(row["created_at"])
    assert created_at is not None
    analyzed_raw = str(row["analyzed_by"] or AnalyzedBy.HEURISTIC.value)
    try:
        analyzed_by = AnalyzedBy(analyzed_raw)
    except ValueError:
        analyzed_by = AnalyzedBy.HEURISTIC
    return Outcome(
        outcome_id=str(row["outcome_id"]),
        persona_id=str(row["persona_id"]),
        user_id=str(row["user_id"]),
        session_id=str(row["session_id"]),
        created_at=created_at,
        sentiment=float(row["sentiment"]),
        reaction=str(row["reaction"]),
        technique_used=str(row["technique_used"]),
        what_worked=str(row["what_worked"] or ""),
        what_did_not_work=str(row["what_did_not_work"] or ""),
        lesson_learned=str(row["lesson_learned"] or ""),
        turn_count=int(row["turn_count"] or 0),
        duration_seconds=int(row["duration_seconds"] or 0),
        key_moments=_load_json_list(row["key_moments"]),
        conversation_summary=str(row["conversation_summary"] or ""),
        analyzed_by=analyzed_by,
    )


def _metric_from_row(row: Mapping[str, Any]) -> TechniqueMetric:
    updated_at = _ts_to_datetime(row["last_updated_at"])
    assert updated_at is not None
    return TechniqueMetric(
        persona_id=str(row["persona_id"]),
        technique=str(row["technique"]),
        total_attempts=int(row["total_attempts"] or 0),
        success_count=int(row["success_count"] or 0),
        success_rate=float(row["success_rate"] or 0.0),
        average_rating=float(row["average_rating"] or 0.0),
        last_updated_at=updated_at,
    )
