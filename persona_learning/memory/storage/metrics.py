from __future__ import annotations

from typing import List, Optional

import aiosqlite

from ...errors import UnknownPersona
from ...models import TechniqueMetric
from ...scoring import TechniqueMetricState, merge_technique_metric_state
from .utils import _metric_from_row, _now_ts, _sqlite_memory_connection, _sqlite_write_transaction

_METRIC_COLUMNS = (
    "persona_id, technique, total_attempts, success_count, success_rate, average_rating, last_updated_at"
)


class LearningMetricsMixin:
    async def _apply_technique_attempt(
        self,
        db: aiosqlite.Connection,
        persona_id: str,
        technique: str,
        *,
        success: bool,
        rating: float,
        now: float,
    ) -> TechniqueMetric:
        # Caller owns the write transaction; the read below and the upsert are one serialized unit.
        db.row_factory = aiosqlite.Row
        async with db.execute(
            f"SELECT {_METRIC_COLUMNS} FROM technique_metrics WHERE persona_id = ? AND technique = ?",
            (persona_id, technique),
        ) as cursor:
            row = await cursor.fetchone()

        prior: TechniqueMetricState | None = None
        if row is not None:
            prior = TechniqueMetricState(
                total_attempts=int(row["total_attempts"]),
                success_count=int(row["success_count"]),
                success_rate=float(row["success_rate"]),
                average_rating=float(row["average_rating"]),
            )
        state = merge_technique_metric_state(prior, success=success, rating=rating)

        await db.execute(
            """
            INSERT INTO technique_metrics (
                persona_id, technique, total_attempts, success_count, success_rate, average_rating, last_updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(persona_id, technique) DO UPDATE SET
                total_attempts = excluded.total_attempts,
                success_count = excluded.success_count,
                success_rate = excluded.success_rate,
                average_rating = excluded.average_rating,
                last_updated_at = excluded.last_updated_at
            """,
            (
                persona_id,
                technique,
                state.total_attempts,
                state.success_count,
                state.success_rate,
                state.average_rating,
                now,
            ),
        )
        return _metric_from_row(
            {
                "persona_id": persona_id,
                "technique": technique,
                "total_attempts": state.total_attempts,
                "success_count": state.success_count,
                "success_rate": state.success_rate,
                "average_rating": state.average_rating,
                "last_updated_at": now,
            }
        )

    async def record_attempt(
        self,
        persona_id: str,
        technique: str,
        success: bool,
        rating: float,
    ) -> TechniqueMetric:
        async with _sqlite_write_transaction(self.db_path) as db:
            async with db.execute("SELECT 1 FROM personas WHERE persona_id = ?", (persona_id,)) as cursor:
                if await cursor.fetchone() is None:
                    raise UnknownPersona(persona_id)
            return await self._apply_technique_attempt(
                db,
                persona_id,
                technique,
                success=success,
                rating=rating,
                now=_now_ts(),
            )

    async def get_technique_metric(self, persona_id: str, technique: str) -> Optional[TechniqueMetric]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_METRIC_COLUMNS} FROM technique_metrics WHERE persona_id = ? AND technique = ?",
                (persona_id, technique),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _metric_from_row(row)

    async def list_technique_metrics(self, persona_id: str, limit: int | None = None) -> List[TechniqueMetric]:
        query = f"""
            SELECT {_METRIC_COLUMNS}
            FROM technique_metrics
            WHERE persona_id = ?
            ORDER BY success_rate DESC, total_attempts DESC, technique ASC
        """
        params: tuple[object, ...] = (persona_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (persona_id, max(1, int(limit)))
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_metric_from_row(row) for row in rows]
