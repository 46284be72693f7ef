from __future__ import annotations

from .storage.experiences import LearningExperiencesMixin
from .storage.metrics import LearningMetricsMixin
from .storage.personas import LearningPersonasMixin
from .storage.schema import LearningSchemaMixin
from .storage.sessions import LearningSessionsMixin
from .storage.utils import _sqlite_memory_connection


class LearningStore(
    LearningSchemaMixin,
    LearningPersonasMixin,
    LearningSessionsMixin,
    LearningExperiencesMixin,
    LearningMetricsMixin,
):
    """SQLite store for personas, chat sessions, session outcomes and technique metrics."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        # Connections are opened per operation.
        return
