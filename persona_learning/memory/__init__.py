
from .postgres_store import PostgresLearningStore
from .store import LearningStore

__all__ = ["LearningStore", "PostgresLearningStore"]
