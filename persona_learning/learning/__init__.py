
from .analysis import ConversationAnalyzer
from .context import ContextBuilder
from .knowledge import KnowledgeSynthesizer
from .pipeline import LearningPipeline, OperationResult
from .user_memory import UserMemoryService

__all__ = [
    "ContextBuilder",
    "ConversationAnalyzer",
    "KnowledgeSynthesizer",
    "LearningPipeline",
    "OperationResult",
    "UserMemoryService",
]
