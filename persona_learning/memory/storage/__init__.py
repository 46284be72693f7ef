from .experiences import LearningExperiencesMixin
from .metrics import LearningMetricsMixin
from .personas import LearningPersonasMixin
from .schema import LearningSchemaMixin
from .sessions import LearningSessionsMixin

__all__ = [
    "LearningSchemaMixin",
    "LearningPersonasMixin",
    "LearningSessionsMixin",
    "LearningExperiencesMixin",
    "LearningMetricsMixin",
]
