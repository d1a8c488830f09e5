"""SQL models module."""

from .database import Base, SessionLocal, create_db_engine, engine
from .question_logic import (
    FrequencyHarmonizerRow,
    PriorityWeightRow,
    QuestionAnalyticsRow,
    QuestionRow,
    TriggerActivationRow,
    TriggerRow,
)

__all__ = [
    "Base",
    "SessionLocal",
    "create_db_engine",
    "engine",
    "QuestionRow",
    "TriggerRow",
    "TriggerActivationRow",
    "FrequencyHarmonizerRow",
    "PriorityWeightRow",
    "QuestionAnalyticsRow",
]
