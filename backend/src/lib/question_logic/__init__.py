"""Question selection and frequency harmonization.

Decides which feedback questions to ask in a customer interaction:
frequency budgets per window, trigger rules, cross-question frequency
harmonization and priority balancing under an optional time budget.
"""

from .balancer import PriorityBalancer, default_priority_scorer, estimate_duration
from .engine import QuestionSelectionEngine
from .frequency import FrequencyTracker
from .harmonizer import ConflictHarmonizer
from .ranking import compare_candidates, priority_rank, select_best
from .repository import InMemoryRepository, QuestionLogicRepository
from .settings import QuestionLogicSettings, load_settings, reset_settings
from .sql_repository import SqlAlchemyRepository
from .triggers import ConditionTreeEvaluator, TriggerEvaluator
from .windows import WindowBounds, compute_window_bounds

__all__ = [
    "QuestionSelectionEngine",
    "FrequencyTracker",
    "TriggerEvaluator",
    "ConditionTreeEvaluator",
    "ConflictHarmonizer",
    "PriorityBalancer",
    "default_priority_scorer",
    "estimate_duration",
    "compare_candidates",
    "priority_rank",
    "select_best",
    "QuestionLogicRepository",
    "InMemoryRepository",
    "SqlAlchemyRepository",
    "QuestionLogicSettings",
    "load_settings",
    "reset_settings",
    "WindowBounds",
    "compute_window_bounds",
]
