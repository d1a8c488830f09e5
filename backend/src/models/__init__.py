"""Models package for question selection."""

from .question_logic import (
    Question,
    FrequencyWindow,
    TriggerType,
    TriggerPriority,
    ResolutionMethod,
    TimeWindow,
    TimeBasedConditions,
    FrequencyBasedConditions,
    CustomerBehaviorConditions,
    StoreContextConditions,
    CompositeConditions,
    TriggerConditions,
    ActivationRecord,
    ActivationStats,
    Trigger,
    FrequencyHarmonizer,
    PriorityWeight,
    AnalyticsBucket,
)

__all__ = [
    # Questions
    'Question',
    'FrequencyWindow',

    # Triggers
    'TriggerType',
    'TriggerPriority',
    'TimeWindow',
    'TimeBasedConditions',
    'FrequencyBasedConditions',
    'CustomerBehaviorConditions',
    'StoreContextConditions',
    'CompositeConditions',
    'TriggerConditions',
    'ActivationRecord',
    'ActivationStats',
    'Trigger',

    # Business rules
    'ResolutionMethod',
    'FrequencyHarmonizer',
    'PriorityWeight',

    # Analytics
    'AnalyticsBucket',
]
