"""Domain models for business feedback questions and their selection rules.

Questions, triggers, frequency harmonizers and priority weights are created by
business configuration outside this service. The engine reads them, and only
mutates the counters it owns (window counts, activation history,
harmonizer effectiveness).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FrequencyWindow(str, Enum):
    """Time window over which a question's presentations are counted."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TriggerType(str, Enum):
    """Trigger strategies."""
    TIME_BASED = "time_based"
    FREQUENCY_BASED = "frequency_based"
    CUSTOMER_BEHAVIOR = "customer_behavior"
    STORE_CONTEXT = "store_context"
    COMPOSITE = "composite"


class TriggerPriority(str, Enum):
    """Tie-break tag used when two triggers report the same confidence."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolutionMethod(str, Enum):
    """Resolution method configured on a business frequency harmonizer."""
    LCM_FREQUENCY = "lcm_frequency"
    BUSINESS_OVERRIDE = "business_override"
    PRIORITY_BASED = "priority_based"
    TIME_SPACING = "time_spacing"


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

class Question(BaseModel):
    """A feedback prompt owned by a business.

    ``frequency_window`` is kept as a plain string: unsupported values are
    rejected by the frequency tracker with a ConfigurationError when the
    window is computed, not at load time.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1)
    business_id: str
    text: str
    category: str = "general"
    topic_category: str = "general"
    priority_level: int = Field(3, ge=1, le=5)
    frequency_target: int = Field(100, ge=0)
    frequency_window: str = FrequencyWindow.DAILY.value
    frequency_current: int = Field(0, ge=0)
    frequency_reset_at: Optional[datetime] = None
    last_presented_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    is_active: bool = True
    business_rules: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("frequency_window", mode="before")
    @classmethod
    def _window_to_str(cls, value: Any) -> Any:
        if isinstance(value, FrequencyWindow):
            return value.value
        return value

    @property
    def window_anchor(self) -> datetime:
        """Timestamp the current counting window is computed from."""
        return self.frequency_reset_at or self.created_at


# ---------------------------------------------------------------------------
# Trigger conditions: one variant per trigger type
# ---------------------------------------------------------------------------

class TimeWindow(BaseModel):
    """Clock window in HH:MM form, both bounds inclusive."""
    start: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")
    end: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")

    @staticmethod
    def to_minutes(clock: str) -> int:
        hours, minutes = clock.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def start_minutes(self) -> int:
        return self.to_minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return self.to_minutes(self.end)


class TimeBasedConditions(BaseModel):
    trigger_type: Literal["time_based"] = "time_based"
    # 0 = Sunday ... 6 = Saturday
    days_of_week: Optional[List[int]] = None
    hour_start: Optional[int] = Field(None, ge=0, le=23)
    hour_end: Optional[int] = Field(None, ge=0, le=23)
    time_windows: Optional[List[TimeWindow]] = None

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is not None and any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        return value


class FrequencyBasedConditions(BaseModel):
    trigger_type: Literal["frequency_based"] = "frequency_based"
    min_visits: Optional[int] = Field(None, ge=0)


class CustomerBehaviorConditions(BaseModel):
    trigger_type: Literal["customer_behavior"] = "customer_behavior"
    min_session_duration: Optional[float] = Field(None, ge=0)
    device_types: Optional[List[str]] = None
    rating_threshold: Optional[float] = None


class StoreContextConditions(BaseModel):
    trigger_type: Literal["store_context"] = "store_context"
    occupancy_threshold: Optional[float] = None
    peak_hours_only: bool = False
    required_events: Optional[List[str]] = None


class CompositeConditions(BaseModel):
    trigger_type: Literal["composite"] = "composite"
    condition_tree: Dict[str, Any] = Field(default_factory=dict)


TriggerConditions = Annotated[
    Union[
        TimeBasedConditions,
        FrequencyBasedConditions,
        CustomerBehaviorConditions,
        StoreContextConditions,
        CompositeConditions,
    ],
    Field(discriminator="trigger_type"),
]


class ActivationRecord(BaseModel):
    """One past firing of a trigger."""
    activated_at: datetime
    evaluation_time_ms: float = 0.0
    context_summary: Dict[str, Any] = Field(default_factory=dict)


class ActivationStats(BaseModel):
    """Gate inputs read from the activation log at evaluation time."""
    activation_count: int = 0
    last_activated_at: Optional[datetime] = None


class Trigger(BaseModel):
    """A rule attached to a question deciding when it may be asked."""

    id: str = Field(..., min_length=1)
    question_id: str
    business_id: Optional[str] = None
    conditions: TriggerConditions
    priority: TriggerPriority = TriggerPriority.MEDIUM
    is_enabled: bool = True
    cooldown_minutes: int = Field(0, ge=0)
    max_activations: Optional[int] = Field(None, ge=0)
    activation_history: List[ActivationRecord] = Field(default_factory=list)

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType(self.conditions.trigger_type)


# ---------------------------------------------------------------------------
# Business-scoped harmonization and weighting rules
# ---------------------------------------------------------------------------

class FrequencyHarmonizer(BaseModel):
    """Business rule consulted by the business_override harmonization strategy."""

    id: str
    business_id: str
    name: str
    rule_pattern: str
    resolution_method: ResolutionMethod = ResolutionMethod.BUSINESS_OVERRIDE
    override_frequency: float = 1.0
    conflict_threshold: float = 0.8
    business_overrides: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    effectiveness_score: float = 0.0
    conflicts_resolved: int = 0

    def matches(self, category: str, topic_category: str) -> bool:
        """Substring match of the rule pattern against category or topic."""
        return bool(
            (category and category in self.rule_pattern)
            or (topic_category and topic_category in self.rule_pattern)
        )


class PriorityWeight(BaseModel):
    """Per-category multiplier applied by the business_priority strategy."""

    id: str
    business_id: str
    category: str
    weight_factor: float = 1.0
    adjustment_rules: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

class AnalyticsBucket(BaseModel):
    """Presentation/response totals for one time period."""
    period_start: datetime
    presentation_count: int = 0
    response_count: int = 0
    average_rating: Optional[float] = None
