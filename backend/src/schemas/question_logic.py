"""Pydantic schemas exchanged between callers and the question logic engine."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from src.models.question_logic import FrequencyWindow


# ---------------------------------------------------------------------------
# Frequency tracking
# ---------------------------------------------------------------------------

class FrequencyStatus(BaseModel):
    """Presentation budget of a question in its current window."""
    question_id: str
    current_count: int
    target_count: int
    window_type: str
    window_start: datetime
    window_end: datetime
    next_reset: datetime
    presentations_remaining: int
    cooldown_remaining_minutes: int = 0
    can_present: bool
    adaptive_adjustment: Optional[float] = None


class FrequencyConfigUpdate(BaseModel):
    """Partial frequency configuration; at least one field must be set."""
    target: Optional[int] = Field(None, ge=0)
    window: Optional[FrequencyWindow] = None


class AdaptiveBehaviorConfig(BaseModel):
    """Bounds and sensitivity of adaptive frequency adjustment.

    ``response_rate_threshold`` is a percentage (0-100); ``rating_threshold``
    is on the 1-5 rating scale.
    """
    min_multiplier: float = 0.5
    max_multiplier: float = 2.0
    response_rate_threshold: float = 30.0
    rating_threshold: float = 3.0
    adjustment_sensitivity: float = 0.1

    @model_validator(mode="after")
    def _check_bounds(self) -> "AdaptiveBehaviorConfig":
        if self.min_multiplier > self.max_multiplier:
            raise ValueError("min_multiplier must not exceed max_multiplier")
        return self


class AdaptiveAdjustmentResult(BaseModel):
    applied: bool
    multiplier: float
    reason: str
    old_target: Optional[int] = None
    new_target: Optional[int] = None


class FrequencyTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class FrequencyAnalytics(BaseModel):
    """Per-period presentation analytics of a question."""
    question_id: str
    period_type: str
    period_start: Optional[datetime] = None
    presentations: int
    responses: int
    response_rate: float  # percent
    average_rating: Optional[float] = None
    trend: FrequencyTrend = FrequencyTrend.STABLE
    effectiveness_score: int = Field(..., ge=0, le=100)


class FrequencyRecommendation(BaseModel):
    type: str  # frequency | window | cooldown
    current_value: Any
    recommended_value: Any
    reason: str
    impact: str  # low | medium | high


class FrequencyRecommendationReport(BaseModel):
    question_id: str
    current_target: int
    current_window: str
    recommendations: List[FrequencyRecommendation] = []
    overall_score: int


# ---------------------------------------------------------------------------
# Trigger evaluation
# ---------------------------------------------------------------------------

class TimeContext(BaseModel):
    """Clock facts for an evaluation. day_of_week: 0 = Sunday ... 6 = Saturday."""
    current_time: datetime
    day_of_week: int = Field(..., ge=0, le=6)
    hour: int = Field(..., ge=0, le=23)
    minute: int = Field(..., ge=0, le=59)
    timezone: Optional[str] = None

    @classmethod
    def from_datetime(cls, moment: datetime, timezone: Optional[str] = None) -> "TimeContext":
        """Build a time context from a datetime in the store's local time."""
        return cls(
            current_time=moment,
            day_of_week=(moment.weekday() + 1) % 7,
            hour=moment.hour,
            minute=moment.minute,
            timezone=timezone,
        )


class CustomerData(BaseModel):
    session_id: Optional[str] = None
    visit_count: Optional[int] = None
    previous_ratings: Optional[List[float]] = None
    demographics: Dict[str, Any] = Field(default_factory=dict)


class StoreData(BaseModel):
    store_id: str
    store_name: Optional[str] = None
    current_occupancy: Optional[float] = None
    peak_hours: Optional[bool] = None
    special_events: Optional[List[str]] = None


class SessionData(BaseModel):
    duration_minutes: Optional[float] = None
    pages_visited: List[str] = Field(default_factory=list)
    interactions: Dict[str, Any] = Field(default_factory=dict)
    device_type: Optional[str] = None  # mobile | desktop | tablet


class BusinessData(BaseModel):
    business_id: str
    subscription_tier: Optional[str] = None
    feature_flags: Dict[str, bool] = Field(default_factory=dict)


class TriggerEvaluationContext(BaseModel):
    """Runtime facts a trigger is scored against."""
    time_context: TimeContext
    customer_data: Optional[CustomerData] = None
    store_data: Optional[StoreData] = None
    session_data: Optional[SessionData] = None
    business_data: Optional[BusinessData] = None

    def summary(self) -> Dict[str, Any]:
        """Condensed form stored with activation records."""
        return {
            "time": self.time_context.current_time.isoformat(),
            "store_id": self.store_data.store_id if self.store_data else None,
            "customer_session": self.customer_data.session_id if self.customer_data else None,
        }


class TriggerEvaluationResult(BaseModel):
    triggered: bool
    trigger_id: Optional[str] = None
    # Not capped at 1.0: the customer-behavior boost may exceed it.
    confidence: float = Field(0.0, ge=0.0)
    reason: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TriggerPerformanceMetrics(BaseModel):
    trigger_id: str
    total_evaluations: int
    total_activations: int
    activation_rate: float
    average_evaluation_time_ms: float
    last_activated: Optional[datetime] = None
    cooldown_remaining_minutes: float = 0.0


# ---------------------------------------------------------------------------
# Frequency harmonization
# ---------------------------------------------------------------------------

class HarmonizationStrategy(str, Enum):
    """Conflict resolution strategy selected per harmonization run."""
    LCM_FREQUENCY = "lcm_frequency"
    BUSINESS_OVERRIDE = "business_override"
    ADAPTIVE = "adaptive"

    @classmethod
    def _missing_(cls, value: object) -> Optional["HarmonizationStrategy"]:
        aliases = {"lcm": cls.LCM_FREQUENCY, "business_priority": cls.BUSINESS_OVERRIDE}
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


class ConflictType(str, Enum):
    FREQUENCY_OVERLAP = "frequency_overlap"
    TIMING_COLLISION = "timing_collision"
    PRIORITY_CONFLICT = "priority_conflict"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QuestionForHarmonization(BaseModel):
    question_id: str = Field(..., min_length=1)
    text: str = ""
    current_frequency: float = Field(..., gt=0)
    target_frequency: float = Field(..., gt=0)
    category: str = ""
    topic_category: str = ""
    priority_level: int = Field(3, ge=1, le=5)
    last_presented_at: Optional[datetime] = None
    business_rules: Dict[str, Any] = Field(default_factory=dict)


class HarmonizationOptions(BaseModel):
    # Kept as str so unknown strategies surface as ConfigurationError from the harmonizer.
    strategy: str = HarmonizationStrategy.ADAPTIVE.value
    max_frequency_ratio: float = Field(2.0, gt=0)
    min_frequency_interval: float = Field(2, gt=0)
    preserve_high_priority: bool = False


class FrequencyConflict(BaseModel):
    """Tension between one question and the questions it conflicts with."""
    question_id: str
    text: str = ""
    conflict_type: ConflictType
    conflicting_sources: List[str] = []
    severity: ConflictSeverity
    resolution_strategy: str


class HarmonizedQuestion(BaseModel):
    question_id: str
    text: str = ""
    original_frequency: float
    harmonized_frequency: float
    harmonization_reason: str
    conflicts_resolved: int = 0
    next_presentation_time: Optional[datetime] = None


class HarmonizationMetadata(BaseModel):
    total_questions: int
    total_conflicts: int
    resolution_methods: Dict[str, int] = {}
    average_harmonization_ratio: float
    processing_time_ms: float = 0.0


class HarmonizationResult(BaseModel):
    harmonized_questions: List[HarmonizedQuestion]
    resolved_conflicts: List[FrequencyConflict] = []
    unresolvable_conflicts: List[FrequencyConflict] = []
    metadata: HarmonizationMetadata


# ---------------------------------------------------------------------------
# Priority balancing
# ---------------------------------------------------------------------------

class BalanceStrategy(str, Enum):
    EQUAL_DISTRIBUTION = "equal_distribution"
    WEIGHTED_URGENCY = "weighted_urgency"
    TIME_SENSITIVE = "time_sensitive"
    BUSINESS_PRIORITY = "business_priority"


class QuestionForBalancing(BaseModel):
    question_id: str = Field(..., min_length=1)
    text: str = ""
    category: str = ""
    topic_category: str = ""
    base_priority: float
    frequency_score: float = 0.0
    recency_score: float = 0.0
    business_importance: float = 0.0
    customer_relevance: float = 0.0
    estimated_duration: float = 0.0  # seconds


class BalanceConfig(BaseModel):
    # Kept as str so unknown strategies surface as ConfigurationError from the balancer.
    strategy: str = BalanceStrategy.BUSINESS_PRIORITY.value
    max_priority_level: int = 5
    min_priority_level: int = 1
    target_distribution: Optional[Dict[int, float]] = None
    urgency_multipliers: Optional[Dict[str, float]] = None
    time_sensitivity_thresholds: Optional[Dict[str, float]] = None

    @model_validator(mode="after")
    def _check_levels(self) -> "BalanceConfig":
        if self.min_priority_level > self.max_priority_level:
            raise ValueError("min_priority_level must not exceed max_priority_level")
        return self


class BalancedQuestion(BaseModel):
    question_id: str
    text: str = ""
    original_priority: float
    balanced_priority: int
    balance_reason: str
    weight_factor: float = 1.0
    priority_boost: float = 0.0
    estimated_duration: Optional[float] = None


class BalanceMetadata(BaseModel):
    total_questions: int
    priority_distribution: Dict[int, int] = {}
    balance_strategy: str
    average_priority: float = 0.0
    priority_spread: int = 0
    processing_time_ms: float = 0.0
    total_estimated_duration: Optional[float] = None


class PriorityBalanceResult(BaseModel):
    balanced_questions: List[BalancedQuestion]
    metadata: BalanceMetadata


class PriorityScore(BaseModel):
    """Output of the external priority scoring function."""
    final_priority: float
    adjusted_weight: float = 1.0


class BalanceAnalytics(BaseModel):
    business_id: str
    total_balance_operations: int = 0
    average_balance_time_ms: float = 0.0
    most_common_strategy: Optional[str] = None


# ---------------------------------------------------------------------------
# Selection pipeline
# ---------------------------------------------------------------------------

class SelectionStage(BaseModel):
    stage: str
    processing_time_ms: float
    questions_in: int
    questions_out: int


class SelectedQuestion(BaseModel):
    question_id: str
    text: str
    balanced_priority: int
    harmonized_frequency: Optional[float] = None
    trigger_id: Optional[str] = None
    trigger_confidence: float = 0.0


class QuestionSelectionResult(BaseModel):
    business_id: str
    selected: List[SelectedQuestion] = []
    excluded: Dict[str, str] = {}
    stages: List[SelectionStage] = []
    harmonization: Optional[HarmonizationResult] = None
    balancing: Optional[PriorityBalanceResult] = None
