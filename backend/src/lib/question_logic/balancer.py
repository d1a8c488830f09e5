"""
PriorityBalancer: final priority assignment and time-boxed selection.

Four strategies assign each candidate a balanced priority within the
configured level range:

- equal_distribution: rank by combined score and spread ranks evenly over levels
- weighted_urgency: frequency/recency urgency fed to a pluggable scorer
- time_sensitive: short questions get a boost from configured thresholds
- business_priority: per-category/topic weights, dampened for over-presented questions

optimize_for_time_constraint() additionally trims the balanced list so the
estimated speaking time fits a call's budget.
"""

import logging
import random
import time
import uuid
from collections import Counter
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from src.lib.exceptions import ConfigurationError, NotFoundError, ValidationError
from src.lib.question_logic.repository import QuestionLogicRepository
from src.lib.question_logic.settings import BalancingSettings, QuestionLogicSettings, load_settings
from src.models.question_logic import PriorityWeight
from src.schemas.question_logic import (
    BalanceAnalytics,
    BalanceConfig,
    BalancedQuestion,
    BalanceMetadata,
    BalanceStrategy,
    PriorityBalanceResult,
    PriorityScore,
    QuestionForBalancing,
)

logger = logging.getLogger(__name__)

# (base score, urgency, business importance, customer relevance) -> PriorityScore
PriorityScorer = Callable[[float, float, float, float], PriorityScore]

WEIGHT_UPDATABLE_FIELDS = ("weight_factor", "adjustment_rules", "is_active")


def default_priority_scorer(
    base_score: float, urgency: float, business_importance: float, customer_relevance: float
) -> PriorityScore:
    """Blend the four inputs into a final priority on the 1-5 scale."""
    final = (
        base_score * 0.4
        + urgency / 2 * 0.3
        + business_importance * 0.2
        + customer_relevance * 0.1
    )
    return PriorityScore(final_priority=final, adjusted_weight=1.0 + urgency / 20)


def estimate_duration(text: str, chars_per_second: float = 4.2, minimum: float = 15.0) -> float:
    """Seconds needed to ask a question, from its text length."""
    return max(minimum, len(text) / chars_per_second)


class PriorityBalancer:
    """Priority balancing for the questions of one business."""

    def __init__(
        self,
        repository: QuestionLogicRepository,
        business_id: str,
        settings: Optional[QuestionLogicSettings] = None,
        scorer: Optional[PriorityScorer] = None,
    ):
        if not business_id:
            raise ValidationError("Business ID is required", details={"field": "business_id"})
        self.repository = repository
        self.business_id = business_id
        self.settings = settings or load_settings()
        self.scorer = scorer or default_priority_scorer

        self._stats_lock = Lock()
        self._operations = 0
        self._total_time_ms = 0.0
        self._strategies: Counter = Counter()

        self._strategies_by_name = {
            BalanceStrategy.EQUAL_DISTRIBUTION: self._apply_equal_distribution,
            BalanceStrategy.WEIGHTED_URGENCY: self._apply_weighted_urgency,
            BalanceStrategy.TIME_SENSITIVE: self._apply_time_sensitive,
            BalanceStrategy.BUSINESS_PRIORITY: self._apply_business_priority,
        }

    @property
    def _config(self) -> BalancingSettings:
        return self.settings.balancing

    def default_config(self, strategy: BalanceStrategy = BalanceStrategy.BUSINESS_PRIORITY) -> BalanceConfig:
        return BalanceConfig(
            strategy=strategy.value,
            min_priority_level=self._config.min_priority_level,
            max_priority_level=self._config.max_priority_level,
            time_sensitivity_thresholds=self._config.time_sensitivity_thresholds,
        )

    # ------------------------------------------------------------------
    # Balancing
    # ------------------------------------------------------------------

    def balance_question_priorities(
        self,
        questions: Sequence[Union[QuestionForBalancing, Dict[str, Any]]],
        config: Optional[Union[BalanceConfig, Dict[str, Any]]] = None,
    ) -> PriorityBalanceResult:
        """Assign a balanced priority to every question.

        Raises:
            ValidationError: If a question or the config is malformed
            ConfigurationError: If the strategy is unknown
        """
        started = time.perf_counter()
        batch = self._coerce_questions(questions)
        config = self._coerce_config(config)
        strategy = self._parse_strategy(config.strategy)

        try:
            balanced = self._strategies_by_name[strategy](batch, config)
        except Exception as e:
            logger.error(
                "Priority balancing failed: %s", e,
                exc_info=True,
                extra={"business_id": self.business_id, "strategy": strategy.value, "total_questions": len(batch)},
            )
            raise

        processing_ms = (time.perf_counter() - started) * 1000
        metadata = self._build_metadata(balanced, strategy.value, processing_ms)
        self._track(strategy.value, processing_ms)

        logger.info(
            "Priority balancing completed",
            extra={
                "business_id": self.business_id,
                "strategy": strategy.value,
                "total_questions": len(batch),
                "average_priority": metadata.average_priority,
                "processing_time_ms": round(processing_ms, 2),
            },
        )
        return PriorityBalanceResult(balanced_questions=balanced, metadata=metadata)

    def _clamp(self, value: float, config: BalanceConfig) -> int:
        return int(min(config.max_priority_level, max(config.min_priority_level, round(value))))

    def _apply_equal_distribution(
        self, questions: List[QuestionForBalancing], config: BalanceConfig
    ) -> List[BalancedQuestion]:
        total = len(questions)
        levels = config.max_priority_level - config.min_priority_level + 1
        ranked = sorted(
            questions,
            key=lambda q: q.base_priority + q.customer_relevance + q.business_importance,
            reverse=True,
        )

        # Spread ranks so level sizes differ by at most one, largest levels on top.
        per_level, extra = divmod(total, levels)
        assigned_levels: List[int] = []
        for level_index in range(levels):
            size = per_level + (1 if level_index < extra else 0)
            assigned_levels.extend([config.max_priority_level - level_index] * size)

        balanced = []
        for index, (question, level) in enumerate(zip(ranked, assigned_levels)):
            balanced.append(BalancedQuestion(
                question_id=question.question_id,
                text=question.text,
                original_priority=question.base_priority,
                balanced_priority=level,
                balance_reason=f"Equal distribution - rank {index + 1} of {total}",
                weight_factor=1.0,
                priority_boost=level - question.base_priority,
            ))
        return balanced

    def _apply_weighted_urgency(
        self, questions: List[QuestionForBalancing], config: BalanceConfig
    ) -> List[BalancedQuestion]:
        multipliers = config.urgency_multipliers or {}
        balanced = []
        for question in questions:
            urgency = question.frequency_score * 0.4 + question.recency_score * 0.6
            urgency *= multipliers.get(question.category, 1.0)

            score = self.scorer(
                question.base_priority, urgency, question.business_importance, question.customer_relevance
            )
            level = self._clamp(score.final_priority, config)
            balanced.append(BalancedQuestion(
                question_id=question.question_id,
                text=question.text,
                original_priority=question.base_priority,
                balanced_priority=level,
                balance_reason=f"Weighted urgency - score: {urgency:.2f}",
                weight_factor=score.adjusted_weight,
                priority_boost=level - question.base_priority,
            ))
        return balanced

    def _apply_time_sensitive(
        self, questions: List[QuestionForBalancing], config: BalanceConfig
    ) -> List[BalancedQuestion]:
        thresholds = config.time_sensitivity_thresholds
        if thresholds is None:
            thresholds = self._config.time_sensitivity_thresholds

        balanced = []
        for question in questions:
            if question.estimated_duration <= 15:
                bucket = "short"
            elif question.estimated_duration <= 30:
                bucket = "medium"
            else:
                bucket = "long"
            boost = thresholds.get(bucket, 0.0)

            final = (
                question.base_priority
                + question.recency_score * 0.3
                + boost
                + question.business_importance * 0.2
            )
            level = self._clamp(final, config)
            balanced.append(BalancedQuestion(
                question_id=question.question_id,
                text=question.text,
                original_priority=question.base_priority,
                balanced_priority=level,
                balance_reason=f"Time-sensitive - boost: {boost:.1f}",
                weight_factor=1.0 + boost / 10,
                priority_boost=level - question.base_priority,
            ))
        return balanced

    def _apply_business_priority(
        self, questions: List[QuestionForBalancing], config: BalanceConfig
    ) -> List[BalancedQuestion]:
        weights = {
            weight.category: weight.weight_factor
            for weight in self.repository.list_priority_weights(self.business_id, active_only=True)
        }

        balanced = []
        for question in questions:
            # A zero weight counts as unset.
            category_weight = weights.get(question.category) or 1.0
            topic_weight = weights.get(question.topic_category) or 1.0

            score = (
                question.base_priority * 0.4
                + question.business_importance * category_weight * 0.3
                + question.customer_relevance * topic_weight * 0.3
            )
            # Over-presented questions lose up to half their score
            score *= max(0.5, 1.0 - question.frequency_score / 10)

            level = self._clamp(score, config)
            balanced.append(BalancedQuestion(
                question_id=question.question_id,
                text=question.text,
                original_priority=question.base_priority,
                balanced_priority=level,
                balance_reason=f"Business priority - weight: {category_weight:.2f}",
                weight_factor=category_weight,
                priority_boost=level - question.base_priority,
            ))
        return balanced

    @staticmethod
    def _build_metadata(
        balanced: List[BalancedQuestion], strategy: str, processing_ms: float
    ) -> BalanceMetadata:
        levels = [q.balanced_priority for q in balanced]
        return BalanceMetadata(
            total_questions=len(balanced),
            priority_distribution=dict(Counter(levels)),
            balance_strategy=strategy,
            average_priority=sum(levels) / len(levels) if levels else 0.0,
            priority_spread=max(levels) - min(levels) if levels else 0,
            processing_time_ms=processing_ms,
        )

    # ------------------------------------------------------------------
    # Time-boxed selection
    # ------------------------------------------------------------------

    def optimize_for_time_constraint(
        self,
        questions: Sequence[Union[QuestionForBalancing, Dict[str, Any]]],
        max_duration_seconds: float,
        priority_threshold: Optional[float] = None,
    ) -> PriorityBalanceResult:
        """Pick the highest-priority questions that fit in ``max_duration_seconds``.

        Questions below the priority threshold are dropped, the rest are
        balanced with the time_sensitive strategy and taken in descending
        balanced priority until the next one would overrun the budget.
        """
        if max_duration_seconds is None or max_duration_seconds < 0:
            raise ValidationError(
                "max_duration_seconds must be a non-negative number",
                details={"max_duration_seconds": max_duration_seconds},
            )
        if priority_threshold is None:
            priority_threshold = self._config.default_priority_threshold

        batch = self._coerce_questions(questions)
        eligible = [q for q in batch if q.base_priority >= priority_threshold]
        result = self.balance_question_priorities(
            eligible, self.default_config(BalanceStrategy.TIME_SENSITIVE)
        )

        ordered = sorted(result.balanced_questions, key=lambda q: q.balanced_priority, reverse=True)
        selected: List[BalancedQuestion] = []
        total_duration = 0.0
        for question in ordered:
            duration = estimate_duration(
                question.text, self._config.chars_per_second, self._config.min_question_seconds
            )
            if total_duration + duration > max_duration_seconds:
                break
            selected.append(question.model_copy(update={"estimated_duration": duration}))
            total_duration += duration

        metadata = self._build_metadata(
            selected,
            f"{BalanceStrategy.TIME_SENSITIVE.value}_with_time_constraint",
            result.metadata.processing_time_ms,
        )
        metadata.total_estimated_duration = total_duration

        logger.info(
            "Selected %d of %d questions for a %.0fs budget",
            len(selected), len(batch), max_duration_seconds,
            extra={
                "business_id": self.business_id,
                "eligible_questions": len(eligible),
                "total_estimated_duration": total_duration,
            },
        )
        return PriorityBalanceResult(balanced_questions=selected, metadata=metadata)

    # ------------------------------------------------------------------
    # Weight administration
    # ------------------------------------------------------------------

    def create_priority_weight(
        self,
        category: str,
        weight_factor: float = 1.0,
        adjustment_rules: Optional[Dict[str, Any]] = None,
    ) -> PriorityWeight:
        if not category:
            raise ValidationError("Category is required", details={"field": "category"})
        weight = PriorityWeight(
            id=str(uuid.uuid4()),
            business_id=self.business_id,
            category=category,
            weight_factor=weight_factor,
            adjustment_rules=adjustment_rules or {},
        )
        saved = self.repository.save_priority_weight(weight)
        logger.info(
            "Created priority weight for category %s", category,
            extra={"business_id": self.business_id, "weight_id": saved.id, "weight_factor": weight_factor},
        )
        return saved

    def update_priority_weight(self, weight_id: str, **updates: Any) -> PriorityWeight:
        """Partially update a priority weight.

        Raises:
            ValidationError: If no updatable field is given
            NotFoundError: If the weight does not exist for this business
        """
        fields = {k: v for k, v in updates.items() if k in WEIGHT_UPDATABLE_FIELDS and v is not None}
        if not fields:
            raise ValidationError("No priority weight updates provided", details={"weight_id": weight_id})

        existing = self.repository.get_priority_weight(weight_id)
        if existing is None or existing.business_id != self.business_id:
            raise NotFoundError(
                f"Priority weight {weight_id} not found", entity="priority_weight", entity_id=weight_id
            )
        try:
            updated = PriorityWeight.model_validate({**existing.model_dump(), **fields})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid priority weight update: {e}") from e
        return self.repository.save_priority_weight(updated)

    # ------------------------------------------------------------------
    # Analytics and self-checks
    # ------------------------------------------------------------------

    def _track(self, strategy: str, processing_ms: float) -> None:
        with self._stats_lock:
            self._operations += 1
            self._total_time_ms += processing_ms
            self._strategies[strategy] += 1

    def get_analytics(self) -> BalanceAnalytics:
        """Running totals of balancing calls made through this instance."""
        with self._stats_lock:
            most_common = self._strategies.most_common(1)
            return BalanceAnalytics(
                business_id=self.business_id,
                total_balance_operations=self._operations,
                average_balance_time_ms=self._total_time_ms / self._operations if self._operations else 0.0,
                most_common_strategy=most_common[0][0] if most_common else None,
            )

    def validate_performance_requirement(self, seed: int = 7) -> bool:
        """Balance a seeded 50-question sample and check it meets the time budget."""
        rng = random.Random(seed)
        sample = [
            QuestionForBalancing(
                question_id=f"sample-{i}",
                text=f"Sample question {i} with some descriptive text",
                category=("service", "product", "experience")[i % 3],
                topic_category=("checkout", "quality", "delivery")[i % 3],
                base_priority=rng.randint(1, 5),
                frequency_score=rng.uniform(0, 10),
                recency_score=rng.uniform(0, 10),
                business_importance=rng.uniform(0, 5),
                customer_relevance=rng.uniform(0, 5),
                estimated_duration=rng.randint(15, 54),
            )
            for i in range(self._config.performance_sample_size)
        ]

        started = time.perf_counter()
        try:
            self.balance_question_priorities(sample, self.default_config(BalanceStrategy.WEIGHTED_URGENCY))
        except (ValidationError, ConfigurationError):
            logger.warning("Balancing performance check failed", exc_info=True)
            return False
        elapsed_ms = (time.perf_counter() - started) * 1000
        return elapsed_ms < self._config.performance_budget_ms

    # ------------------------------------------------------------------
    # Input coercion
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_questions(
        questions: Sequence[Union[QuestionForBalancing, Dict[str, Any]]]
    ) -> List[QuestionForBalancing]:
        try:
            return [
                q if isinstance(q, QuestionForBalancing) else QuestionForBalancing.model_validate(q)
                for q in questions
            ]
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid question for balancing: {e}") from e

    def _coerce_config(self, config: Optional[Union[BalanceConfig, Dict[str, Any]]]) -> BalanceConfig:
        if isinstance(config, BalanceConfig):
            return config
        merged = self.default_config().model_dump()
        merged.update(config or {})
        try:
            return BalanceConfig.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid balance config: {e}") from e

    @staticmethod
    def _parse_strategy(value: str) -> BalanceStrategy:
        try:
            return BalanceStrategy(value)
        except ValueError:
            raise ConfigurationError(
                f"Unknown balancing strategy: {value}", details={"strategy": value}
            )
