"""
ConflictHarmonizer: detects and resolves frequency conflicts across a batch.

Detection runs three independent passes over the batch and unions the
results:

- frequency overlap: two questions of the same topic (or category, when the
  topic is empty) whose frequencies are within a factor of 2 of each other
- timing collision: projected next presentations less than an hour apart
- priority conflict: a high-priority question running below half its target

Resolution is chosen per call (lcm_frequency, business_override, adaptive)
and applied to each question against its own conflicts only.
"""

import logging
import math
import random
import time
import uuid
from datetime import datetime, timedelta
from functools import reduce
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from src.lib.exceptions import ConfigurationError, NotFoundError, QuestionLogicError, ValidationError
from src.lib.question_logic.repository import QuestionLogicRepository
from src.lib.question_logic.settings import HarmonizationSettings, QuestionLogicSettings, load_settings
from src.lib.ttl_cache import Clock, utc_now
from src.models.question_logic import FrequencyHarmonizer, ResolutionMethod
from src.schemas.question_logic import (
    ConflictSeverity,
    ConflictType,
    FrequencyConflict,
    HarmonizationMetadata,
    HarmonizationOptions,
    HarmonizationResult,
    HarmonizationStrategy,
    HarmonizedQuestion,
    QuestionForHarmonization,
)

logger = logging.getLogger(__name__)

HARMONIZER_UPDATABLE_FIELDS = (
    "name",
    "rule_pattern",
    "resolution_method",
    "override_frequency",
    "conflict_threshold",
    "business_overrides",
    "is_active",
)


def integer_lcm(values: Iterable[float]) -> int:
    """Least common multiple of the values, each rounded to the nearest integer first."""
    return reduce(lambda acc, value: acc * value // math.gcd(acc, value), (round(v) for v in values), 1)


def next_presentation(last_presented: datetime, frequency: float) -> Optional[datetime]:
    """Project the next presentation, treating frequency as occurrences per day.

    Returns None when the rate is too low for the projection to fit a datetime.
    """
    try:
        return last_presented + timedelta(hours=24 / frequency)
    except OverflowError:
        return None


class _Resolution:
    """Outcome of resolving one question's conflicts."""

    def __init__(self, frequency: float, reason: str):
        self.frequency = frequency
        self.reason = reason
        self.resolved: List[FrequencyConflict] = []
        self.unresolved: List[FrequencyConflict] = []


class ConflictHarmonizer:
    """Frequency harmonization for the questions of one business."""

    def __init__(
        self,
        repository: QuestionLogicRepository,
        business_id: str,
        settings: Optional[QuestionLogicSettings] = None,
        clock: Optional[Clock] = None,
    ):
        if not business_id:
            raise ValidationError("Business ID is required", details={"field": "business_id"})
        self.repository = repository
        self.business_id = business_id
        self.settings = settings or load_settings()
        self._clock = clock or utc_now

    @property
    def _config(self) -> HarmonizationSettings:
        return self.settings.harmonization

    def default_options(self) -> HarmonizationOptions:
        return HarmonizationOptions(
            strategy=self._config.default_strategy,
            max_frequency_ratio=self._config.max_frequency_ratio,
            min_frequency_interval=self._config.min_frequency_interval,
        )

    # ------------------------------------------------------------------
    # Harmonization
    # ------------------------------------------------------------------

    def harmonize_frequencies(
        self,
        questions: Sequence[Union[QuestionForHarmonization, Dict[str, Any]]],
        rule_id: Optional[str] = None,
        options: Optional[Union[HarmonizationOptions, Dict[str, Any]]] = None,
    ) -> HarmonizationResult:
        """Detect conflicts across the batch and rewrite effective frequencies.

        Args:
            questions: Candidate questions with current and target frequencies
            rule_id: Combination rule the batch belongs to, for logging
            options: Strategy and tuning; defaults come from settings

        Returns:
            HarmonizationResult with per-question frequencies and conflicts

        Raises:
            ValidationError: If a question or the options are malformed
            ConfigurationError: If the strategy is unknown
        """
        started = time.perf_counter()
        batch = self._coerce_questions(questions)
        options = self._coerce_options(options)
        strategy = self._parse_strategy(options.strategy)

        try:
            harmonizers = []
            if strategy is HarmonizationStrategy.BUSINESS_OVERRIDE:
                harmonizers = self.repository.list_harmonizers(self.business_id, active_only=True)
        except Exception as e:
            logger.error(
                "Frequency harmonization failed: %s", e,
                exc_info=True,
                extra={"business_id": self.business_id, "rule_id": rule_id, "total_questions": len(batch)},
            )
            raise

        conflicts = self.detect_conflicts(batch)
        by_question: Dict[str, List[FrequencyConflict]] = {}
        for conflict in conflicts:
            by_question.setdefault(conflict.question_id, []).append(conflict)

        harmonized: List[HarmonizedQuestion] = []
        resolved: List[FrequencyConflict] = []
        unresolvable: List[FrequencyConflict] = []
        methods: Dict[str, int] = {}

        for question in batch:
            own = by_question.get(question.question_id, [])
            if not own:
                resolution = _Resolution(question.current_frequency, "No conflicts detected")
            else:
                resolution = self._resolve(strategy, question, own, harmonizers, options)

            for conflict in resolution.resolved:
                methods[conflict.resolution_strategy] = methods.get(conflict.resolution_strategy, 0) + 1
            resolved.extend(resolution.resolved)
            unresolvable.extend(resolution.unresolved)

            next_time = None
            if question.last_presented_at is not None and resolution.frequency > 0:
                next_time = next_presentation(question.last_presented_at, resolution.frequency)

            harmonized.append(HarmonizedQuestion(
                question_id=question.question_id,
                text=question.text,
                original_frequency=question.current_frequency,
                harmonized_frequency=resolution.frequency,
                harmonization_reason=resolution.reason,
                conflicts_resolved=len(resolution.resolved),
                next_presentation_time=next_time,
            ))

        average_ratio = (
            sum(h.harmonized_frequency / h.original_frequency for h in harmonized) / len(harmonized)
            if harmonized else 1.0
        )
        processing_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "Frequency harmonization completed",
            extra={
                "business_id": self.business_id,
                "rule_id": rule_id,
                "strategy": strategy.value,
                "total_questions": len(batch),
                "total_conflicts": len(conflicts),
                "resolved_conflicts": len(resolved),
                "processing_time_ms": round(processing_ms, 2),
            },
        )

        return HarmonizationResult(
            harmonized_questions=harmonized,
            resolved_conflicts=resolved,
            unresolvable_conflicts=unresolvable,
            metadata=HarmonizationMetadata(
                total_questions=len(batch),
                total_conflicts=len(conflicts),
                resolution_methods=methods,
                average_harmonization_ratio=average_ratio,
                processing_time_ms=processing_ms,
            ),
        )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_conflicts(self, questions: Sequence[QuestionForHarmonization]) -> List[FrequencyConflict]:
        """Run the overlap, timing and priority passes and union their results."""
        return (
            self._detect_overlaps(questions)
            + self._detect_timing_collisions(questions)
            + self._detect_priority_conflicts(questions)
        )

    def _detect_overlaps(self, questions: Sequence[QuestionForHarmonization]) -> List[FrequencyConflict]:
        groups: Dict[str, List[QuestionForHarmonization]] = {}
        for question in questions:
            groups.setdefault(question.topic_category or question.category, []).append(question)

        conflicts = []
        for members in groups.values():
            for i, first in enumerate(members):
                for second in members[i + 1:]:
                    high = max(first.current_frequency, second.current_frequency)
                    low = min(first.current_frequency, second.current_frequency)
                    ratio = high / low
                    if ratio >= self._config.overlap_ratio:
                        continue
                    severity = (
                        ConflictSeverity.HIGH if ratio < self._config.high_severity_ratio
                        else ConflictSeverity.MEDIUM
                    )
                    # Recorded for both sides so each question resolves its own copy.
                    for subject, other in ((first, second), (second, first)):
                        conflicts.append(FrequencyConflict(
                            question_id=subject.question_id,
                            text=subject.text,
                            conflict_type=ConflictType.FREQUENCY_OVERLAP,
                            conflicting_sources=[other.question_id],
                            severity=severity,
                            resolution_strategy=ResolutionMethod.LCM_FREQUENCY.value,
                        ))
        return conflicts

    def _detect_timing_collisions(self, questions: Sequence[QuestionForHarmonization]) -> List[FrequencyConflict]:
        window = timedelta(seconds=self._config.collision_window_seconds)
        projected: List[Tuple[QuestionForHarmonization, datetime]] = []
        for q in questions:
            if q.last_presented_at is None:
                continue
            scheduled = next_presentation(q.last_presented_at, q.current_frequency)
            if scheduled is not None:
                projected.append((q, scheduled))

        conflicts = []
        for question, scheduled in projected:
            colliding = [
                other.question_id
                for other, other_scheduled in projected
                if other.question_id != question.question_id and abs(scheduled - other_scheduled) < window
            ]
            if colliding:
                conflicts.append(FrequencyConflict(
                    question_id=question.question_id,
                    text=question.text,
                    conflict_type=ConflictType.TIMING_COLLISION,
                    conflicting_sources=colliding,
                    severity=ConflictSeverity.HIGH if len(colliding) > 2 else ConflictSeverity.MEDIUM,
                    resolution_strategy=ResolutionMethod.TIME_SPACING.value,
                ))
        return conflicts

    def _detect_priority_conflicts(self, questions: Sequence[QuestionForHarmonization]) -> List[FrequencyConflict]:
        return [
            FrequencyConflict(
                question_id=q.question_id,
                text=q.text,
                conflict_type=ConflictType.PRIORITY_CONFLICT,
                conflicting_sources=[],
                severity=ConflictSeverity.HIGH,
                resolution_strategy=ResolutionMethod.PRIORITY_BASED.value,
            )
            for q in questions
            if q.priority_level >= self._config.high_priority_level
            and q.current_frequency < q.target_frequency * 0.5
        ]

    # ------------------------------------------------------------------
    # Resolution strategies
    # ------------------------------------------------------------------

    def _resolve(
        self,
        strategy: HarmonizationStrategy,
        question: QuestionForHarmonization,
        conflicts: List[FrequencyConflict],
        harmonizers: List[FrequencyHarmonizer],
        options: HarmonizationOptions,
    ) -> _Resolution:
        """Apply the strategy to one question; a failure leaves its conflicts unresolved."""
        try:
            if strategy is HarmonizationStrategy.LCM_FREQUENCY:
                return self._resolve_lcm(question, conflicts)
            if strategy is HarmonizationStrategy.BUSINESS_OVERRIDE:
                return self._resolve_business_override(question, conflicts, harmonizers, options)
            return self._resolve_adaptive(question, conflicts, options)
        except Exception as e:
            logger.error(
                "Harmonization of question %s failed: %s", question.question_id, e,
                exc_info=True,
                extra={
                    "business_id": self.business_id,
                    "question_id": question.question_id,
                    "strategy": strategy.value,
                },
            )
            resolution = _Resolution(question.current_frequency, f"Resolution error: {e}")
            resolution.unresolved = list(conflicts)
            return resolution

    def _resolve_lcm(
        self,
        question: QuestionForHarmonization,
        conflicts: List[FrequencyConflict],
    ) -> _Resolution:
        overlaps = [c for c in conflicts if c.conflict_type is ConflictType.FREQUENCY_OVERLAP]
        resolution = _Resolution(question.current_frequency, "No frequency overlaps to align")
        resolution.unresolved = [c for c in conflicts if c.conflict_type is not ConflictType.FREQUENCY_OVERLAP]
        if not overlaps:
            return resolution

        unique = sorted({round(question.current_frequency), round(question.target_frequency)})
        aligned = integer_lcm(unique)
        if aligned == question.current_frequency:
            # Already on the common multiple: nothing to resolve, nothing left open.
            resolution.reason = "Frequencies already aligned"
            return resolution

        resolution.frequency = aligned
        resolution.reason = f"LCM harmonization of frequencies: {', '.join(str(v) for v in unique)}"
        resolution.resolved = overlaps
        return resolution

    def _resolve_business_override(
        self,
        question: QuestionForHarmonization,
        conflicts: List[FrequencyConflict],
        harmonizers: List[FrequencyHarmonizer],
        options: HarmonizationOptions,
    ) -> _Resolution:
        applicable = next(
            (h for h in harmonizers if h.matches(question.category, question.topic_category)),
            None,
        )
        if applicable is not None:
            resolution = _Resolution(applicable.override_frequency, f"Business override: {applicable.name}")
            resolution.resolved = list(conflicts)
            return resolution

        if options.preserve_high_priority and question.priority_level >= self._config.high_priority_level:
            resolution = _Resolution(
                max(question.current_frequency, question.target_frequency),
                "High priority question - frequency preserved",
            )
            resolution.resolved = [c for c in conflicts if c.conflict_type is ConflictType.PRIORITY_CONFLICT]
            resolution.unresolved = [c for c in conflicts if c.conflict_type is not ConflictType.PRIORITY_CONFLICT]
            return resolution

        resolution = _Resolution(question.current_frequency, "Business priority maintained")
        resolution.unresolved = list(conflicts)
        return resolution

    def _resolve_adaptive(
        self,
        question: QuestionForHarmonization,
        conflicts: List[FrequencyConflict],
        options: HarmonizationOptions,
    ) -> _Resolution:
        frequency = question.current_frequency
        reasons = []
        resolution = _Resolution(frequency, "")

        overlaps = [c for c in conflicts if c.conflict_type is ConflictType.FREQUENCY_OVERLAP]
        if overlaps:
            frequency = round(frequency * options.max_frequency_ratio)
            reasons.append("Adaptive frequency smoothing applied")
            resolution.resolved.extend(overlaps)

        collisions = [c for c in conflicts if c.conflict_type is ConflictType.TIMING_COLLISION]
        if collisions:
            if frequency < options.min_frequency_interval:
                frequency = options.min_frequency_interval
                reasons.append("Minimum interval spacing applied")
                resolution.resolved.extend(collisions)
            else:
                resolution.unresolved.extend(collisions)

        priority = [c for c in conflicts if c.conflict_type is ConflictType.PRIORITY_CONFLICT]
        if priority:
            frequency = round(frequency * (1 + question.priority_level / 5))
            reasons.append("Priority-based frequency boost")
            resolution.resolved.extend(priority)

        resolution.frequency = frequency
        resolution.reason = (
            f"Adaptive harmonization: {', '.join(reasons)}" if reasons else "No adaptive changes needed"
        )
        return resolution

    # ------------------------------------------------------------------
    # Harmonizer administration
    # ------------------------------------------------------------------

    def create_harmonizer(
        self,
        name: str,
        rule_pattern: str,
        resolution_method: Union[ResolutionMethod, str],
        override_frequency: float = 1.0,
        conflict_threshold: float = 0.8,
        business_overrides: Optional[Dict[str, Any]] = None,
    ) -> FrequencyHarmonizer:
        """Create an active harmonizer rule for this business."""
        if not name or not rule_pattern:
            raise ValidationError("Harmonizer name and rule pattern are required")
        harmonizer = FrequencyHarmonizer(
            id=str(uuid.uuid4()),
            business_id=self.business_id,
            name=name,
            rule_pattern=rule_pattern,
            resolution_method=self._parse_resolution_method(resolution_method),
            override_frequency=override_frequency,
            conflict_threshold=conflict_threshold,
            business_overrides=business_overrides or {},
        )
        saved = self.repository.save_harmonizer(harmonizer)
        logger.info(
            "Created frequency harmonizer %s", saved.id,
            extra={"business_id": self.business_id, "harmonizer_id": saved.id, "rule_pattern": rule_pattern},
        )
        return saved

    def update_harmonizer(self, harmonizer_id: str, **updates: Any) -> FrequencyHarmonizer:
        """Apply a partial update to one of this business's harmonizers.

        Raises:
            ValidationError: If no updatable field is given or a value is invalid
            NotFoundError: If the harmonizer does not exist for this business
        """
        fields = {k: v for k, v in updates.items() if k in HARMONIZER_UPDATABLE_FIELDS and v is not None}
        if not fields:
            raise ValidationError(
                "No harmonizer updates provided", details={"harmonizer_id": harmonizer_id}
            )

        existing = self.repository.get_harmonizer(harmonizer_id)
        if existing is None or existing.business_id != self.business_id:
            raise NotFoundError(
                f"Frequency harmonizer {harmonizer_id} not found",
                entity="frequency_harmonizer",
                entity_id=harmonizer_id,
            )
        if "resolution_method" in fields:
            fields["resolution_method"] = self._parse_resolution_method(fields["resolution_method"])

        try:
            updated = FrequencyHarmonizer.model_validate({**existing.model_dump(), **fields})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid harmonizer update: {e}") from e
        return self.repository.save_harmonizer(updated)

    def update_effectiveness(
        self, harmonizer_id: str, effectiveness_score: float, conflicts_resolved: int
    ) -> FrequencyHarmonizer:
        """Record the outcome of harmonization runs that used this harmonizer."""
        try:
            harmonizer = self.repository.update_harmonizer_effectiveness(
                harmonizer_id, effectiveness_score, conflicts_resolved
            )
        except QuestionLogicError:
            raise
        except Exception:
            logger.error(
                "Failed to update effectiveness of harmonizer %s", harmonizer_id,
                exc_info=True, extra={"business_id": self.business_id, "harmonizer_id": harmonizer_id},
            )
            raise

        logger.info(
            "Harmonizer effectiveness updated",
            extra={
                "business_id": self.business_id,
                "harmonizer_id": harmonizer_id,
                "effectiveness_score": effectiveness_score,
                "conflicts_resolved": conflicts_resolved,
            },
        )
        return harmonizer

    def validate_performance_requirement(self, seed: int = 7) -> bool:
        """Harmonize a seeded 30-question sample and check it meets the time budget."""
        rng = random.Random(seed)
        now = self._clock()
        sample = [
            QuestionForHarmonization(
                question_id=f"sample-{i}",
                text=f"Sample question {i}",
                current_frequency=rng.randint(1, 10),
                target_frequency=rng.randint(1, 10),
                category=("service", "product", "experience")[i % 3],
                topic_category=("checkout", "quality", "delivery")[i % 3],
                priority_level=rng.randint(1, 5),
                last_presented_at=now - timedelta(seconds=rng.uniform(0, 86400)),
            )
            for i in range(self._config.performance_sample_size)
        ]

        started = time.perf_counter()
        try:
            self.harmonize_frequencies(sample, rule_id="performance-check")
        except QuestionLogicError:
            logger.warning("Harmonization performance check failed", exc_info=True)
            return False
        elapsed_ms = (time.perf_counter() - started) * 1000
        return elapsed_ms < self._config.performance_budget_ms

    # ------------------------------------------------------------------
    # Input coercion
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_questions(
        questions: Sequence[Union[QuestionForHarmonization, Dict[str, Any]]]
    ) -> List[QuestionForHarmonization]:
        try:
            return [
                q if isinstance(q, QuestionForHarmonization) else QuestionForHarmonization.model_validate(q)
                for q in questions
            ]
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid question for harmonization: {e}") from e

    def _coerce_options(
        self, options: Optional[Union[HarmonizationOptions, Dict[str, Any]]]
    ) -> HarmonizationOptions:
        if isinstance(options, HarmonizationOptions):
            return options
        merged = self.default_options().model_dump()
        merged.update(options or {})
        try:
            return HarmonizationOptions.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid harmonization options: {e}") from e

    @staticmethod
    def _parse_strategy(value: str) -> HarmonizationStrategy:
        try:
            return HarmonizationStrategy(value)
        except ValueError:
            raise ConfigurationError(
                f"Unknown harmonization strategy: {value}", details={"strategy": value}
            )

    @staticmethod
    def _parse_resolution_method(value: Union[ResolutionMethod, str]) -> ResolutionMethod:
        try:
            return ResolutionMethod(value)
        except ValueError:
            raise ConfigurationError(
                f"Unknown resolution method: {value}", details={"resolution_method": value}
            )
