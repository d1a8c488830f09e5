"""FrequencyTracker: per-question presentation budgets.

Owns the window counter of every question. Answers whether a question may
be shown now, records presentations through the repository's atomic
increment, resets windows when they roll over, and tunes targets from
response analytics.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from src.lib.exceptions import NotFoundError, PolicyViolation, QuestionLogicError, ValidationError
from src.lib.question_logic.repository import QuestionLogicRepository
from src.lib.question_logic.settings import FrequencySettings, QuestionLogicSettings, load_settings
from src.lib.question_logic.windows import compute_window_bounds
from src.lib.ttl_cache import Clock, TTLCache, utc_now
from src.models.question_logic import AnalyticsBucket, FrequencyWindow, Question
from src.schemas.question_logic import (
    AdaptiveAdjustmentResult,
    AdaptiveBehaviorConfig,
    FrequencyAnalytics,
    FrequencyConfigUpdate,
    FrequencyRecommendation,
    FrequencyRecommendationReport,
    FrequencyStatus,
    FrequencyTrend,
)

logger = logging.getLogger(__name__)


def _require_id(question_id: str) -> None:
    if not question_id:
        raise ValidationError("Question ID is required", details={"field": "question_id"})


def _response_rate(bucket: AnalyticsBucket) -> float:
    if bucket.presentation_count <= 0:
        return 0.0
    return bucket.response_count / bucket.presentation_count * 100


class FrequencyTracker:
    """Answers "can this question be shown now" and records presentations."""

    def __init__(
        self,
        repository: QuestionLogicRepository,
        settings: Optional[QuestionLogicSettings] = None,
        clock: Optional[Clock] = None,
        cache: Optional[TTLCache[FrequencyStatus]] = None,
    ):
        self.repository = repository
        self.settings = settings or load_settings()
        self._clock = clock or utc_now
        self._cache = cache or TTLCache(
            ttl=timedelta(seconds=self.settings.cache.frequency_ttl_seconds),
            max_entries=self.settings.cache.max_entries,
            clock=self._clock,
            name="frequency_status",
        )
        # Multiplier last applied by apply_adaptive_behavior, per question
        self._adaptive_adjustments: Dict[str, float] = {}

    @property
    def _frequency(self) -> FrequencySettings:
        return self.settings.frequency

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_frequency_status(self, question_id: str) -> FrequencyStatus:
        """Return the question's budget in its current window.

        Rolls the window over (count to 0, reset timestamp to now) when the
        computed next reset has passed.

        Raises:
            ValidationError: If question_id is empty
            NotFoundError: If the question does not exist
            ConfigurationError: If the question's window kind is unsupported
        """
        _require_id(question_id)

        cached = self._cache.get(question_id)
        if cached is not None and self._clock() < cached.next_reset:
            return cached

        question = self._load_question(question_id)
        status = self._calculate_status(question)
        self._cache.set(question_id, status)
        return status

    def can_present_question(self, question_id: str) -> bool:
        return self.get_frequency_status(question_id).can_present

    def _load_question(self, question_id: str) -> Question:
        question = self.repository.get_question(question_id)
        if question is None:
            raise NotFoundError(
                f"Question {question_id} not found", entity="question", entity_id=question_id
            )
        return question

    def _calculate_status(self, question: Question) -> FrequencyStatus:
        bounds = compute_window_bounds(question.window_anchor, question.frequency_window)

        now = self._clock()
        if now >= bounds.next_reset:
            question = self._reset(question.id, manual=False)
            bounds = compute_window_bounds(question.window_anchor, question.frequency_window)

        remaining = max(0, question.frequency_target - question.frequency_current)
        return FrequencyStatus(
            question_id=question.id,
            current_count=question.frequency_current,
            target_count=question.frequency_target,
            window_type=question.frequency_window,
            window_start=bounds.window_start,
            window_end=bounds.window_end,
            next_reset=bounds.next_reset,
            presentations_remaining=remaining,
            cooldown_remaining_minutes=0,
            can_present=remaining > 0,
            adaptive_adjustment=self._adaptive_adjustments.get(question.id),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_presentation(self, question_id: str) -> int:
        """Count one presentation of the question in its current window.

        Returns:
            The window count after the increment

        Raises:
            PolicyViolation: If the question's budget is exhausted
        """
        status = self.get_frequency_status(question_id)
        if not status.can_present:
            raise PolicyViolation(
                f"Question {question_id} cannot be presented due to frequency limits",
                details={
                    "question_id": question_id,
                    "current_count": status.current_count,
                    "target_count": status.target_count,
                    "next_reset": status.next_reset.isoformat(),
                },
            )

        now = self._clock()
        try:
            new_count = self.repository.increment_question_frequency(question_id, now)
        except QuestionLogicError:
            raise
        except Exception:
            logger.error(
                "Failed to record presentation for question %s", question_id,
                exc_info=True, extra={"question_id": question_id},
            )
            raise
        finally:
            self._cache.invalidate(question_id)

        logger.info(
            "Recorded presentation of question %s (%d/%d)",
            question_id, new_count, status.target_count,
            extra={"question_id": question_id, "current_count": new_count, "target_count": status.target_count},
        )
        return new_count

    def reset_frequency(self, question_id: str, manual: bool = False) -> Question:
        """Zero the window counter and start a new window at the current time."""
        _require_id(question_id)
        return self._reset(question_id, manual=manual)

    def _reset(self, question_id: str, manual: bool) -> Question:
        reset_at = self._clock()
        try:
            question = self.repository.reset_question_frequency(question_id, reset_at)
        except QuestionLogicError:
            raise
        except Exception:
            logger.error(
                "Failed to reset frequency for question %s", question_id,
                exc_info=True, extra={"question_id": question_id, "manual": manual},
            )
            raise
        finally:
            self._cache.invalidate(question_id)

        logger.info(
            "%s frequency reset for question %s",
            "Manual" if manual else "Automatic", question_id,
            extra={"question_id": question_id, "reset_type": "manual" if manual else "automatic"},
        )
        return question

    def update_frequency_config(
        self,
        question_id: str,
        config: Union[FrequencyConfigUpdate, Dict[str, Any]],
    ) -> Question:
        """Change a question's target and/or window.

        Raises:
            ValidationError: If no field is given or a value is invalid
        """
        _require_id(question_id)
        if isinstance(config, dict):
            try:
                config = FrequencyConfigUpdate.model_validate(config)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid frequency configuration: {e}", details={"question_id": question_id}
                ) from e

        fields: Dict[str, Any] = {}
        if config.target is not None:
            fields["frequency_target"] = config.target
        if config.window is not None:
            fields["frequency_window"] = FrequencyWindow(config.window).value

        if not fields:
            raise ValidationError(
                "No frequency configuration provided", details={"question_id": question_id}
            )

        try:
            question = self.repository.update_question(question_id, fields)
        finally:
            self._cache.invalidate(question_id)

        logger.info(
            "Updated frequency config for question %s", question_id,
            extra={"question_id": question_id, "changes": fields},
        )
        return question

    # ------------------------------------------------------------------
    # Analytics and adaptive tuning
    # ------------------------------------------------------------------

    def get_frequency_analytics(
        self,
        question_id: str,
        period_type: str = "daily",
        periods: int = 30,
    ) -> List[FrequencyAnalytics]:
        """Per-period response analytics, newest period first."""
        _require_id(question_id)
        buckets = self.repository.get_analytics_summary(question_id, period_type, periods)

        analytics = []
        for index, bucket in enumerate(buckets):
            presentations = bucket.presentation_count
            rate = _response_rate(bucket)

            trend = FrequencyTrend.STABLE
            if index < len(buckets) - 1:
                older = buckets[index + 1]
                current_score = presentations * rate
                older_score = older.presentation_count * _response_rate(older)
                if current_score > older_score * 1.1:
                    trend = FrequencyTrend.INCREASING
                elif current_score < older_score * 0.9:
                    trend = FrequencyTrend.DECREASING

            effectiveness = 0.0
            if presentations > 0:
                rating_component = (bucket.average_rating / 5 * 100) if bucket.average_rating else 50
                effectiveness = (
                    min(100.0, rate) * 0.4
                    + rating_component * 0.4
                    + min(100, presentations * 10) * 0.2
                )

            analytics.append(FrequencyAnalytics(
                question_id=question_id,
                period_type=period_type,
                period_start=bucket.period_start,
                presentations=presentations,
                responses=bucket.response_count,
                response_rate=rate,
                average_rating=bucket.average_rating,
                trend=trend,
                effectiveness_score=round(effectiveness),
            ))
        return analytics

    def apply_adaptive_behavior(
        self,
        question_id: str,
        config: Optional[Union[AdaptiveBehaviorConfig, Dict[str, Any]]] = None,
    ) -> AdaptiveAdjustmentResult:
        """Scale the frequency target from the last week of response data.

        Low response rates and low ratings shrink the target; response rates
        well above the threshold grow it. Small changes are ignored.
        """
        _require_id(question_id)
        config = self._adaptive_config(config)

        analytics = self.get_frequency_analytics(
            question_id, "daily", self._frequency.analytics_lookback_days
        )
        if not analytics:
            return AdaptiveAdjustmentResult(
                applied=False, multiplier=1.0, reason="No analytics data available"
            )

        total_presentations = sum(a.presentations for a in analytics)
        if total_presentations < self._frequency.min_presentations_for_adaptive:
            return AdaptiveAdjustmentResult(
                applied=False,
                multiplier=1.0,
                reason=f"Not applied: insufficient data ({total_presentations} presentations)",
            )

        avg_rate = sum(a.response_rate for a in analytics) / len(analytics)
        # Unrated periods count as 0, so a mostly-unrated week skips the rating rule.
        avg_rating = sum(a.average_rating or 0 for a in analytics) / len(analytics)

        multiplier = 1.0
        reasons = []
        threshold = config.response_rate_threshold
        if avg_rate < threshold:
            multiplier -= (threshold - avg_rate) / 100 * config.adjustment_sensitivity
            reasons.append(f"low response rate ({avg_rate:.1f}%)")
        elif avg_rate > threshold * 1.5:
            multiplier += (avg_rate - threshold) / 100 * config.adjustment_sensitivity
            reasons.append(f"high response rate ({avg_rate:.1f}%)")

        if 0 < avg_rating < config.rating_threshold:
            multiplier -= (config.rating_threshold - avg_rating) / 5 * config.adjustment_sensitivity
            reasons.append(f"low average rating ({avg_rating:.1f})")

        multiplier = max(config.min_multiplier, min(config.max_multiplier, multiplier))

        if abs(multiplier - 1.0) < self._frequency.adaptive_noise_floor:
            return AdaptiveAdjustmentResult(
                applied=False, multiplier=1.0, reason="Adjustment too small to apply"
            )

        reason = " and ".join(reasons).capitalize()
        question = self._load_question(question_id)
        old_target = question.frequency_target
        new_target = round(old_target * multiplier)
        try:
            self.repository.update_question(question_id, {"frequency_target": new_target})
        finally:
            self._cache.invalidate(question_id)
        self._adaptive_adjustments[question_id] = multiplier

        logger.info(
            "Adaptive adjustment for question %s: target %d -> %d",
            question_id, old_target, new_target,
            extra={
                "question_id": question_id,
                "old_target": old_target,
                "new_target": new_target,
                "multiplier": multiplier,
                "reason": reason,
            },
        )
        return AdaptiveAdjustmentResult(
            applied=True,
            multiplier=multiplier,
            reason=reason,
            old_target=old_target,
            new_target=new_target,
        )

    def _adaptive_config(
        self, config: Optional[Union[AdaptiveBehaviorConfig, Dict[str, Any]]]
    ) -> AdaptiveBehaviorConfig:
        if isinstance(config, AdaptiveBehaviorConfig):
            return config

        defaults = {
            "min_multiplier": self._frequency.min_multiplier,
            "max_multiplier": self._frequency.max_multiplier,
            "response_rate_threshold": self._frequency.response_rate_threshold,
            "rating_threshold": self._frequency.rating_threshold,
            "adjustment_sensitivity": self._frequency.adjustment_sensitivity,
        }
        defaults.update(config or {})
        try:
            return AdaptiveBehaviorConfig.model_validate(defaults)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid adaptive behavior config: {e}") from e

    def get_frequency_recommendations(self, question_id: str) -> FrequencyRecommendationReport:
        """Suggest target, cooldown and window changes from two weeks of data."""
        _require_id(question_id)
        question = self._load_question(question_id)
        analytics = self.get_frequency_analytics(
            question_id, "daily", self._frequency.recommendation_lookback_days
        )

        presentations = sum(a.presentations for a in analytics)
        responses = sum(a.responses for a in analytics)
        response_rate = responses / presentations * 100 if presentations else 0.0
        ratings = [a.average_rating for a in analytics if a.average_rating]
        average_rating = sum(ratings) / len(ratings) if ratings else None

        target = question.frequency_target
        recommendations = []
        if response_rate < 20:
            recommendations.append(FrequencyRecommendation(
                type="frequency",
                current_value=target,
                recommended_value=round(target * 0.7),
                reason="Low response rate suggests over-presentation",
                impact="high",
            ))
        elif response_rate > 80:
            recommendations.append(FrequencyRecommendation(
                type="frequency",
                current_value=target,
                recommended_value=round(target * 1.3),
                reason="High response rate suggests room for more presentations",
                impact="medium",
            ))

        if average_rating is not None and average_rating < 2.5:
            recommendations.append(FrequencyRecommendation(
                type="cooldown",
                current_value="none",
                recommended_value="30 minutes",
                reason="Low ratings suggest need for cooldown between presentations",
                impact="high",
            ))

        mean_effectiveness = sum(a.effectiveness_score for a in analytics) / max(1, len(analytics))
        if question.frequency_window == FrequencyWindow.HOURLY.value and mean_effectiveness < 40:
            recommendations.append(FrequencyRecommendation(
                type="window",
                current_value=FrequencyWindow.HOURLY.value,
                recommended_value=FrequencyWindow.DAILY.value,
                reason="Low effectiveness suggests longer time window needed",
                impact="medium",
            ))

        overall = 50 + min(30, response_rate * 0.6) + min(20, (average_rating or 2.5) * 4)
        return FrequencyRecommendationReport(
            question_id=question_id,
            current_target=target,
            current_window=question.frequency_window,
            recommendations=recommendations,
            overall_score=round(overall),
        )

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_all_caches(self) -> int:
        return self._cache.clear()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self._cache.get_stats()
