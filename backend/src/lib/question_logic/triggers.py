"""
TriggerEvaluator: decides whether a question is eligible in a given context.

Every enabled trigger of the question is scored independently against the
runtime context. Triggers that are in cooldown or out of activations are
gated out before their conditions are looked at. The best passing trigger
wins (see ranking.py) and only the winner gets an activation record.

A failure inside one trigger's evaluation becomes a not-triggered result for
that trigger; it never stops the siblings from being evaluated.
"""

import logging
import operator
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.lib.exceptions import ConfigurationError, QuestionLogicError, ValidationError
from src.lib.question_logic.ranking import priority_rank, select_best
from src.lib.question_logic.repository import QuestionLogicRepository
from src.lib.question_logic.settings import QuestionLogicSettings, load_settings
from src.lib.ttl_cache import Clock, TTLCache, utc_now
from src.models.question_logic import (
    ActivationRecord,
    CompositeConditions,
    CustomerBehaviorConditions,
    FrequencyBasedConditions,
    StoreContextConditions,
    TimeBasedConditions,
    Trigger,
)
from src.schemas.question_logic import (
    TriggerEvaluationContext,
    TriggerEvaluationResult,
    TriggerPerformanceMetrics,
)

logger = logging.getLogger(__name__)

NO_ACTIVE_TRIGGERS = "no active triggers"


# ---------------------------------------------------------------------------
# Composite condition trees
# ---------------------------------------------------------------------------

class ConditionEvaluator(Protocol):
    """Collaborator that evaluates a composite trigger's condition tree."""

    def evaluate(self, condition_tree: Mapping[str, Any], context: TriggerEvaluationContext) -> bool: ...


_MISSING = object()


def _contains(container: Any, item: Any) -> bool:
    return container is not None and item in container


def _is_in(value: Any, options: Any) -> bool:
    return options is not None and value in options


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "in": _is_in,
    "contains": _contains,
}


class ConditionTreeEvaluator:
    """Evaluates nested all/any/not condition trees against a context.

    Leaf nodes compare a dotted context path with a literal:

        {"all": [
            {"field": "store_data.current_occupancy", "operator": "gte", "value": 10},
            {"not": {"field": "session_data.device_type", "operator": "eq", "value": "tablet"}},
        ]}

    A leaf whose path does not resolve is false. Unknown operators and
    malformed nodes raise ConfigurationError.
    """

    def evaluate(self, condition_tree: Mapping[str, Any], context: TriggerEvaluationContext) -> bool:
        return self._evaluate_node(condition_tree, context)

    def _evaluate_node(self, node: Any, context: TriggerEvaluationContext) -> bool:
        if not isinstance(node, Mapping) or not node:
            raise ConfigurationError(f"Invalid condition node: {node!r}")

        if "all" in node:
            return all(self._evaluate_node(child, context) for child in node["all"])
        if "any" in node:
            return any(self._evaluate_node(child, context) for child in node["any"])
        if "not" in node:
            return not self._evaluate_node(node["not"], context)
        if "field" in node:
            return self._evaluate_leaf(node, context)

        raise ConfigurationError(f"Invalid condition node: {node!r}")

    def _evaluate_leaf(self, node: Mapping[str, Any], context: TriggerEvaluationContext) -> bool:
        op_name = node.get("operator", "eq")
        compare = OPERATORS.get(op_name)
        if compare is None:
            raise ConfigurationError(
                f"Unsupported condition operator: {op_name}", details={"operator": op_name}
            )

        actual = self._resolve(context, node["field"])
        if actual is _MISSING or actual is None:
            return False
        try:
            return bool(compare(actual, node.get("value")))
        except TypeError:
            return False

    @staticmethod
    def _resolve(context: TriggerEvaluationContext, path: str) -> Any:
        current: Any = context
        for part in path.split("."):
            if current is None:
                return _MISSING
            if isinstance(current, BaseModel):
                current = getattr(current, part, _MISSING)
            elif isinstance(current, Mapping):
                current = current.get(part, _MISSING)
            else:
                return _MISSING
            if current is _MISSING:
                return _MISSING
        return current


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

class TriggerEvaluator:
    """Scores a question's triggers against runtime context."""

    def __init__(
        self,
        repository: QuestionLogicRepository,
        settings: Optional[QuestionLogicSettings] = None,
        clock: Optional[Clock] = None,
        cache: Optional[TTLCache[List[Trigger]]] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.repository = repository
        self.settings = settings or load_settings()
        self._clock = clock or utc_now
        self._cache = cache or TTLCache(
            ttl=timedelta(seconds=self.settings.cache.trigger_ttl_seconds),
            max_entries=self.settings.cache.max_entries,
            clock=self._clock,
            name="triggers",
        )
        self.condition_evaluator = condition_evaluator or ConditionTreeEvaluator()

        self._handlers = {
            "time_based": self._evaluate_time_based,
            "frequency_based": self._evaluate_frequency_based,
            "customer_behavior": self._evaluate_customer_behavior,
            "store_context": self._evaluate_store_context,
            "composite": self._evaluate_composite,
        }

    def evaluate_triggers(
        self,
        question_id: str,
        context: Union[TriggerEvaluationContext, Dict[str, Any]],
    ) -> TriggerEvaluationResult:
        """Evaluate all enabled triggers of a question and return the winner.

        Args:
            question_id: Question whose triggers are evaluated
            context: Runtime facts (time, customer, store, session, business)

        Returns:
            The winning trigger's result, or a not-triggered result

        Raises:
            ValidationError: If question_id is empty or the context is malformed
        """
        if not question_id:
            raise ValidationError("Question ID is required", details={"field": "question_id"})
        context = coerce_context(context)

        started = time.perf_counter()
        triggers = self._get_triggers(question_id)
        if not triggers:
            return TriggerEvaluationResult(triggered=False, reason=NO_ACTIVE_TRIGGERS, confidence=0.0)

        results = [self.evaluate_single_trigger(trigger, context) for trigger in triggers]
        priorities = {trigger.id: trigger.priority for trigger in triggers}

        winner = select_best(
            (result for result in results if result.triggered),
            lambda result: (result.confidence, priority_rank(priorities.get(result.trigger_id))),
        )
        if winner is None:
            return TriggerEvaluationResult(
                triggered=False,
                reason="No triggers satisfied their conditions",
                confidence=0.0,
                metadata={"evaluated": len(results)},
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._record_activation(winner.trigger_id, context, elapsed_ms)
        return winner

    def evaluate_single_trigger(
        self, trigger: Trigger, context: TriggerEvaluationContext
    ) -> TriggerEvaluationResult:
        """Gate and score one trigger. Never raises."""
        try:
            gate_failure = self._check_gates(trigger)
            if gate_failure:
                return TriggerEvaluationResult(
                    triggered=False, trigger_id=trigger.id, reason=gate_failure, confidence=0.0
                )

            handler = self._handlers.get(trigger.conditions.trigger_type)
            if handler is None:
                return TriggerEvaluationResult(
                    triggered=False,
                    trigger_id=trigger.id,
                    reason=f"Unsupported trigger type: {trigger.conditions.trigger_type}",
                    confidence=0.0,
                )
            return handler(trigger, trigger.conditions, context)
        except Exception as e:
            logger.warning(
                "Error evaluating trigger %s: %s", trigger.id, e,
                exc_info=True, extra={"trigger_id": trigger.id, "question_id": trigger.question_id},
            )
            return TriggerEvaluationResult(
                triggered=False,
                trigger_id=trigger.id,
                reason=f"Evaluation error: {e}",
                confidence=0.0,
            )

    def _check_gates(self, trigger: Trigger) -> Optional[str]:
        if not trigger.is_enabled:
            return "Trigger is disabled"
        if not trigger.cooldown_minutes and trigger.max_activations is None:
            return None

        stats = self.repository.get_activation_stats(trigger.id)
        if trigger.cooldown_minutes and stats.last_activated_at is not None:
            cooldown_ends = stats.last_activated_at + timedelta(minutes=trigger.cooldown_minutes)
            if self._clock() < cooldown_ends:
                return "Trigger is in cooldown period"
        if trigger.max_activations is not None and stats.activation_count >= trigger.max_activations:
            return "Trigger has reached maximum activations"
        return None

    # ------------------------------------------------------------------
    # Condition strategies
    # ------------------------------------------------------------------

    def _evaluate_time_based(
        self, trigger: Trigger, conditions: TimeBasedConditions, context: TriggerEvaluationContext
    ) -> TriggerEvaluationResult:
        time_context = context.time_context
        metadata = {
            "current_time": time_context.current_time.isoformat(),
            "day_of_week": time_context.day_of_week,
            "hour": time_context.hour,
        }

        def not_triggered(reason: str) -> TriggerEvaluationResult:
            return TriggerEvaluationResult(
                triggered=False, trigger_id=trigger.id, reason=reason, confidence=0.0, metadata=metadata
            )

        if conditions.days_of_week is not None and time_context.day_of_week not in conditions.days_of_week:
            return not_triggered("Current day not in allowed days")

        if conditions.hour_start is not None and conditions.hour_end is not None:
            if not conditions.hour_start <= time_context.hour <= conditions.hour_end:
                return not_triggered("Current time not in allowed hour range")

        if conditions.time_windows is not None:
            # Linear comparison: a window that wraps past midnight never matches.
            minute_of_day = time_context.hour * 60 + time_context.minute
            in_window = any(
                window.start_minutes <= minute_of_day <= window.end_minutes
                for window in conditions.time_windows
            )
            if not in_window:
                return not_triggered("Current time not in any allowed time window")

        return TriggerEvaluationResult(
            triggered=True,
            trigger_id=trigger.id,
            reason="Time-based conditions satisfied",
            confidence=1.0,
            metadata=metadata,
        )

    def _evaluate_frequency_based(
        self, trigger: Trigger, conditions: FrequencyBasedConditions, context: TriggerEvaluationContext
    ) -> TriggerEvaluationResult:
        confidence = 1.0
        visit_count = context.customer_data.visit_count if context.customer_data else None

        if conditions.min_visits and visit_count:
            if visit_count < conditions.min_visits:
                return TriggerEvaluationResult(
                    triggered=False,
                    trigger_id=trigger.id,
                    reason="Customer visit count below minimum threshold",
                    confidence=0.0,
                    metadata={"visit_count": visit_count},
                )
            confidence *= 0.8 + 0.2 * min(1.0, visit_count / conditions.min_visits)

        return TriggerEvaluationResult(
            triggered=True,
            trigger_id=trigger.id,
            reason="Frequency conditions satisfied",
            confidence=confidence,
            metadata={"visit_count": visit_count},
        )

    def _evaluate_customer_behavior(
        self, trigger: Trigger, conditions: CustomerBehaviorConditions, context: TriggerEvaluationContext
    ) -> TriggerEvaluationResult:
        confidence = 1.0
        metadata: Dict[str, Any] = {}
        session = context.session_data

        if conditions.min_session_duration and session and session.duration_minutes:
            if session.duration_minutes < conditions.min_session_duration:
                return TriggerEvaluationResult(
                    triggered=False,
                    trigger_id=trigger.id,
                    reason="Session duration below minimum threshold",
                    confidence=0.0,
                    metadata={"session_duration": session.duration_minutes},
                )

        if conditions.device_types and session and session.device_type:
            if session.device_type not in conditions.device_types:
                return TriggerEvaluationResult(
                    triggered=False,
                    trigger_id=trigger.id,
                    reason="Device type not in allowed list",
                    confidence=0.0,
                    metadata={"device_type": session.device_type},
                )

        ratings = context.customer_data.previous_ratings if context.customer_data else None
        if conditions.rating_threshold and ratings:
            average_rating = sum(ratings) / len(ratings)
            metadata["average_rating"] = average_rating
            if average_rating < conditions.rating_threshold:
                # Re-engage unhappy customers first
                confidence *= 1.2
                metadata["low_rating_boost"] = True
                if self.settings.triggers.clamp_behavior_boost:
                    confidence = min(1.0, confidence)

        return TriggerEvaluationResult(
            triggered=True,
            trigger_id=trigger.id,
            reason="Customer behavior conditions satisfied",
            confidence=confidence,
            metadata=metadata,
        )

    def _evaluate_store_context(
        self, trigger: Trigger, conditions: StoreContextConditions, context: TriggerEvaluationContext
    ) -> TriggerEvaluationResult:
        store = context.store_data

        if conditions.occupancy_threshold and store and store.current_occupancy is not None:
            if store.current_occupancy < conditions.occupancy_threshold:
                return TriggerEvaluationResult(
                    triggered=False,
                    trigger_id=trigger.id,
                    reason="Store occupancy below threshold",
                    confidence=0.0,
                    metadata={"current_occupancy": store.current_occupancy},
                )

        if conditions.peak_hours_only and not (store and store.peak_hours):
            return TriggerEvaluationResult(
                triggered=False,
                trigger_id=trigger.id,
                reason="Not during peak hours",
                confidence=0.0,
                metadata={"is_peak_hours": store.peak_hours if store else None},
            )

        if conditions.required_events and store and store.special_events is not None:
            missing = [event for event in conditions.required_events if event not in store.special_events]
            if missing:
                return TriggerEvaluationResult(
                    triggered=False,
                    trigger_id=trigger.id,
                    reason="Required special events not present",
                    confidence=0.0,
                    metadata={"missing_events": missing},
                )

        return TriggerEvaluationResult(
            triggered=True,
            trigger_id=trigger.id,
            reason="Store context conditions satisfied",
            confidence=1.0,
        )

    def _evaluate_composite(
        self, trigger: Trigger, conditions: CompositeConditions, context: TriggerEvaluationContext
    ) -> TriggerEvaluationResult:
        try:
            satisfied = self.condition_evaluator.evaluate(conditions.condition_tree, context)
        except Exception as e:
            logger.warning(
                "Composite evaluation failed for trigger %s: %s", trigger.id, e,
                extra={"trigger_id": trigger.id},
            )
            return TriggerEvaluationResult(
                triggered=False,
                trigger_id=trigger.id,
                reason=f"Composite evaluation error: {e}",
                confidence=0.0,
            )

        return TriggerEvaluationResult(
            triggered=bool(satisfied),
            trigger_id=trigger.id,
            reason="Composite conditions satisfied" if satisfied else "Composite conditions not met",
            confidence=0.9 if satisfied else 0.0,
        )

    # ------------------------------------------------------------------
    # Persistence side effects
    # ------------------------------------------------------------------

    def _record_activation(
        self, trigger_id: str, context: TriggerEvaluationContext, evaluation_time_ms: float
    ) -> None:
        record = ActivationRecord(
            activated_at=self._clock(),
            evaluation_time_ms=evaluation_time_ms,
            context_summary=context.summary(),
        )
        try:
            self.repository.append_trigger_activation(trigger_id, record)
        except QuestionLogicError:
            raise
        except Exception:
            logger.error(
                "Failed to record activation of trigger %s", trigger_id,
                exc_info=True, extra={"trigger_id": trigger_id, "context": record.context_summary},
            )
            raise

        logger.info(
            "Trigger %s activated", trigger_id,
            extra={"trigger_id": trigger_id, "evaluation_time_ms": round(evaluation_time_ms, 2)},
        )

    def save_trigger(self, trigger: Trigger) -> Trigger:
        """Persist a trigger and drop the cached trigger list of its question."""
        saved = self.repository.save_trigger(trigger)
        self.clear_trigger_cache(trigger.question_id)
        return saved

    # ------------------------------------------------------------------
    # Performance and cache management
    # ------------------------------------------------------------------

    def get_trigger_performance_metrics(
        self, business_id: str, start: datetime, end: datetime
    ) -> List[TriggerPerformanceMetrics]:
        """Activation metrics for every trigger of a business within [start, end]."""
        if not business_id:
            raise ValidationError("Business ID is required", details={"field": "business_id"})

        now = self._clock()
        metrics = []
        for trigger in self.repository.list_business_triggers(business_id):
            history = self.repository.get_activation_history(trigger.id, limit=1000)
            in_range = [record for record in history if start <= record.activated_at <= end]

            total_activations = len(in_range)
            # No evaluation log is kept; evaluations are estimated from activations.
            total_evaluations = total_activations * 2
            activation_rate = total_activations / total_evaluations * 100 if total_evaluations else 0.0
            average_ms = (
                sum(record.evaluation_time_ms for record in in_range) / total_activations
                if total_activations else 0.0
            )

            last_activated = history[0].activated_at if history else None
            cooldown_remaining = 0.0
            if last_activated is not None and trigger.cooldown_minutes:
                elapsed_minutes = (now - last_activated).total_seconds() / 60
                cooldown_remaining = max(0.0, trigger.cooldown_minutes - elapsed_minutes)

            metrics.append(TriggerPerformanceMetrics(
                trigger_id=trigger.id,
                total_evaluations=total_evaluations,
                total_activations=total_activations,
                activation_rate=activation_rate,
                average_evaluation_time_ms=average_ms,
                last_activated=last_activated,
                cooldown_remaining_minutes=cooldown_remaining,
            ))
        return metrics

    def optimize_trigger_order(self, question_id: str) -> List[Trigger]:
        """Cache the question's triggers ordered by activation count, most used first."""
        triggers = self.repository.list_enabled_triggers(question_id)
        counts = {
            trigger.id: self.repository.get_activation_stats(trigger.id).activation_count
            for trigger in triggers
        }
        ordered = sorted(triggers, key=lambda trigger: counts[trigger.id], reverse=True)
        self._cache.set(question_id, ordered)
        return ordered

    def _get_triggers(self, question_id: str) -> List[Trigger]:
        triggers = self._cache.get(question_id)
        if triggers is None:
            triggers = self.repository.list_enabled_triggers(question_id)
            self._cache.set(question_id, triggers)
        return triggers

    def clear_trigger_cache(self, question_id: str) -> None:
        self._cache.invalidate(question_id)

    def clear_all_trigger_caches(self) -> None:
        self._cache.clear()


def coerce_context(context: Union[TriggerEvaluationContext, Dict[str, Any]]) -> TriggerEvaluationContext:
    """Validate a raw context mapping into a TriggerEvaluationContext."""
    if isinstance(context, TriggerEvaluationContext):
        return context
    try:
        return TriggerEvaluationContext.model_validate(context)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid trigger evaluation context: {e}") from e
