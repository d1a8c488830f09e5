"""Unit tests for TriggerEvaluator and composite condition trees."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from src.lib.exceptions import ConfigurationError, ValidationError
from src.lib.question_logic.settings import QuestionLogicSettings, TriggerSettings
from src.lib.question_logic.triggers import (
    NO_ACTIVE_TRIGGERS,
    ConditionTreeEvaluator,
    TriggerEvaluator,
    coerce_context,
)
from src.models.question_logic import (
    ActivationRecord,
    CompositeConditions,
    CustomerBehaviorConditions,
    FrequencyBasedConditions,
    StoreContextConditions,
    TimeBasedConditions,
    TimeWindow,
    TriggerPriority,
)
from src.schemas.question_logic import (
    CustomerData,
    SessionData,
    StoreData,
    TimeContext,
    TriggerEvaluationContext,
)

from .conftest import BUSINESS_ID, make_question, make_trigger

SATURDAY_10AM = datetime(2024, 1, 6, 10, 0, tzinfo=timezone.utc)
TUESDAY_10AM = datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)


def _context(moment=TUESDAY_10AM, **parts):
    return TriggerEvaluationContext(time_context=TimeContext.from_datetime(moment), **parts)


@pytest.fixture
def evaluator(repository, settings, clock):
    repository.add_question(make_question("q-1"))
    clock.now = TUESDAY_10AM
    return TriggerEvaluator(repository, settings=settings, clock=clock)


class TestTimeBasedTriggers:

    def test_weekday_trigger_rejects_saturday(self, evaluator, repository):
        """Days 1-5, hours 9-17 at Saturday 10:00 fails on the day check."""
        repository.save_trigger(make_trigger(
            conditions=TimeBasedConditions(days_of_week=[1, 2, 3, 4, 5], hour_start=9, hour_end=17)
        ))

        result = evaluator.evaluate_triggers("q-1", _context(SATURDAY_10AM))

        assert result.triggered is False
        assert result.reason == "No triggers satisfied their conditions"

    def test_day_mismatch_reason(self, evaluator):
        """The per-trigger result cites the day mismatch."""
        trigger = make_trigger(
            conditions=TimeBasedConditions(days_of_week=[1, 2, 3, 4, 5], hour_start=9, hour_end=17)
        )

        result = evaluator.evaluate_single_trigger(trigger, _context(SATURDAY_10AM))

        assert result.triggered is False
        assert result.reason == "Current day not in allowed days"
        assert result.metadata["day_of_week"] == 6

    def test_weekday_trigger_fires_on_tuesday(self, evaluator, repository):
        """Inside the configured days and hours the trigger fires with full confidence."""
        repository.save_trigger(make_trigger(
            conditions=TimeBasedConditions(days_of_week=[1, 2, 3, 4, 5], hour_start=9, hour_end=17)
        ))

        result = evaluator.evaluate_triggers("q-1", _context())

        assert result.triggered is True
        assert result.trigger_id == "t-1"
        assert result.confidence == 1.0

    def test_hour_range_is_inclusive(self, evaluator):
        trigger = make_trigger(conditions=TimeBasedConditions(hour_start=10, hour_end=10))
        assert evaluator.evaluate_single_trigger(trigger, _context()).triggered is True

    def test_outside_hour_range(self, evaluator):
        trigger = make_trigger(conditions=TimeBasedConditions(hour_start=12, hour_end=17))
        result = evaluator.evaluate_single_trigger(trigger, _context())
        assert result.reason == "Current time not in allowed hour range"

    def test_time_windows(self, evaluator):
        """Any matching HH:MM window is enough."""
        trigger = make_trigger(conditions=TimeBasedConditions(time_windows=[
            TimeWindow(start="07:00", end="08:00"),
            TimeWindow(start="09:45", end="10:15"),
        ]))
        assert evaluator.evaluate_single_trigger(trigger, _context()).triggered is True

    def test_window_crossing_midnight_never_matches(self, evaluator):
        """22:00-02:00 is compared linearly and so matches nothing."""
        trigger = make_trigger(conditions=TimeBasedConditions(
            time_windows=[TimeWindow(start="22:00", end="02:00")]
        ))
        late = datetime(2024, 1, 2, 23, 30, tzinfo=timezone.utc)

        result = evaluator.evaluate_single_trigger(trigger, _context(late))

        assert result.triggered is False
        assert result.reason == "Current time not in any allowed time window"


class TestOtherTriggerTypes:

    def test_frequency_based_below_minimum(self, evaluator):
        trigger = make_trigger(conditions=FrequencyBasedConditions(min_visits=5))
        result = evaluator.evaluate_single_trigger(
            trigger, _context(customer_data=CustomerData(visit_count=2))
        )
        assert result.triggered is False
        assert result.reason == "Customer visit count below minimum threshold"

    def test_frequency_based_confidence(self, evaluator):
        """Meeting the minimum exactly gives full confidence."""
        trigger = make_trigger(conditions=FrequencyBasedConditions(min_visits=5))
        result = evaluator.evaluate_single_trigger(
            trigger, _context(customer_data=CustomerData(visit_count=5))
        )
        assert result.triggered is True
        assert result.confidence == pytest.approx(1.0)

    def test_frequency_based_without_visit_data(self, evaluator):
        """Missing visit data does not block the trigger."""
        trigger = make_trigger(conditions=FrequencyBasedConditions(min_visits=5))
        assert evaluator.evaluate_single_trigger(trigger, _context()).triggered is True

    def test_customer_behavior_low_rating_boost(self, evaluator):
        """Unhappy customers get a 1.2x boost that is not capped by default."""
        trigger = make_trigger(conditions=CustomerBehaviorConditions(rating_threshold=3.0))
        result = evaluator.evaluate_single_trigger(
            trigger, _context(customer_data=CustomerData(previous_ratings=[1.0, 2.0]))
        )
        assert result.triggered is True
        assert result.confidence == pytest.approx(1.2)
        assert result.metadata["low_rating_boost"] is True

    def test_customer_behavior_boost_clamped_when_configured(self, repository, clock):
        settings = QuestionLogicSettings(triggers=TriggerSettings(clamp_behavior_boost=True))
        evaluator = TriggerEvaluator(repository, settings=settings, clock=clock)
        trigger = make_trigger(conditions=CustomerBehaviorConditions(rating_threshold=3.0))

        result = evaluator.evaluate_single_trigger(
            trigger, _context(customer_data=CustomerData(previous_ratings=[1.0]))
        )
        assert result.confidence == 1.0

    @pytest.mark.parametrize("session,reason", [
        (SessionData(duration_minutes=1.0), "Session duration below minimum threshold"),
        (SessionData(device_type="tablet"), "Device type not in allowed list"),
    ])
    def test_customer_behavior_rejections(self, evaluator, session, reason):
        trigger = make_trigger(conditions=CustomerBehaviorConditions(
            min_session_duration=5.0, device_types=["mobile", "desktop"]
        ))
        result = evaluator.evaluate_single_trigger(trigger, _context(session_data=session))
        assert result.triggered is False
        assert result.reason == reason

    def test_store_context_occupancy(self, evaluator):
        trigger = make_trigger(conditions=StoreContextConditions(occupancy_threshold=20))
        result = evaluator.evaluate_single_trigger(
            trigger, _context(store_data=StoreData(store_id="s-1", current_occupancy=5))
        )
        assert result.reason == "Store occupancy below threshold"

    def test_store_context_peak_hours_only(self, evaluator):
        """peak_hours_only fails when the store data says nothing about peak hours."""
        trigger = make_trigger(conditions=StoreContextConditions(peak_hours_only=True))
        result = evaluator.evaluate_single_trigger(trigger, _context())
        assert result.reason == "Not during peak hours"

    def test_store_context_missing_events(self, evaluator):
        trigger = make_trigger(conditions=StoreContextConditions(required_events=["sale", "tasting"]))
        result = evaluator.evaluate_single_trigger(
            trigger, _context(store_data=StoreData(store_id="s-1", special_events=["sale"]))
        )
        assert result.triggered is False
        assert result.metadata["missing_events"] == ["tasting"]

    def test_composite_uses_condition_tree(self, evaluator):
        """Satisfied composite trees fire with 0.9 confidence."""
        trigger = make_trigger(conditions=CompositeConditions(condition_tree={
            "all": [
                {"field": "store_data.current_occupancy", "operator": "gte", "value": 10},
                {"not": {"field": "session_data.device_type", "operator": "eq", "value": "tablet"}},
            ]
        }))
        context = _context(
            store_data=StoreData(store_id="s-1", current_occupancy=12),
            session_data=SessionData(device_type="mobile"),
        )

        result = evaluator.evaluate_single_trigger(trigger, context)

        assert result.triggered is True
        assert result.confidence == 0.9

    def test_composite_error_is_contained(self, evaluator):
        """A broken tree yields a not-triggered result instead of raising."""
        trigger = make_trigger(conditions=CompositeConditions(condition_tree={"xor": []}))
        result = evaluator.evaluate_single_trigger(trigger, _context())
        assert result.triggered is False
        assert result.reason.startswith("Composite evaluation error")

    def test_injected_condition_evaluator(self, repository, settings, clock):
        """A custom collaborator can replace the built-in tree evaluator."""
        custom = MagicMock()
        custom.evaluate.return_value = True
        evaluator = TriggerEvaluator(repository, settings=settings, clock=clock, condition_evaluator=custom)
        trigger = make_trigger(conditions=CompositeConditions(condition_tree={"rule": "vip"}))

        assert evaluator.evaluate_single_trigger(trigger, _context()).triggered is True
        custom.evaluate.assert_called_once()


class TestGates:

    def test_disabled_trigger(self, evaluator):
        trigger = make_trigger(is_enabled=False)
        assert evaluator.evaluate_single_trigger(trigger, _context()).reason == "Trigger is disabled"

    def test_cooldown(self, evaluator, repository, clock):
        """A trigger that fired 10 minutes ago with a 30 minute cooldown is gated."""
        trigger = repository.save_trigger(make_trigger(cooldown_minutes=30))
        repository.append_trigger_activation(
            "t-1", ActivationRecord(activated_at=clock.now - timedelta(minutes=10))
        )

        result = evaluator.evaluate_single_trigger(trigger, _context())
        assert result.reason == "Trigger is in cooldown period"

        clock.advance(minutes=20)
        assert evaluator.evaluate_single_trigger(trigger, _context()).triggered is True

    def test_max_activations(self, evaluator, repository):
        trigger = repository.save_trigger(make_trigger(max_activations=1))
        evaluator.evaluate_triggers("q-1", _context())

        result = evaluator.evaluate_single_trigger(trigger, _context())
        assert result.reason == "Trigger has reached maximum activations"

    def test_gate_lookup_error_is_contained(self, settings, clock):
        """A failing activation lookup only affects that trigger."""
        repository = MagicMock()
        repository.get_activation_stats.side_effect = RuntimeError("db down")
        evaluator = TriggerEvaluator(repository, settings=settings, clock=clock)

        result = evaluator.evaluate_single_trigger(make_trigger(cooldown_minutes=5), _context())

        assert result.triggered is False
        assert result.reason == "Evaluation error: db down"


class TestWinnerSelection:

    def test_no_triggers(self, evaluator):
        result = evaluator.evaluate_triggers("q-1", _context())
        assert result.triggered is False
        assert result.reason == NO_ACTIVE_TRIGGERS

    def test_priority_breaks_confidence_tie(self, evaluator, repository):
        """Two full-confidence triggers: the high priority one wins."""
        repository.save_trigger(make_trigger("t-low", priority=TriggerPriority.LOW))
        repository.save_trigger(make_trigger("t-high", priority=TriggerPriority.HIGH))

        result = evaluator.evaluate_triggers("q-1", _context())
        assert result.trigger_id == "t-high"

    def test_confidence_beats_priority(self, evaluator, repository):
        repository.save_trigger(make_trigger(
            "t-composite",
            priority=TriggerPriority.HIGH,
            conditions=CompositeConditions(condition_tree={"field": "time_context.hour", "operator": "eq", "value": 10}),
        ))
        repository.save_trigger(make_trigger("t-time", priority=TriggerPriority.LOW))

        result = evaluator.evaluate_triggers("q-1", _context())
        assert result.trigger_id == "t-time"

    def test_only_winner_is_recorded(self, evaluator, repository, clock):
        """The losing trigger gets no activation record."""
        repository.save_trigger(make_trigger("t-a", priority=TriggerPriority.HIGH))
        repository.save_trigger(make_trigger("t-b", priority=TriggerPriority.LOW))

        evaluator.evaluate_triggers(
            "q-1", _context(store_data=StoreData(store_id="s-9"))
        )

        history = repository.get_activation_history("t-a")
        assert len(history) == 1
        assert history[0].activated_at == clock.now
        assert history[0].context_summary["store_id"] == "s-9"
        assert repository.get_activation_history("t-b") == []

    def test_failing_sibling_does_not_abort(self, evaluator, repository):
        """One trigger raising inside its handler does not stop the others."""
        repository.save_trigger(make_trigger("t-bad"))
        repository.save_trigger(make_trigger("t-good"))

        original = evaluator._handlers["time_based"]

        def flaky(trigger, conditions, context):
            if trigger.id == "t-bad":
                raise ValueError("bad conditions")
            return original(trigger, conditions, context)

        evaluator._handlers["time_based"] = flaky

        result = evaluator.evaluate_triggers("q-1", _context())
        assert result.triggered is True
        assert result.trigger_id == "t-good"

    def test_activation_failure_propagates(self, settings, clock):
        """A failed activation write is logged and re-raised."""
        repository = MagicMock()
        repository.list_enabled_triggers.return_value = [make_trigger()]
        repository.append_trigger_activation.side_effect = RuntimeError("write failed")
        evaluator = TriggerEvaluator(repository, settings=settings, clock=clock)

        with patch("src.lib.question_logic.triggers.logger") as mock_logger:
            with pytest.raises(RuntimeError):
                evaluator.evaluate_triggers("q-1", _context())
        mock_logger.error.assert_called_once()

    def test_dict_context_is_accepted(self, evaluator, repository):
        repository.save_trigger(make_trigger())
        context = {"time_context": {"current_time": TUESDAY_10AM, "day_of_week": 2, "hour": 10, "minute": 0}}
        assert evaluator.evaluate_triggers("q-1", context).triggered is True

    def test_malformed_context(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.evaluate_triggers("q-1", {"time_context": {"hour": 99}})

    def test_empty_question_id(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.evaluate_triggers("", _context())


class TestCachingAndMetrics:

    def test_trigger_list_is_cached(self, evaluator, repository):
        """A trigger saved directly to the repository is not seen until the cache is cleared."""
        evaluator.evaluate_triggers("q-1", _context())
        repository.save_trigger(make_trigger())

        assert evaluator.evaluate_triggers("q-1", _context()).triggered is False
        evaluator.clear_trigger_cache("q-1")
        assert evaluator.evaluate_triggers("q-1", _context()).triggered is True

    def test_save_trigger_invalidates_cache(self, evaluator):
        evaluator.evaluate_triggers("q-1", _context())
        evaluator.save_trigger(make_trigger())
        assert evaluator.evaluate_triggers("q-1", _context()).triggered is True

    def test_optimize_trigger_order(self, evaluator, repository, clock):
        """Most activated triggers come first."""
        repository.save_trigger(make_trigger("t-rare"))
        repository.save_trigger(make_trigger("t-busy"))
        for minutes in (1, 2):
            repository.append_trigger_activation(
                "t-busy", ActivationRecord(activated_at=clock.now - timedelta(minutes=minutes))
            )

        ordered = evaluator.optimize_trigger_order("q-1")
        assert [t.id for t in ordered] == ["t-busy", "t-rare"]

    def test_performance_metrics(self, evaluator, repository, clock):
        repository.save_trigger(make_trigger(cooldown_minutes=60))
        repository.append_trigger_activation(
            "t-1",
            ActivationRecord(activated_at=clock.now - timedelta(minutes=15), evaluation_time_ms=4.0),
        )

        metrics = evaluator.get_trigger_performance_metrics(
            BUSINESS_ID, clock.now - timedelta(days=1), clock.now
        )

        assert len(metrics) == 1
        assert metrics[0].total_activations == 1
        assert metrics[0].total_evaluations == 2
        assert metrics[0].activation_rate == 50.0
        assert metrics[0].average_evaluation_time_ms == 4.0
        assert metrics[0].cooldown_remaining_minutes == pytest.approx(45.0)


class TestConditionTreeEvaluator:

    @pytest.fixture
    def context(self):
        return _context(
            customer_data=CustomerData(visit_count=3, demographics={"segment": "vip"}),
            store_data=StoreData(store_id="s-1", special_events=["sale"]),
        )

    @pytest.mark.parametrize("tree,expected", [
        ({"field": "customer_data.visit_count", "operator": "gt", "value": 2}, True),
        ({"field": "customer_data.demographics.segment", "value": "vip"}, True),
        ({"field": "store_data.special_events", "operator": "contains", "value": "sale"}, True),
        ({"field": "store_data.store_id", "operator": "in", "value": ["s-2", "s-3"]}, False),
        ({"field": "session_data.device_type", "value": "mobile"}, False),
        ({"any": [{"field": "customer_data.visit_count", "operator": "lt", "value": 1},
                  {"field": "time_context.hour", "operator": "gte", "value": 9}]}, True),
        ({"not": {"field": "customer_data.visit_count", "operator": "ne", "value": 3}}, True),
    ])
    def test_trees(self, context, tree, expected):
        assert ConditionTreeEvaluator().evaluate(tree, context) is expected

    def test_unknown_operator(self, context):
        with pytest.raises(ConfigurationError):
            ConditionTreeEvaluator().evaluate({"field": "time_context.hour", "operator": "like"}, context)

    def test_empty_node(self, context):
        with pytest.raises(ConfigurationError):
            ConditionTreeEvaluator().evaluate({}, context)


def test_coerce_context_passthrough():
    context = _context()
    assert coerce_context(context) is context
