"""Unit tests for ConflictHarmonizer."""
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from src.lib.exceptions import ConfigurationError, NotFoundError, ValidationError
from src.lib.question_logic.harmonizer import ConflictHarmonizer, integer_lcm, next_presentation
from src.models.question_logic import FrequencyHarmonizer, ResolutionMethod
from src.schemas.question_logic import (
    ConflictSeverity,
    ConflictType,
    HarmonizationOptions,
    QuestionForHarmonization,
)

from .conftest import BUSINESS_ID, T0


def _question(question_id, current, target=None, **overrides):
    fields = dict(
        question_id=question_id,
        text=f"Question {question_id}",
        current_frequency=current,
        target_frequency=target if target is not None else current,
        category="checkout",
        topic_category="checkout",
        priority_level=3,
    )
    fields.update(overrides)
    return QuestionForHarmonization(**fields)


@pytest.fixture
def harmonizer(repository, settings, clock):
    return ConflictHarmonizer(repository, BUSINESS_ID, settings=settings, clock=clock)


class TestHelpers:

    def test_integer_lcm_rounds_inputs(self):
        assert integer_lcm([5, 6]) == 30
        assert integer_lcm([4.6, 2.2]) == 10
        assert integer_lcm([7]) == 7

    def test_next_presentation(self):
        """Frequency is occurrences per day."""
        assert next_presentation(T0, 4) == T0 + timedelta(hours=6)

    def test_next_presentation_out_of_range(self):
        assert next_presentation(T0, 1e-9) is None


class TestDetection:

    def test_close_frequencies_in_same_topic_overlap(self, harmonizer):
        """5 and 6 (ratio 1.2) in one topic are a high severity overlap for both questions."""
        conflicts = harmonizer.detect_conflicts([_question("q-a", 5), _question("q-b", 6)])

        assert {c.question_id for c in conflicts} == {"q-a", "q-b"}
        for conflict in conflicts:
            assert conflict.conflict_type == ConflictType.FREQUENCY_OVERLAP
            assert conflict.severity == ConflictSeverity.HIGH
        assert next(c for c in conflicts if c.question_id == "q-a").conflicting_sources == ["q-b"]

    def test_medium_severity_overlap(self, harmonizer):
        """Ratios between 1.5 and 2 are medium severity."""
        conflicts = harmonizer.detect_conflicts([_question("q-a", 4), _question("q-b", 7)])
        assert {c.severity for c in conflicts} == {ConflictSeverity.MEDIUM}

    def test_ratio_of_two_is_not_an_overlap(self, harmonizer):
        assert harmonizer.detect_conflicts([_question("q-a", 3), _question("q-b", 6)]) == []

    def test_different_topics_do_not_overlap(self, harmonizer):
        conflicts = harmonizer.detect_conflicts([
            _question("q-a", 5, topic_category="checkout"),
            _question("q-b", 6, topic_category="delivery"),
        ])
        assert conflicts == []

    def test_category_used_when_topic_empty(self, harmonizer):
        conflicts = harmonizer.detect_conflicts([
            _question("q-a", 5, topic_category="", category="service"),
            _question("q-b", 6, topic_category="", category="service"),
        ])
        assert len(conflicts) == 2

    def test_timing_collision(self, harmonizer):
        """Projected presentations less than an hour apart collide."""
        conflicts = harmonizer.detect_conflicts([
            _question("q-a", 1, topic_category="a", last_presented_at=T0),
            _question("q-b", 1, topic_category="b", last_presented_at=T0 + timedelta(minutes=59)),
        ])
        assert [c.conflict_type for c in conflicts] == [ConflictType.TIMING_COLLISION] * 2
        assert conflicts[0].severity == ConflictSeverity.MEDIUM

    def test_very_low_rates_are_not_projected(self, harmonizer):
        """A rate too low to schedule is skipped instead of failing detection."""
        result = harmonizer.harmonize_frequencies([
            _question("q-a", 1e-9, topic_category="a", last_presented_at=T0),
            _question("q-b", 1, topic_category="b", last_presented_at=T0),
        ])

        assert result.metadata.total_conflicts == 0
        assert result.harmonized_questions[0].next_presentation_time is None
        assert result.harmonized_questions[1].next_presentation_time == T0 + timedelta(days=1)

    def test_exactly_one_hour_apart_is_not_a_collision(self, harmonizer):
        conflicts = harmonizer.detect_conflicts([
            _question("q-a", 1, topic_category="a", last_presented_at=T0),
            _question("q-b", 1, topic_category="b", last_presented_at=T0 + timedelta(hours=1)),
        ])
        assert conflicts == []

    def test_priority_conflict(self, harmonizer):
        """High priority questions below half their target are flagged."""
        conflicts = harmonizer.detect_conflicts([_question("q-a", 2, target=10, priority_level=4)])
        assert conflicts[0].conflict_type == ConflictType.PRIORITY_CONFLICT
        assert conflicts[0].severity == ConflictSeverity.HIGH


class TestLcmStrategy:

    def test_checkout_pair_aligns_to_30(self, harmonizer):
        """Frequencies 5 and 6 heading for each other are both harmonized to lcm(5, 6) = 30."""
        result = harmonizer.harmonize_frequencies(
            [_question("q-a", 5, target=6), _question("q-b", 6, target=5)], options={"strategy": "lcm_frequency"}
        )

        assert [h.harmonized_frequency for h in result.harmonized_questions] == [30, 30]
        assert len(result.resolved_conflicts) == 2
        assert result.unresolvable_conflicts == []
        assert result.metadata.resolution_methods == {"lcm_frequency": 2}
        assert result.metadata.average_harmonization_ratio == pytest.approx(5.5)
        assert result.harmonized_questions[0].harmonization_reason == "LCM harmonization of frequencies: 5, 6"

    def test_lcm_is_idempotent(self, harmonizer):
        """Feeding the harmonized frequencies back in changes nothing and resolves nothing."""
        first = harmonizer.harmonize_frequencies(
            [_question("q-a", 5, target=6), _question("q-b", 6, target=5)], options={"strategy": "lcm"}
        )
        again = harmonizer.harmonize_frequencies(
            [_question(h.question_id, h.harmonized_frequency) for h in first.harmonized_questions],
            options={"strategy": "lcm"},
        )

        assert [h.conflicts_resolved for h in first.harmonized_questions] == [1, 1]
        assert [h.harmonized_frequency for h in again.harmonized_questions] == [30, 30]
        assert [h.conflicts_resolved for h in again.harmonized_questions] == [0, 0]
        assert again.resolved_conflicts == []
        assert again.unresolvable_conflicts == []
        assert again.harmonized_questions[0].harmonization_reason == "Frequencies already aligned"

    def test_peers_do_not_inflate_the_multiple(self, harmonizer):
        """Each question aligns only its own current and target frequencies."""
        result = harmonizer.harmonize_frequencies(
            [_question(f"q-{f}", f) for f in (5, 6, 7, 8, 9)], options={"strategy": "lcm_frequency"}
        )
        assert [h.harmonized_frequency for h in result.harmonized_questions] == [5, 6, 7, 8, 9]

    def test_own_target_sets_the_multiple(self, harmonizer):
        result = harmonizer.harmonize_frequencies(
            [_question("q-a", 4, target=6), _question("q-b", 5)], options={"strategy": "lcm_frequency"}
        )
        assert [h.harmonized_frequency for h in result.harmonized_questions] == [12, 5]
        assert result.harmonized_questions[0].harmonization_reason == "LCM harmonization of frequencies: 4, 6"

    def test_non_overlap_conflicts_are_unresolvable(self, harmonizer):
        result = harmonizer.harmonize_frequencies(
            [_question("q-a", 2, target=10, priority_level=5)], options={"strategy": "lcm_frequency"}
        )
        assert result.harmonized_questions[0].harmonized_frequency == 2
        assert result.unresolvable_conflicts[0].conflict_type == ConflictType.PRIORITY_CONFLICT


class TestAdaptiveStrategy:

    def test_overlap_is_smoothed(self, harmonizer):
        result = harmonizer.harmonize_frequencies([_question("q-a", 5), _question("q-b", 6)])
        assert [h.harmonized_frequency for h in result.harmonized_questions] == [10, 12]
        assert result.harmonized_questions[0].harmonization_reason == (
            "Adaptive harmonization: Adaptive frequency smoothing applied"
        )

    def test_collision_spaced_to_minimum_interval(self, harmonizer):
        result = harmonizer.harmonize_frequencies([
            _question("q-a", 1, topic_category="a", last_presented_at=T0),
            _question("q-b", 1, topic_category="b", last_presented_at=T0),
        ])
        assert [h.harmonized_frequency for h in result.harmonized_questions] == [2, 2]
        assert result.metadata.resolution_methods == {"time_spacing": 2}
        assert result.harmonized_questions[0].next_presentation_time == T0 + timedelta(hours=12)

    def test_collision_above_minimum_is_unresolvable(self, harmonizer):
        result = harmonizer.harmonize_frequencies([
            _question("q-a", 24, topic_category="a", last_presented_at=T0),
            _question("q-b", 24, topic_category="b", last_presented_at=T0),
        ])
        assert len(result.unresolvable_conflicts) == 2
        assert result.harmonized_questions[0].harmonization_reason == "No adaptive changes needed"

    def test_priority_boost(self, harmonizer):
        result = harmonizer.harmonize_frequencies([_question("q-a", 2, target=10, priority_level=5)])
        assert result.harmonized_questions[0].harmonized_frequency == 4

    def test_no_conflicts(self, harmonizer):
        result = harmonizer.harmonize_frequencies([_question("q-a", 5)])
        assert result.harmonized_questions[0].harmonized_frequency == 5
        assert result.harmonized_questions[0].harmonization_reason == "No conflicts detected"
        assert result.metadata.total_conflicts == 0

    def test_empty_batch(self, harmonizer):
        result = harmonizer.harmonize_frequencies([])
        assert result.harmonized_questions == []
        assert result.metadata.average_harmonization_ratio == 1.0


class TestBusinessOverride:

    def test_matching_harmonizer_overrides(self, harmonizer):
        created = harmonizer.create_harmonizer(
            "Checkout cadence", "checkout-flow", ResolutionMethod.BUSINESS_OVERRIDE, override_frequency=12
        )

        result = harmonizer.harmonize_frequencies(
            [_question("q-a", 5), _question("q-b", 6)], options={"strategy": "business_override"}
        )

        assert [h.harmonized_frequency for h in result.harmonized_questions] == [12, 12]
        assert result.harmonized_questions[0].harmonization_reason == f"Business override: {created.name}"
        assert len(result.resolved_conflicts) == 2

    def test_without_harmonizer_conflicts_remain(self, harmonizer):
        result = harmonizer.harmonize_frequencies(
            [_question("q-a", 5), _question("q-b", 6)], options={"strategy": "business_priority"}
        )
        assert [h.harmonized_frequency for h in result.harmonized_questions] == [5, 6]
        assert len(result.unresolvable_conflicts) == 2
        assert result.harmonized_questions[0].harmonization_reason == "Business priority maintained"

    def test_preserve_high_priority(self, harmonizer):
        result = harmonizer.harmonize_frequencies(
            [_question("q-a", 2, target=10, priority_level=5)],
            options=HarmonizationOptions(strategy="business_override", preserve_high_priority=True),
        )
        assert result.harmonized_questions[0].harmonized_frequency == 10
        assert len(result.resolved_conflicts) == 1


class TestErrorContainment:

    def test_strategy_failure_is_contained(self, harmonizer):
        """A question whose resolution fails keeps its frequency; the rest of the batch is harmonized."""
        result = harmonizer.harmonize_frequencies(
            [_question("q-a", 5), _question("q-b", 6), _question("q-c", 3, topic_category="delivery")],
            options={"strategy": "adaptive", "max_frequency_ratio": 1e308},
        )

        by_id = {h.question_id: h for h in result.harmonized_questions}
        assert by_id["q-a"].harmonized_frequency == 5
        assert by_id["q-a"].harmonization_reason.startswith("Resolution error: ")
        assert by_id["q-a"].conflicts_resolved == 0
        assert by_id["q-c"].harmonization_reason == "No conflicts detected"
        assert {c.question_id for c in result.unresolvable_conflicts} == {"q-a", "q-b"}
        assert result.resolved_conflicts == []

    def test_strategy_failure_is_logged(self, harmonizer):
        with patch("src.lib.question_logic.harmonizer.logger") as mock_logger:
            harmonizer.harmonize_frequencies(
                [_question("q-a", 5), _question("q-b", 6)],
                options={"strategy": "adaptive", "max_frequency_ratio": 1e308},
            )
        assert mock_logger.error.call_count == 2
        assert mock_logger.error.call_args.kwargs["exc_info"] is True

    def test_listing_failure_propagates(self, settings, clock):
        repository = MagicMock()
        repository.list_harmonizers.side_effect = RuntimeError("db down")
        harmonizer = ConflictHarmonizer(repository, BUSINESS_ID, settings=settings, clock=clock)

        with pytest.raises(RuntimeError):
            harmonizer.harmonize_frequencies([_question("q-a", 5)], options={"strategy": "business_override"})


class TestValidation:

    def test_unknown_strategy(self, harmonizer):
        with pytest.raises(ConfigurationError):
            harmonizer.harmonize_frequencies([_question("q-a", 5)], options={"strategy": "random"})

    def test_non_positive_frequency(self, harmonizer):
        with pytest.raises(ValidationError):
            harmonizer.harmonize_frequencies([{"question_id": "q-a", "current_frequency": 0, "target_frequency": 1}])

    def test_business_id_required(self, repository):
        with pytest.raises(ValidationError):
            ConflictHarmonizer(repository, "")


class TestAdministration:

    def test_update_harmonizer(self, harmonizer):
        created = harmonizer.create_harmonizer("Rule", "checkout", "lcm_frequency")
        updated = harmonizer.update_harmonizer(created.id, override_frequency=3.0, is_active=False)
        assert updated.override_frequency == 3.0
        assert updated.is_active is False

    def test_update_requires_fields(self, harmonizer):
        created = harmonizer.create_harmonizer("Rule", "checkout", "lcm_frequency")
        with pytest.raises(ValidationError):
            harmonizer.update_harmonizer(created.id, unknown="x")

    def test_update_other_business_is_not_found(self, harmonizer, repository):
        repository.save_harmonizer(FrequencyHarmonizer(
            id="h-other", business_id="biz-2", name="Other", rule_pattern="x"
        ))
        with pytest.raises(NotFoundError):
            harmonizer.update_harmonizer("h-other", name="Mine now")

    def test_unknown_resolution_method(self, harmonizer):
        with pytest.raises(ConfigurationError):
            harmonizer.create_harmonizer("Rule", "checkout", "coin_flip")

    def test_effectiveness_accumulates(self, harmonizer):
        created = harmonizer.create_harmonizer("Rule", "checkout", "business_override")
        harmonizer.update_effectiveness(created.id, 0.7, 3)
        updated = harmonizer.update_effectiveness(created.id, 0.9, 2)

        assert updated.effectiveness_score == 0.9
        assert updated.conflicts_resolved == 5

    def test_effectiveness_for_missing_harmonizer(self, harmonizer):
        with pytest.raises(NotFoundError):
            harmonizer.update_effectiveness("missing", 0.5, 1)

    def test_performance_requirement(self, harmonizer):
        assert harmonizer.validate_performance_requirement() is True
