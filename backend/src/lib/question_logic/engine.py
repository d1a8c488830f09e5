"""
QuestionSelectionEngine: picks the questions to ask in one customer interaction.

Pipeline:
    1. load       - fetch questions, drop inactive ones
    2. frequency  - drop questions whose window budget is exhausted
    3. triggers   - drop questions no trigger currently fires for
    4. harmonize  - align frequencies across the survivors
    5. balance    - assign final priorities, optionally fit a time budget

The caller presents the returned list and reports presentations back through
record_presentations().
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from src.lib.context import set_current_business_id, set_current_session_id
from src.lib.exceptions import NotFoundError, ValidationError
from src.lib.question_logic.balancer import PriorityBalancer, PriorityScorer, estimate_duration
from src.lib.question_logic.frequency import FrequencyTracker
from src.lib.question_logic.harmonizer import ConflictHarmonizer
from src.lib.question_logic.repository import QuestionLogicRepository
from src.lib.question_logic.settings import QuestionLogicSettings, load_settings
from src.lib.question_logic.triggers import NO_ACTIVE_TRIGGERS, TriggerEvaluator, coerce_context
from src.lib.ttl_cache import Clock, utc_now
from src.models.question_logic import Question
from src.schemas.question_logic import (
    BalanceConfig,
    HarmonizationOptions,
    QuestionForBalancing,
    QuestionForHarmonization,
    QuestionSelectionResult,
    SelectedQuestion,
    SelectionStage,
    TriggerEvaluationContext,
    TriggerEvaluationResult,
)

logger = logging.getLogger(__name__)


def recency_score(hours_since_presented: Optional[float]) -> float:
    """Map hours since the last presentation to a 0-10 recency score."""
    if hours_since_presented is None:
        return 5.0
    if hours_since_presented < 1:
        return 0.0
    if hours_since_presented < 6:
        return 2.0
    if hours_since_presented < 24:
        return 5.0
    if hours_since_presented < 72:
        return 7.0
    return 10.0


class QuestionSelectionEngine:
    """Runs the selection pipeline against one repository."""

    def __init__(
        self,
        repository: QuestionLogicRepository,
        settings: Optional[QuestionLogicSettings] = None,
        clock: Optional[Clock] = None,
        tracker: Optional[FrequencyTracker] = None,
        evaluator: Optional[TriggerEvaluator] = None,
        scorer: Optional[PriorityScorer] = None,
    ):
        self.repository = repository
        self.settings = settings or load_settings()
        self._clock = clock or utc_now
        self.tracker = tracker or FrequencyTracker(repository, settings=self.settings, clock=self._clock)
        self.evaluator = evaluator or TriggerEvaluator(repository, settings=self.settings, clock=self._clock)
        self._scorer = scorer
        self._harmonizers: Dict[str, ConflictHarmonizer] = {}
        self._balancers: Dict[str, PriorityBalancer] = {}

    def harmonizer_for(self, business_id: str) -> ConflictHarmonizer:
        if business_id not in self._harmonizers:
            self._harmonizers[business_id] = ConflictHarmonizer(
                self.repository, business_id, settings=self.settings, clock=self._clock
            )
        return self._harmonizers[business_id]

    def balancer_for(self, business_id: str) -> PriorityBalancer:
        if business_id not in self._balancers:
            self._balancers[business_id] = PriorityBalancer(
                self.repository, business_id, settings=self.settings, scorer=self._scorer
            )
        return self._balancers[business_id]

    def select_questions(
        self,
        business_id: str,
        question_ids: Sequence[str],
        context: Union[TriggerEvaluationContext, Dict[str, Any]],
        max_duration_seconds: Optional[float] = None,
        harmonization: Optional[Union[HarmonizationOptions, Dict[str, Any]]] = None,
        balance: Optional[Union[BalanceConfig, Dict[str, Any]]] = None,
        include_untriggered: bool = False,
    ) -> QuestionSelectionResult:
        """Select and order the questions to ask.

        Args:
            business_id: Business the interaction belongs to
            question_ids: Candidate questions
            context: Runtime facts used by trigger evaluation
            max_duration_seconds: Optional speaking-time budget for the call
            harmonization: Harmonization options (strategy and tuning)
            balance: Balancing config; ignored when a time budget is given,
                which always balances with the time_sensitive strategy
            include_untriggered: Keep questions that have no active triggers

        Returns:
            QuestionSelectionResult with the ordered selection, per-question
            exclusion reasons and per-stage timings

        Raises:
            ValidationError: If identifiers or the context are malformed
            NotFoundError: If a candidate question does not exist
        """
        if not business_id:
            raise ValidationError("Business ID is required", details={"field": "business_id"})
        if any(not question_id for question_id in question_ids):
            raise ValidationError("Question IDs must be non-empty", details={"field": "question_ids"})
        context = coerce_context(context)

        set_current_business_id(business_id)
        if context.customer_data and context.customer_data.session_id:
            set_current_session_id(context.customer_data.session_id)

        result = QuestionSelectionResult(business_id=business_id)

        with self._stage(result, "load", len(question_ids)) as stage:
            questions = self._load(business_id, question_ids, result.excluded)
            stage.questions_out = len(questions)

        with self._stage(result, "frequency", len(questions)) as stage:
            available = []
            for question in questions:
                if self.tracker.can_present_question(question.id):
                    available.append(question)
                else:
                    result.excluded[question.id] = "frequency limit reached"
            questions = available
            stage.questions_out = len(questions)

        triggers: Dict[str, TriggerEvaluationResult] = {}
        with self._stage(result, "triggers", len(questions)) as stage:
            eligible = []
            for question in questions:
                outcome = self.evaluator.evaluate_triggers(question.id, context)
                if outcome.triggered or (include_untriggered and outcome.reason == NO_ACTIVE_TRIGGERS):
                    triggers[question.id] = outcome
                    eligible.append(question)
                else:
                    result.excluded[question.id] = outcome.reason
            questions = eligible
            stage.questions_out = len(questions)

        if not questions:
            logger.info(
                "No questions eligible for business %s", business_id,
                extra={"business_id": business_id, "excluded": len(result.excluded)},
            )
            return result

        with self._stage(result, "harmonization", len(questions)) as stage:
            result.harmonization = self.harmonizer_for(business_id).harmonize_frequencies(
                [self._for_harmonization(q) for q in questions],
                options=harmonization,
            )
            stage.questions_out = len(result.harmonization.harmonized_questions)
        harmonized = {h.question_id: h.harmonized_frequency for h in result.harmonization.harmonized_questions}

        with self._stage(result, "balancing", len(questions)) as stage:
            candidates = [self._for_balancing(q, triggers[q.id]) for q in questions]
            balancer = self.balancer_for(business_id)
            if max_duration_seconds is not None:
                result.balancing = balancer.optimize_for_time_constraint(candidates, max_duration_seconds)
            else:
                result.balancing = balancer.balance_question_priorities(candidates, balance)
            stage.questions_out = len(result.balancing.balanced_questions)

        kept = {b.question_id for b in result.balancing.balanced_questions}
        for question in questions:
            if question.id not in kept:
                result.excluded[question.id] = (
                    "did not fit time budget" if max_duration_seconds is not None else "dropped by balancing"
                )

        ordered = sorted(result.balancing.balanced_questions, key=lambda b: b.balanced_priority, reverse=True)
        result.selected = [
            SelectedQuestion(
                question_id=balanced.question_id,
                text=balanced.text,
                balanced_priority=balanced.balanced_priority,
                harmonized_frequency=harmonized.get(balanced.question_id),
                trigger_id=triggers[balanced.question_id].trigger_id,
                trigger_confidence=triggers[balanced.question_id].confidence,
            )
            for balanced in ordered
        ]

        logger.info(
            "Selected %d of %d questions for business %s",
            len(result.selected), len(question_ids), business_id,
            extra={"business_id": business_id, "selected": [s.question_id for s in result.selected]},
        )
        return result

    def record_presentations(self, question_ids: Sequence[str]) -> Dict[str, int]:
        """Record that the selected questions were presented.

        Returns:
            Mapping of question id to its window count after the presentation

        Raises:
            PolicyViolation: If a question's budget is exhausted
        """
        return {question_id: self.tracker.record_presentation(question_id) for question_id in question_ids}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, result: QuestionSelectionResult, name: str, questions_in: int) -> Iterator[SelectionStage]:
        stage = SelectionStage(stage=name, processing_time_ms=0.0, questions_in=questions_in, questions_out=0)
        started = time.perf_counter()
        try:
            yield stage
        finally:
            stage.processing_time_ms = (time.perf_counter() - started) * 1000
            result.stages.append(stage)

    def _load(self, business_id: str, question_ids: Sequence[str], excluded: Dict[str, str]) -> List[Question]:
        questions = []
        for question_id in question_ids:
            question = self.repository.get_question(question_id)
            if question is None:
                raise NotFoundError(
                    f"Question {question_id} not found", entity="question", entity_id=question_id
                )
            if question.business_id != business_id:
                raise ValidationError(
                    f"Question {question_id} does not belong to business {business_id}",
                    details={"question_id": question_id, "business_id": business_id},
                )
            if not question.is_active:
                excluded[question_id] = "question inactive"
                continue
            questions.append(question)
        return questions

    @staticmethod
    def _for_harmonization(question: Question) -> QuestionForHarmonization:
        target = question.business_rules.get("target_frequency") or question.frequency_target * 1.2
        return QuestionForHarmonization(
            question_id=question.id,
            text=question.text,
            current_frequency=question.frequency_target,
            target_frequency=target,
            category=question.category,
            topic_category=question.topic_category,
            priority_level=question.priority_level,
            last_presented_at=question.last_presented_at,
            business_rules=question.business_rules,
        )

    def _for_balancing(self, question: Question, trigger: TriggerEvaluationResult) -> QuestionForBalancing:
        hours = None
        if question.last_presented_at is not None:
            hours = (self._clock() - question.last_presented_at).total_seconds() / 3600

        usage = question.frequency_current / question.frequency_target if question.frequency_target else 1.0
        balancing = self.settings.balancing
        return QuestionForBalancing(
            question_id=question.id,
            text=question.text,
            category=question.category,
            topic_category=question.topic_category,
            base_priority=question.priority_level,
            frequency_score=min(10.0, usage * 10),
            recency_score=recency_score(hours),
            business_importance=question.business_rules.get("business_importance", question.priority_level),
            customer_relevance=min(5.0, trigger.confidence * 5),
            estimated_duration=estimate_duration(
                question.text, balancing.chars_per_second, balancing.min_question_seconds
            ),
        )
