"""Persistence collaborator for the question logic engine.

The engine never issues read-modify-write sequences for counters it owns.
Repositories must provide the atomic primitives below (increment-and-return,
single-row upsert, append to log) and serialize writes per row.

Two implementations ship with the engine:
- InMemoryRepository: lock-protected dictionaries, used by tests and demos
- SqlAlchemyRepository (sql_repository.py): relational storage
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from src.lib.exceptions import NotFoundError
from src.models.question_logic import (
    ActivationRecord,
    ActivationStats,
    AnalyticsBucket,
    FrequencyHarmonizer,
    PriorityWeight,
    Question,
    Trigger,
)

logger = logging.getLogger(__name__)


class QuestionLogicRepository(Protocol):
    """Storage operations the engine depends on."""

    # Questions
    def get_question(self, question_id: str) -> Optional[Question]: ...

    def increment_question_frequency(self, question_id: str, presented_at: datetime) -> int: ...

    def reset_question_frequency(self, question_id: str, reset_at: datetime) -> Question: ...

    def update_question(self, question_id: str, fields: Dict[str, Any]) -> Question: ...

    # Triggers
    def list_enabled_triggers(self, question_id: str) -> List[Trigger]: ...

    def list_business_triggers(self, business_id: str) -> List[Trigger]: ...

    def get_trigger(self, trigger_id: str) -> Optional[Trigger]: ...

    def save_trigger(self, trigger: Trigger) -> Trigger: ...

    def get_activation_stats(self, trigger_id: str) -> ActivationStats: ...

    def get_activation_history(self, trigger_id: str, limit: int = 100) -> List[ActivationRecord]: ...

    def append_trigger_activation(self, trigger_id: str, record: ActivationRecord) -> None: ...

    # Harmonizers and weights
    def list_harmonizers(self, business_id: str, active_only: bool = True) -> List[FrequencyHarmonizer]: ...

    def get_harmonizer(self, harmonizer_id: str) -> Optional[FrequencyHarmonizer]: ...

    def save_harmonizer(self, harmonizer: FrequencyHarmonizer) -> FrequencyHarmonizer: ...

    def update_harmonizer_effectiveness(
        self, harmonizer_id: str, effectiveness_score: float, conflicts_resolved: int
    ) -> FrequencyHarmonizer: ...

    def list_priority_weights(self, business_id: str, active_only: bool = True) -> List[PriorityWeight]: ...

    def get_priority_weight(self, weight_id: str) -> Optional[PriorityWeight]: ...

    def save_priority_weight(self, weight: PriorityWeight) -> PriorityWeight: ...

    # Analytics
    def get_analytics_summary(
        self, question_id: str, period_type: str, periods: int
    ) -> List[AnalyticsBucket]: ...


class InMemoryRepository:
    """Dictionary-backed repository.

    Every public method holds the same lock, which gives the per-row
    serialization the engine relies on. Models are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.questions: Dict[str, Question] = {}
        self.triggers: Dict[str, Trigger] = {}
        self.harmonizers: Dict[str, FrequencyHarmonizer] = {}
        self.weights: Dict[str, PriorityWeight] = {}
        # question_id -> period_type -> buckets (newest first)
        self.analytics: Dict[str, Dict[str, List[AnalyticsBucket]]] = {}

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def add_question(self, question: Question) -> Question:
        with self._lock:
            self.questions[question.id] = question.model_copy(deep=True)
        return question

    def add_analytics(self, question_id: str, buckets: List[AnalyticsBucket], period_type: str = "daily") -> None:
        """Store analytics buckets; they are kept newest first."""
        with self._lock:
            per_question = self.analytics.setdefault(question_id, {})
            existing = per_question.get(period_type, [])
            merged = existing + [b.model_copy() for b in buckets]
            merged.sort(key=lambda b: b.period_start, reverse=True)
            per_question[period_type] = merged

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def _require_question(self, question_id: str) -> Question:
        question = self.questions.get(question_id)
        if question is None:
            raise NotFoundError(
                f"Question {question_id} not found", entity="question", entity_id=question_id
            )
        return question

    def get_question(self, question_id: str) -> Optional[Question]:
        with self._lock:
            question = self.questions.get(question_id)
            return question.model_copy(deep=True) if question else None

    def increment_question_frequency(self, question_id: str, presented_at: datetime) -> int:
        with self._lock:
            question = self._require_question(question_id)
            question.frequency_current += 1
            question.last_presented_at = presented_at
            return question.frequency_current

    def reset_question_frequency(self, question_id: str, reset_at: datetime) -> Question:
        with self._lock:
            question = self._require_question(question_id)
            question.frequency_current = 0
            question.frequency_reset_at = reset_at
            return question.model_copy(deep=True)

    def update_question(self, question_id: str, fields: Dict[str, Any]) -> Question:
        with self._lock:
            question = self._require_question(question_id)
            updated = question.model_copy(update=fields, deep=True)
            # Re-validate so bad field values never reach the store.
            updated = Question.model_validate(updated.model_dump())
            self.questions[question_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def list_enabled_triggers(self, question_id: str) -> List[Trigger]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self.triggers.values()
                if t.question_id == question_id and t.is_enabled
            ]

    def list_business_triggers(self, business_id: str) -> List[Trigger]:
        with self._lock:
            result = []
            for trigger in self.triggers.values():
                owner = trigger.business_id
                if owner is None:
                    question = self.questions.get(trigger.question_id)
                    owner = question.business_id if question else None
                if owner == business_id:
                    result.append(trigger.model_copy(deep=True))
            return result

    def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        with self._lock:
            trigger = self.triggers.get(trigger_id)
            return trigger.model_copy(deep=True) if trigger else None

    def save_trigger(self, trigger: Trigger) -> Trigger:
        with self._lock:
            existing = self.triggers.get(trigger.id)
            stored = trigger.model_copy(deep=True)
            if existing is not None and not stored.activation_history:
                # History is append-only; configuration saves never truncate it.
                stored.activation_history = list(existing.activation_history)
            self.triggers[trigger.id] = stored
            return stored.model_copy(deep=True)

    def _require_trigger(self, trigger_id: str) -> Trigger:
        trigger = self.triggers.get(trigger_id)
        if trigger is None:
            raise NotFoundError(
                f"Trigger {trigger_id} not found", entity="trigger", entity_id=trigger_id
            )
        return trigger

    def get_activation_stats(self, trigger_id: str) -> ActivationStats:
        with self._lock:
            history = self._require_trigger(trigger_id).activation_history
            if not history:
                return ActivationStats()
            return ActivationStats(
                activation_count=len(history),
                last_activated_at=max(record.activated_at for record in history),
            )

    def get_activation_history(self, trigger_id: str, limit: int = 100) -> List[ActivationRecord]:
        with self._lock:
            history = self._require_trigger(trigger_id).activation_history
            ordered = sorted(history, key=lambda r: r.activated_at, reverse=True)
            return [record.model_copy(deep=True) for record in ordered[:limit]]

    def append_trigger_activation(self, trigger_id: str, record: ActivationRecord) -> None:
        with self._lock:
            self._require_trigger(trigger_id).activation_history.append(record.model_copy(deep=True))

    # ------------------------------------------------------------------
    # Harmonizers and weights
    # ------------------------------------------------------------------

    def list_harmonizers(self, business_id: str, active_only: bool = True) -> List[FrequencyHarmonizer]:
        with self._lock:
            return [
                h.model_copy(deep=True)
                for h in self.harmonizers.values()
                if h.business_id == business_id and (h.is_active or not active_only)
            ]

    def get_harmonizer(self, harmonizer_id: str) -> Optional[FrequencyHarmonizer]:
        with self._lock:
            harmonizer = self.harmonizers.get(harmonizer_id)
            return harmonizer.model_copy(deep=True) if harmonizer else None

    def save_harmonizer(self, harmonizer: FrequencyHarmonizer) -> FrequencyHarmonizer:
        with self._lock:
            self.harmonizers[harmonizer.id] = harmonizer.model_copy(deep=True)
            return harmonizer.model_copy(deep=True)

    def update_harmonizer_effectiveness(
        self, harmonizer_id: str, effectiveness_score: float, conflicts_resolved: int
    ) -> FrequencyHarmonizer:
        with self._lock:
            harmonizer = self.harmonizers.get(harmonizer_id)
            if harmonizer is None:
                raise NotFoundError(
                    f"Frequency harmonizer {harmonizer_id} not found",
                    entity="frequency_harmonizer",
                    entity_id=harmonizer_id,
                )
            harmonizer.effectiveness_score = effectiveness_score
            harmonizer.conflicts_resolved += conflicts_resolved
            return harmonizer.model_copy(deep=True)

    def list_priority_weights(self, business_id: str, active_only: bool = True) -> List[PriorityWeight]:
        with self._lock:
            return [
                w.model_copy(deep=True)
                for w in self.weights.values()
                if w.business_id == business_id and (w.is_active or not active_only)
            ]

    def get_priority_weight(self, weight_id: str) -> Optional[PriorityWeight]:
        with self._lock:
            weight = self.weights.get(weight_id)
            return weight.model_copy(deep=True) if weight else None

    def save_priority_weight(self, weight: PriorityWeight) -> PriorityWeight:
        with self._lock:
            self.weights[weight.id] = weight.model_copy(deep=True)
            return weight.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def get_analytics_summary(self, question_id: str, period_type: str, periods: int) -> List[AnalyticsBucket]:
        with self._lock:
            buckets = self.analytics.get(question_id, {}).get(period_type, [])
            return [b.model_copy() for b in buckets[:periods]]
