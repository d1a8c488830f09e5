"""SQLAlchemy-backed question logic repository.

Counter writes are single statements so concurrent callers never lose an
update:

    UPDATE questions
       SET frequency_current = frequency_current + 1, last_presented_at = :now
     WHERE id = :id
 RETURNING frequency_current

Timestamps are stored in UTC. SQLite drops timezone information, so values
read back without a tzinfo are treated as UTC.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.lib.exceptions import NotFoundError, StorageError, ValidationError
from src.models.question_logic import (
    ActivationRecord,
    ActivationStats,
    AnalyticsBucket,
    FrequencyHarmonizer,
    PriorityWeight,
    Question,
    Trigger,
)
from src.models.sql.database import Base
from src.models.sql.question_logic import (
    FrequencyHarmonizerRow,
    PriorityWeightRow,
    QuestionAnalyticsRow,
    QuestionRow,
    TriggerActivationRow,
    TriggerRow,
)

logger = logging.getLogger(__name__)

QUESTION_FIELDS = (
    "business_id",
    "text",
    "category",
    "topic_category",
    "priority_level",
    "frequency_target",
    "frequency_window",
    "frequency_current",
    "frequency_reset_at",
    "last_presented_at",
    "created_at",
    "is_active",
    "business_rules",
)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _question_from_row(row: QuestionRow) -> Question:
    try:
        return Question(
            id=row.id,
            business_id=row.business_id,
            text=row.text,
            category=row.category,
            topic_category=row.topic_category,
            priority_level=row.priority_level,
            frequency_target=row.frequency_target,
            frequency_window=row.frequency_window,
            frequency_current=row.frequency_current,
            frequency_reset_at=to_utc(row.frequency_reset_at),
            last_presented_at=to_utc(row.last_presented_at),
            created_at=to_utc(row.created_at),
            is_active=row.is_active,
            business_rules=row.business_rules or {},
        )
    except PydanticValidationError as e:
        raise StorageError(
            f"Stored question {row.id} is invalid: {e}", details={"question_id": row.id}
        ) from e


def _trigger_from_row(row: TriggerRow) -> Trigger:
    try:
        return Trigger(
            id=row.id,
            question_id=row.question_id,
            business_id=row.business_id,
            conditions={**(row.conditions or {}), "trigger_type": row.trigger_type},
            priority=row.priority,
            is_enabled=row.is_enabled,
            cooldown_minutes=row.cooldown_minutes,
            max_activations=row.max_activations,
        )
    except PydanticValidationError as e:
        raise StorageError(
            f"Stored trigger {row.id} is invalid: {e}",
            details={"trigger_id": row.id, "trigger_type": row.trigger_type},
        ) from e


def _harmonizer_from_row(row: FrequencyHarmonizerRow) -> FrequencyHarmonizer:
    try:
        return FrequencyHarmonizer(
            id=row.id,
            business_id=row.business_id,
            name=row.name,
            rule_pattern=row.rule_pattern,
            resolution_method=row.resolution_method,
            override_frequency=row.override_frequency,
            conflict_threshold=row.conflict_threshold,
            business_overrides=row.business_overrides or {},
            is_active=row.is_active,
            effectiveness_score=row.effectiveness_score,
            conflicts_resolved=row.conflicts_resolved,
        )
    except PydanticValidationError as e:
        raise StorageError(
            f"Stored frequency harmonizer {row.id} is invalid: {e}", details={"harmonizer_id": row.id}
        ) from e


def _weight_from_row(row: PriorityWeightRow) -> PriorityWeight:
    return PriorityWeight(
        id=row.id,
        business_id=row.business_id,
        category=row.category,
        weight_factor=row.weight_factor,
        adjustment_rules=row.adjustment_rules or {},
        is_active=row.is_active,
    )


class SqlAlchemyRepository:
    """Question logic repository over a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        """
        Args:
            session_factory: Factory producing sessions bound to the target database
                (e.g. ``src.models.sql.database.SessionLocal``)
        """
        self._session_factory = session_factory

    def create_schema(self) -> None:
        """Create the question logic tables if they do not exist."""
        Base.metadata.create_all(self._session_factory.kw["bind"])

    @contextmanager
    def _session(self, operation: str, **context: Any) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.error(
                "Database error during %s", operation,
                exc_info=True, extra={"operation": operation, **context},
            )
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def add_question(self, question: Question) -> Question:
        with self._session("add_question", question_id=question.id) as session:
            row = QuestionRow(id=question.id)
            for name in QUESTION_FIELDS:
                value = getattr(question, name)
                setattr(row, name, to_utc(value) if isinstance(value, datetime) else value)
            session.merge(row)
        return question

    def add_analytics(self, question_id: str, buckets: List[AnalyticsBucket], period_type: str = "daily") -> None:
        with self._session("add_analytics", question_id=question_id) as session:
            for bucket in buckets:
                session.add(QuestionAnalyticsRow(
                    question_id=question_id,
                    period_type=period_type,
                    period_start=to_utc(bucket.period_start),
                    presentation_count=bucket.presentation_count,
                    response_count=bucket.response_count,
                    average_rating=bucket.average_rating,
                ))

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def get_question(self, question_id: str) -> Optional[Question]:
        with self._session("get_question", question_id=question_id) as session:
            row = session.get(QuestionRow, question_id)
            return _question_from_row(row) if row else None

    def increment_question_frequency(self, question_id: str, presented_at: datetime) -> int:
        with self._session("increment_question_frequency", question_id=question_id) as session:
            new_count = session.execute(
                update(QuestionRow)
                .where(QuestionRow.id == question_id)
                .values(
                    frequency_current=QuestionRow.frequency_current + 1,
                    last_presented_at=to_utc(presented_at),
                )
                .returning(QuestionRow.frequency_current)
            ).scalar_one_or_none()
            if new_count is None:
                raise NotFoundError(
                    f"Question {question_id} not found", entity="question", entity_id=question_id
                )
            return new_count

    def reset_question_frequency(self, question_id: str, reset_at: datetime) -> Question:
        with self._session("reset_question_frequency", question_id=question_id) as session:
            updated = session.execute(
                update(QuestionRow)
                .where(QuestionRow.id == question_id)
                .values(frequency_current=0, frequency_reset_at=to_utc(reset_at))
                .returning(QuestionRow.id)
            ).scalar_one_or_none()
            if updated is None:
                raise NotFoundError(
                    f"Question {question_id} not found", entity="question", entity_id=question_id
                )
            session.expire_all()
            return _question_from_row(session.get(QuestionRow, question_id))

    def update_question(self, question_id: str, fields: Dict[str, Any]) -> Question:
        with self._session("update_question", question_id=question_id) as session:
            row = session.get(QuestionRow, question_id)
            if row is None:
                raise NotFoundError(
                    f"Question {question_id} not found", entity="question", entity_id=question_id
                )
            # Validate the merged result before touching the row.
            try:
                merged = Question.model_validate({**_question_from_row(row).model_dump(), **fields})
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid update for question {question_id}: {e}", details={"question_id": question_id}
                ) from e
            for name in fields.keys() & set(QUESTION_FIELDS):
                value = getattr(merged, name)
                setattr(row, name, to_utc(value) if isinstance(value, datetime) else value)
            session.flush()
            return merged

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def list_enabled_triggers(self, question_id: str) -> List[Trigger]:
        with self._session("list_enabled_triggers", question_id=question_id) as session:
            rows = session.scalars(
                select(TriggerRow)
                .where(TriggerRow.question_id == question_id, TriggerRow.is_enabled.is_(True))
                .order_by(TriggerRow.id)
            ).all()
            return [_trigger_from_row(row) for row in rows]

    def list_business_triggers(self, business_id: str) -> List[Trigger]:
        with self._session("list_business_triggers", business_id=business_id) as session:
            rows = session.scalars(
                select(TriggerRow)
                .outerjoin(QuestionRow, QuestionRow.id == TriggerRow.question_id)
                .where(or_(
                    TriggerRow.business_id == business_id,
                    (TriggerRow.business_id.is_(None)) & (QuestionRow.business_id == business_id),
                ))
                .order_by(TriggerRow.id)
            ).all()
            return [_trigger_from_row(row) for row in rows]

    def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        with self._session("get_trigger", trigger_id=trigger_id) as session:
            row = session.get(TriggerRow, trigger_id)
            return _trigger_from_row(row) if row else None

    def save_trigger(self, trigger: Trigger) -> Trigger:
        """Upsert a trigger's configuration. Activation history is stored separately."""
        conditions = trigger.conditions.model_dump(mode="json", exclude={"trigger_type"})
        with self._session("save_trigger", trigger_id=trigger.id) as session:
            session.merge(TriggerRow(
                id=trigger.id,
                question_id=trigger.question_id,
                business_id=trigger.business_id,
                trigger_type=trigger.conditions.trigger_type,
                conditions=conditions,
                priority=trigger.priority.value,
                is_enabled=trigger.is_enabled,
                cooldown_minutes=trigger.cooldown_minutes,
                max_activations=trigger.max_activations,
            ))
            for record in trigger.activation_history:
                session.add(TriggerActivationRow(
                    trigger_id=trigger.id,
                    activated_at=to_utc(record.activated_at),
                    evaluation_time_ms=record.evaluation_time_ms,
                    context_summary=record.context_summary,
                ))
        return trigger.model_copy(update={"activation_history": []})

    def _require_trigger(self, session: Session, trigger_id: str) -> None:
        if session.get(TriggerRow, trigger_id) is None:
            raise NotFoundError(f"Trigger {trigger_id} not found", entity="trigger", entity_id=trigger_id)

    def get_activation_stats(self, trigger_id: str) -> ActivationStats:
        with self._session("get_activation_stats", trigger_id=trigger_id) as session:
            self._require_trigger(session, trigger_id)
            count, last = session.execute(
                select(func.count(TriggerActivationRow.id), func.max(TriggerActivationRow.activated_at))
                .where(TriggerActivationRow.trigger_id == trigger_id)
            ).one()
            return ActivationStats(activation_count=count, last_activated_at=to_utc(last))

    def get_activation_history(self, trigger_id: str, limit: int = 100) -> List[ActivationRecord]:
        with self._session("get_activation_history", trigger_id=trigger_id) as session:
            self._require_trigger(session, trigger_id)
            rows = session.scalars(
                select(TriggerActivationRow)
                .where(TriggerActivationRow.trigger_id == trigger_id)
                .order_by(TriggerActivationRow.activated_at.desc(), TriggerActivationRow.id.desc())
                .limit(limit)
            ).all()
            return [
                ActivationRecord(
                    activated_at=to_utc(row.activated_at),
                    evaluation_time_ms=row.evaluation_time_ms,
                    context_summary=row.context_summary or {},
                )
                for row in rows
            ]

    def append_trigger_activation(self, trigger_id: str, record: ActivationRecord) -> None:
        with self._session("append_trigger_activation", trigger_id=trigger_id) as session:
            self._require_trigger(session, trigger_id)
            session.add(TriggerActivationRow(
                trigger_id=trigger_id,
                activated_at=to_utc(record.activated_at),
                evaluation_time_ms=record.evaluation_time_ms,
                context_summary=record.context_summary,
            ))

    # ------------------------------------------------------------------
    # Harmonizers and weights
    # ------------------------------------------------------------------

    def list_harmonizers(self, business_id: str, active_only: bool = True) -> List[FrequencyHarmonizer]:
        with self._session("list_harmonizers", business_id=business_id) as session:
            query = select(FrequencyHarmonizerRow).where(FrequencyHarmonizerRow.business_id == business_id)
            if active_only:
                query = query.where(FrequencyHarmonizerRow.is_active.is_(True))
            rows = session.scalars(query.order_by(FrequencyHarmonizerRow.id)).all()
            return [_harmonizer_from_row(row) for row in rows]

    def get_harmonizer(self, harmonizer_id: str) -> Optional[FrequencyHarmonizer]:
        with self._session("get_harmonizer", harmonizer_id=harmonizer_id) as session:
            row = session.get(FrequencyHarmonizerRow, harmonizer_id)
            return _harmonizer_from_row(row) if row else None

    def save_harmonizer(self, harmonizer: FrequencyHarmonizer) -> FrequencyHarmonizer:
        with self._session("save_harmonizer", harmonizer_id=harmonizer.id) as session:
            session.merge(FrequencyHarmonizerRow(
                id=harmonizer.id,
                business_id=harmonizer.business_id,
                name=harmonizer.name,
                rule_pattern=harmonizer.rule_pattern,
                resolution_method=harmonizer.resolution_method.value,
                override_frequency=harmonizer.override_frequency,
                conflict_threshold=harmonizer.conflict_threshold,
                business_overrides=harmonizer.business_overrides,
                is_active=harmonizer.is_active,
                effectiveness_score=harmonizer.effectiveness_score,
                conflicts_resolved=harmonizer.conflicts_resolved,
            ))
        return harmonizer

    def update_harmonizer_effectiveness(
        self, harmonizer_id: str, effectiveness_score: float, conflicts_resolved: int
    ) -> FrequencyHarmonizer:
        with self._session("update_harmonizer_effectiveness", harmonizer_id=harmonizer_id) as session:
            updated = session.execute(
                update(FrequencyHarmonizerRow)
                .where(FrequencyHarmonizerRow.id == harmonizer_id)
                .values(
                    effectiveness_score=effectiveness_score,
                    conflicts_resolved=FrequencyHarmonizerRow.conflicts_resolved + conflicts_resolved,
                )
                .returning(FrequencyHarmonizerRow.id)
            ).scalar_one_or_none()
            if updated is None:
                raise NotFoundError(
                    f"Frequency harmonizer {harmonizer_id} not found",
                    entity="frequency_harmonizer",
                    entity_id=harmonizer_id,
                )
            session.expire_all()
            return _harmonizer_from_row(session.get(FrequencyHarmonizerRow, harmonizer_id))

    def list_priority_weights(self, business_id: str, active_only: bool = True) -> List[PriorityWeight]:
        with self._session("list_priority_weights", business_id=business_id) as session:
            query = select(PriorityWeightRow).where(PriorityWeightRow.business_id == business_id)
            if active_only:
                query = query.where(PriorityWeightRow.is_active.is_(True))
            rows = session.scalars(query.order_by(PriorityWeightRow.id)).all()
            return [_weight_from_row(row) for row in rows]

    def get_priority_weight(self, weight_id: str) -> Optional[PriorityWeight]:
        with self._session("get_priority_weight", weight_id=weight_id) as session:
            row = session.get(PriorityWeightRow, weight_id)
            return _weight_from_row(row) if row else None

    def save_priority_weight(self, weight: PriorityWeight) -> PriorityWeight:
        with self._session("save_priority_weight", weight_id=weight.id) as session:
            session.merge(PriorityWeightRow(
                id=weight.id,
                business_id=weight.business_id,
                category=weight.category,
                weight_factor=weight.weight_factor,
                adjustment_rules=weight.adjustment_rules,
                is_active=weight.is_active,
            ))
        return weight

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def get_analytics_summary(self, question_id: str, period_type: str, periods: int) -> List[AnalyticsBucket]:
        with self._session("get_analytics_summary", question_id=question_id) as session:
            rows = session.scalars(
                select(QuestionAnalyticsRow)
                .where(
                    QuestionAnalyticsRow.question_id == question_id,
                    QuestionAnalyticsRow.period_type == period_type,
                )
                .order_by(QuestionAnalyticsRow.period_start.desc())
                .limit(periods)
            ).all()
            return [
                AnalyticsBucket(
                    period_start=to_utc(row.period_start),
                    presentation_count=row.presentation_count,
                    response_count=row.response_count,
                    average_rating=row.average_rating,
                )
                for row in rows
            ]
