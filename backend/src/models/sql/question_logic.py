"""SQLAlchemy models for question selection state.

Questions, triggers, harmonizers and weights are configured by businesses;
the question logic engine only writes window counters, the activation log
and harmonizer effectiveness.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class QuestionRow(Base):
    """Custom feedback question with its presentation window counter."""
    __tablename__ = "questions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="general")
    topic_category: Mapped[str] = mapped_column(String(100), nullable=False, default="general")
    priority_level: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    frequency_target: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    frequency_window: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")
    frequency_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    frequency_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_presented_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    business_rules: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_questions_business_id", "business_id"),
    )


class TriggerRow(Base):
    """Trigger rule attached to a question.

    ``conditions`` holds the type-specific parameters; ``trigger_type``
    selects which variant they are parsed into.
    """
    __tablename__ = "question_triggers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    question_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False
    )
    business_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    conditions: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_activations: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_question_triggers_question_id", "question_id"),
        Index("idx_question_triggers_business_id", "business_id"),
    )


class TriggerActivationRow(Base):
    """Append-only log of trigger firings."""
    __tablename__ = "trigger_activations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trigger_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("question_triggers.id", ondelete="CASCADE"), nullable=False
    )
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    evaluation_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    context_summary: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_trigger_activations_trigger_time", "trigger_id", "activated_at"),
    )


class FrequencyHarmonizerRow(Base):
    """Business rule used by the business_override harmonization strategy."""
    __tablename__ = "frequency_harmonizers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_pattern: Mapped[str] = mapped_column(String(255), nullable=False)
    resolution_method: Mapped[str] = mapped_column(String(32), nullable=False)
    override_frequency: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    conflict_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    business_overrides: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    effectiveness_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    conflicts_resolved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_frequency_harmonizers_business_id", "business_id"),
    )


class PriorityWeightRow(Base):
    """Per-category weight applied by the business_priority balancing strategy."""
    __tablename__ = "priority_weights"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    weight_factor: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    adjustment_rules: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_priority_weights_business_id", "business_id"),
    )


class QuestionAnalyticsRow(Base):
    """Presentation and response totals of a question for one period."""
    __tablename__ = "question_analytics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False
    )
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    presentation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("question_id", "period_type", "period_start", name="uq_question_analytics_period"),
    )
