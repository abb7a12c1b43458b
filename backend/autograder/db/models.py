"""ORM models backing the grading queue, draft results, and audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin, UTCDateTime, utcnow

JSONType = JSON


class GradingQueueItemModel(Base):
    __tablename__ = "grading_queue"
    __table_args__ = (
        Index("ix_grading_queue_eligible", "status", "next_run_at"),
        Index("ix_grading_queue_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    course_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cmid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    module_name: Mapped[str] = mapped_column(String(32), nullable=False)
    module_instance_id: Mapped[int] = mapped_column(Integer, nullable=False)
    component: Mapped[str] = mapped_column(String(64), nullable=False)
    event_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    results: Mapped[list["GradingResultModel"]] = relationship(back_populates="queue_item")


class GradingResultModel(Base):
    __tablename__ = "grading_results"
    __table_args__ = (
        Index(
            "ix_grading_results_activity_user",
            "module_name",
            "module_instance_id",
            "user_id",
            "status",
        ),
        Index("ix_grading_results_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("grading_queue.id", ondelete="SET NULL"), nullable=True
    )
    module_name: Mapped[str] = mapped_column(String(32), nullable=False)
    module_instance_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    course_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    submission_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    grade: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_grade: Mapped[float] = mapped_column(Float, default=100.0, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, default="", nullable=False)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    quality: Mapped[str] = mapped_column(String(16), default="balanced", nullable=False)
    rubric_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rubric_analysis: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    strengths: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    improvements: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    warnings: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="draft", nullable=False)
    reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reviewer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    review_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    queue_item: Mapped[Optional[GradingQueueItemModel]] = relationship(back_populates="results")
    rubric_scores: Mapped[list["RubricScoreModel"]] = relationship(
        back_populates="result",
        cascade="all, delete-orphan",
        order_by="RubricScoreModel.id",
    )


class RubricScoreModel(Base):
    __tablename__ = "grading_rubric_scores"
    __table_args__ = (Index("ix_grading_rubric_scores_result", "result_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    result_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("grading_results.id", ondelete="CASCADE"), nullable=False
    )
    criterion_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    criterion_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    level_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    level_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    feedback: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    result: Mapped[GradingResultModel] = relationship(back_populates="rubric_scores")


class GradingAuditLogModel(Base):
    __tablename__ = "grading_audit_log"
    __table_args__ = (
        Index("ix_grading_audit_log_queue", "queue_id"),
        Index("ix_grading_audit_log_actor_action", "actor_id", "action", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class ActivitySettingsModel(TimestampMixin, Base):
    __tablename__ = "grading_activity_settings"
    __table_args__ = (
        UniqueConstraint("module_name", "module_instance_id", name="uq_grading_activity_settings"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    module_name: Mapped[str] = mapped_column(String(32), nullable=False)
    module_instance_id: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quality: Mapped[str] = mapped_column(String(16), default="balanced", nullable=False)
    custom_instructions: Mapped[str] = mapped_column(Text, default="", nullable=False)
    auto_release: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


__all__ = [
    "ActivitySettingsModel",
    "GradingAuditLogModel",
    "GradingQueueItemModel",
    "GradingResultModel",
    "RubricScoreModel",
]
