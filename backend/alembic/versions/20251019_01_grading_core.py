"""Grading queue, results, rubric scores, audit log and activity settings."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20251019_01_grading_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "grading_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=True),
        sa.Column("cmid", sa.Integer(), nullable=True),
        sa.Column("module_name", sa.String(length=32), nullable=False),
        sa.Column("module_instance_id", sa.Integer(), nullable=False),
        sa.Column("component", sa.String(length=64), nullable=False),
        sa.Column("event_name", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_grading_queue_eligible", "grading_queue", ["status", "next_run_at"])
    op.create_index("ix_grading_queue_created", "grading_queue", ["created_at"])

    op.create_table(
        "grading_results",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("queue_id", sa.Integer(), sa.ForeignKey("grading_queue.id", ondelete="SET NULL"), nullable=True),
        sa.Column("module_name", sa.String(length=32), nullable=False),
        sa.Column("module_instance_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=True),
        sa.Column("submission_id", sa.Integer(), nullable=True),
        sa.Column("grade", sa.Float(), nullable=True),
        sa.Column("max_grade", sa.Float(), nullable=False, server_default="100"),
        sa.Column("reasoning", sa.Text(), nullable=False, server_default=""),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("method", sa.String(length=32), nullable=False),
        sa.Column("provider", sa.String(length=64), nullable=False),
        sa.Column("quality", sa.String(length=16), nullable=False, server_default="balanced"),
        sa.Column("rubric_version", sa.Integer(), nullable=True),
        sa.Column("rubric_analysis", sa.JSON(), nullable=True),
        sa.Column("strengths", sa.JSON(), nullable=False),
        sa.Column("improvements", sa.JSON(), nullable=False),
        sa.Column("warnings", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reviewer_id", sa.Integer(), nullable=True),
        sa.Column("review_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_grading_results_activity_user",
        "grading_results",
        ["module_name", "module_instance_id", "user_id", "status"],
    )
    op.create_index("ix_grading_results_created", "grading_results", ["created_at"])

    op.create_table(
        "grading_rubric_scores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("result_id", sa.Integer(), sa.ForeignKey("grading_results.id", ondelete="CASCADE"), nullable=False),
        sa.Column("criterion_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("criterion_name", sa.Text(), nullable=True),
        sa.Column("level_id", sa.Integer(), nullable=True),
        sa.Column("level_label", sa.Text(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("max_score", sa.Float(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_grading_rubric_scores_result", "grading_rubric_scores", ["result_id"])

    op.create_table(
        "grading_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("queue_id", sa.Integer(), nullable=True),
        sa.Column("result_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_grading_audit_log_queue", "grading_audit_log", ["queue_id"])
    op.create_index(
        "ix_grading_audit_log_actor_action",
        "grading_audit_log",
        ["actor_id", "action", "created_at"],
    )

    op.create_table(
        "grading_activity_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("module_name", sa.String(length=32), nullable=False),
        sa.Column("module_instance_id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("quality", sa.String(length=16), nullable=False, server_default="balanced"),
        sa.Column("custom_instructions", sa.Text(), nullable=False, server_default=""),
        sa.Column("auto_release", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("module_name", "module_instance_id", name="uq_grading_activity_settings"),
    )


def downgrade() -> None:
    op.drop_table("grading_activity_settings")
    op.drop_index("ix_grading_audit_log_actor_action", table_name="grading_audit_log")
    op.drop_index("ix_grading_audit_log_queue", table_name="grading_audit_log")
    op.drop_table("grading_audit_log")
    op.drop_index("ix_grading_rubric_scores_result", table_name="grading_rubric_scores")
    op.drop_table("grading_rubric_scores")
    op.drop_index("ix_grading_results_created", table_name="grading_results")
    op.drop_index("ix_grading_results_activity_user", table_name="grading_results")
    op.drop_table("grading_results")
    op.drop_index("ix_grading_queue_created", table_name="grading_queue")
    op.drop_index("ix_grading_queue_eligible", table_name="grading_queue")
    op.drop_table("grading_queue")
