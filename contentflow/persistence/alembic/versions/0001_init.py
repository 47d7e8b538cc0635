"""create program scheduling and publication tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Programs carry their target matrix, recurrence policy and running totals.
    op.create_table(
        "programs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("platform_id", sa.String(), nullable=True),
        sa.Column("content_types", _json(), nullable=False),
        sa.Column("countries", _json(), nullable=True),
        sa.Column("regions", _json(), nullable=True),
        sa.Column("languages", _json(), nullable=True),
        sa.Column("themes", _json(), nullable=True),
        sa.Column("provider_types", _json(), nullable=True),
        sa.Column("specialties", _json(), nullable=True),
        sa.Column("domains", _json(), nullable=True),
        sa.Column("services", _json(), nullable=True),
        sa.Column("quantity_mode", sa.String(), server_default="total", nullable=False),
        sa.Column("quantity_value", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("recurrence_type", sa.String(), server_default="once", nullable=False),
        sa.Column("recurrence_config", _json(), nullable=True),
        sa.Column("cron_expression", sa.String(), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), server_default="draft", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("options", _json(), nullable=True),
        sa.Column("total_generated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_published", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_errors", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_cost", sa.Numeric(14, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("run_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("daily_budget_limit", sa.Numeric(12, 2), nullable=True),
        sa.Column("daily_generation_limit", sa.Integer(), nullable=True),
        sa.Column("concurrent_jobs_limit", sa.Integer(), nullable=True),
        sa.Column("current_run_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )
    op.create_index("ix_programs_platform_id", "programs", ["platform_id"], unique=False)
    op.create_index("ix_programs_status_next_run", "programs", ["status", "next_run_at"], unique=False)

    op.create_table(
        "program_runs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("program_id", sa.String(), sa.ForeignKey("programs.id"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), server_default="running", nullable=False),
        sa.Column("items_planned", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("items_generated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("items_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("cost", sa.Numeric(14, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("summary", _json(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_program_runs_program_id", "program_runs", ["program_id"], unique=False)
    op.create_index(
        "ix_program_runs_program_started", "program_runs", ["program_id", "started_at"], unique=False
    )
    op.create_index("ix_program_runs_status", "program_runs", ["status"], unique=False)

    op.create_table(
        "program_items",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("program_id", sa.String(), sa.ForeignKey("programs.id"), nullable=False),
        sa.Column("program_run_id", sa.String(), sa.ForeignKey("program_runs.id"), nullable=False),
        sa.Column("country_id", sa.Integer(), nullable=True),
        sa.Column("language_id", sa.Integer(), nullable=True),
        sa.Column("theme_id", sa.Integer(), nullable=True),
        sa.Column("thematic_type", sa.String(), nullable=True),
        sa.Column("thematic_id", sa.Integer(), nullable=True),
        sa.Column("generation_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("cost", sa.Numeric(12, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("generation_params", _json(), nullable=True),
        sa.Column("result_data", _json(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("content_type", sa.String(), nullable=True),
        sa.Column("content_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_program_items_run_status", "program_items", ["program_run_id", "status"], unique=False
    )
    op.create_index(
        "ix_program_items_program_created", "program_items", ["program_id", "created_at"], unique=False
    )

    # One throttle policy per publication destination.
    op.create_table(
        "publication_schedules",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("destination_id", sa.String(), nullable=False),
        sa.Column("articles_per_day", sa.Integer(), server_default=sa.text("10"), nullable=False),
        sa.Column("max_per_hour", sa.Integer(), server_default=sa.text("2"), nullable=False),
        sa.Column("active_hours", _json(), nullable=False),
        sa.Column("active_days", _json(), nullable=False),
        sa.Column("min_interval_minutes", sa.Integer(), server_default=sa.text("30"), nullable=False),
        sa.Column("timezone", sa.String(), server_default="UTC", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("pause_on_error", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column(
            "max_errors_before_pause", sa.Integer(), server_default=sa.text("5"), nullable=False
        ),
        sa.Column("consecutive_errors", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_publication_schedules_destination_id",
        "publication_schedules",
        ["destination_id"],
        unique=True,
    )

    op.create_table(
        "publication_queue",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("content_id", sa.String(), nullable=False),
        sa.Column("destination_id", sa.String(), nullable=False),
        sa.Column(
            "program_item_id", sa.String(), sa.ForeignKey("program_items.id"), nullable=True
        ),
        sa.Column("priority", sa.String(), server_default="default", nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "content_type",
            "content_id",
            "destination_id",
            name="uq_publication_queue_content",
        ),
    )
    op.create_index(
        "ix_publication_queue_dest_status_sched",
        "publication_queue",
        ["destination_id", "status", "scheduled_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_publication_queue_dest_status_sched", table_name="publication_queue")
    op.drop_table("publication_queue")
    op.drop_index("ix_publication_schedules_destination_id", table_name="publication_schedules")
    op.drop_table("publication_schedules")
    op.drop_index("ix_program_items_program_created", table_name="program_items")
    op.drop_index("ix_program_items_run_status", table_name="program_items")
    op.drop_table("program_items")
    op.drop_index("ix_program_runs_status", table_name="program_runs")
    op.drop_index("ix_program_runs_program_started", table_name="program_runs")
    op.drop_index("ix_program_runs_program_id", table_name="program_runs")
    op.drop_table("program_runs")
    op.drop_index("ix_programs_status_next_run", table_name="programs")
    op.drop_index("ix_programs_platform_id", table_name="programs")
    op.drop_table("programs")
