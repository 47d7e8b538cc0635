from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted; pass an aware UTC value")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        # SQLite drops tzinfo on round-trip; stored values are always UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


PROGRAM_STATUS_DRAFT = "draft"
PROGRAM_STATUS_SCHEDULED = "scheduled"
PROGRAM_STATUS_ACTIVE = "active"
PROGRAM_STATUS_PAUSED = "paused"
PROGRAM_STATUS_COMPLETED = "completed"
PROGRAM_STATUS_ERROR = "error"

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"
RUN_STATUS_CANCELLED = "cancelled"

ITEM_STATUS_PENDING = "pending"
ITEM_STATUS_GENERATING = "generating"
ITEM_STATUS_COMPLETED = "completed"
ITEM_STATUS_FAILED = "failed"

QUEUE_STATUS_PENDING = "pending"
QUEUE_STATUS_SCHEDULED = "scheduled"
QUEUE_STATUS_PUBLISHING = "publishing"
QUEUE_STATUS_PUBLISHED = "published"
QUEUE_STATUS_FAILED = "failed"
QUEUE_STATUS_CANCELLED = "cancelled"

PRIORITY_HIGH = "high"
PRIORITY_DEFAULT = "default"
PRIORITY_LOW = "low"


class Program(Base):
    __tablename__ = "programs"
    __table_args__ = (
        Index("ix_programs_status_next_run", "status", "next_run_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    # Target matrix; an empty or null list means "all active rows".
    content_types: Mapped[list[str]] = mapped_column(JSONType, default=list)
    countries: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    regions: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    languages: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)
    themes: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    provider_types: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    specialties: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    domains: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    services: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)

    quantity_mode: Mapped[str] = mapped_column(String, default="total")
    quantity_value: Mapped[int] = mapped_column(Integer, default=1)

    recurrence_type: Mapped[str] = mapped_column(String, default="once")
    # Keys: time ("HH:MM"), timezone, days (ISO weekdays), day_of_month.
    recurrence_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    cron_expression: Mapped[str | None] = mapped_column(String, nullable=True)

    start_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    end_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    status: Mapped[str] = mapped_column(String, default=PROGRAM_STATUS_DRAFT)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    total_generated: Mapped[int] = mapped_column(Integer, default=0)
    total_published: Mapped[int] = mapped_column(Integer, default=0)
    total_errors: Mapped[int] = mapped_column(Integer, default=0)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("0"))
    run_count: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[int] = mapped_column(Integer, default=0)

    daily_budget_limit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    daily_generation_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    concurrent_jobs_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Set while a run owns the program; cleared when the run settles.
    current_run_id: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class ProgramRun(Base):
    __tablename__ = "program_runs"
    __table_args__ = (
        Index("ix_program_runs_program_started", "program_id", "started_at"),
        Index("ix_program_runs_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    program_id: Mapped[str] = mapped_column(String, ForeignKey("programs.id"), index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String, default=RUN_STATUS_RUNNING)
    items_planned: Mapped[int] = mapped_column(Integer, default=0)
    items_generated: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("0"))
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class ProgramItem(Base):
    __tablename__ = "program_items"
    __table_args__ = (
        Index("ix_program_items_run_status", "program_run_id", "status"),
        Index("ix_program_items_program_created", "program_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    program_id: Mapped[str] = mapped_column(String, ForeignKey("programs.id"))
    program_run_id: Mapped[str] = mapped_column(String, ForeignKey("program_runs.id"))
    country_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    language_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    theme_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    thematic_type: Mapped[str | None] = mapped_column(String, nullable=True)
    thematic_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    generation_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=ITEM_STATUS_PENDING)
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    generation_params: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    result_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Both null until the item completes.
    content_type: Mapped[str | None] = mapped_column(String, nullable=True)
    content_id: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class PublicationSchedule(Base):
    __tablename__ = "publication_schedules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    destination_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    articles_per_day: Mapped[int] = mapped_column(Integer, default=10)
    max_per_hour: Mapped[int] = mapped_column(Integer, default=2)
    # Hours of day 0-23 and ISO weekdays 1-7, evaluated in `timezone`.
    active_hours: Mapped[list[int]] = mapped_column(JSONType, default=list)
    active_days: Mapped[list[int]] = mapped_column(JSONType, default=list)
    min_interval_minutes: Mapped[int] = mapped_column(Integer, default=30)
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    pause_on_error: Mapped[bool] = mapped_column(Boolean, default=True)
    max_errors_before_pause: Mapped[int] = mapped_column(Integer, default=5)
    consecutive_errors: Mapped[int] = mapped_column(Integer, default=0)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class PublicationQueueEntry(Base):
    __tablename__ = "publication_queue"
    __table_args__ = (
        UniqueConstraint(
            "content_type", "content_id", "destination_id", name="uq_publication_queue_content"
        ),
        Index("ix_publication_queue_dest_status_sched", "destination_id", "status", "scheduled_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    content_type: Mapped[str] = mapped_column(String)
    content_id: Mapped[str] = mapped_column(String)
    destination_id: Mapped[str] = mapped_column(String)
    program_item_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("program_items.id"), nullable=True
    )
    priority: Mapped[str] = mapped_column(String, default=PRIORITY_DEFAULT)
    status: Mapped[str] = mapped_column(String, default=QUEUE_STATUS_PENDING)
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
