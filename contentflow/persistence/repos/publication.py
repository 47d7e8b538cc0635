from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.domain.models import (
    PRIORITY_DEFAULT,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    QUEUE_STATUS_PENDING,
    QUEUE_STATUS_PUBLISHED,
    QUEUE_STATUS_PUBLISHING,
    QUEUE_STATUS_SCHEDULED,
    PublicationQueueEntry,
    PublicationSchedule,
)


# high publishes before default, default before low; unknown values sort last.
_PRIORITY_RANK = case(
    (PublicationQueueEntry.priority == PRIORITY_HIGH, 0),
    (PublicationQueueEntry.priority == PRIORITY_DEFAULT, 1),
    (PublicationQueueEntry.priority == PRIORITY_LOW, 2),
    else_=3,
)


async def create_schedule(
    session: AsyncSession, *, schedule_id: str, destination_id: str, **fields: Any
) -> PublicationSchedule:
    schedule = PublicationSchedule(id=schedule_id, destination_id=destination_id, **fields)
    session.add(schedule)
    return schedule


async def get_schedule(session: AsyncSession, destination_id: str) -> PublicationSchedule | None:
    result = await session.execute(
        select(PublicationSchedule)
        .where(PublicationSchedule.destination_id == destination_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_active_schedules(session: AsyncSession) -> list[PublicationSchedule]:
    result = await session.execute(
        select(PublicationSchedule)
        .where(PublicationSchedule.is_active.is_(True))
        .order_by(PublicationSchedule.destination_id)
    )
    return list(result.scalars().all())


async def update_schedule(session: AsyncSession, *, schedule_id: str, values: dict[str, Any]) -> None:
    await session.execute(
        update(PublicationSchedule)
        .where(PublicationSchedule.id == schedule_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def record_schedule_error(session: AsyncSession, *, schedule_id: str) -> int:
    # Read back after the locked increment; concurrent failures each see their own count.
    await session.execute(
        update(PublicationSchedule)
        .where(PublicationSchedule.id == schedule_id)
        .values(consecutive_errors=PublicationSchedule.consecutive_errors + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        select(PublicationSchedule.consecutive_errors).where(PublicationSchedule.id == schedule_id)
    )
    return int(result.scalar() or 0)


async def create_entry(
    session: AsyncSession,
    *,
    entry_id: str,
    content_type: str,
    content_id: str,
    destination_id: str,
    created_at: datetime,
    **fields: Any,
) -> PublicationQueueEntry:
    entry = PublicationQueueEntry(
        id=entry_id,
        content_type=content_type,
        content_id=content_id,
        destination_id=destination_id,
        created_at=created_at,
        **fields,
    )
    session.add(entry)
    return entry


async def get_entry(session: AsyncSession, entry_id: str) -> PublicationQueueEntry | None:
    result = await session.execute(
        select(PublicationQueueEntry)
        .where(PublicationQueueEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_entry_for_content(
    session: AsyncSession, *, content_type: str, content_id: str, destination_id: str
) -> PublicationQueueEntry | None:
    result = await session.execute(
        select(PublicationQueueEntry).where(
            PublicationQueueEntry.content_type == content_type,
            PublicationQueueEntry.content_id == content_id,
            PublicationQueueEntry.destination_id == destination_id,
        )
    )
    return result.scalar_one_or_none()


async def list_due_entries(
    session: AsyncSession, *, destination_id: str, now: datetime, limit: int = 1
) -> list[PublicationQueueEntry]:
    result = await session.execute(
        select(PublicationQueueEntry)
        .where(
            PublicationQueueEntry.destination_id == destination_id,
            PublicationQueueEntry.status == QUEUE_STATUS_SCHEDULED,
            PublicationQueueEntry.scheduled_at <= now,
        )
        .order_by(_PRIORITY_RANK, PublicationQueueEntry.scheduled_at, PublicationQueueEntry.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_pending_entries(
    session: AsyncSession, *, destination_id: str, limit: int | None = None
) -> list[PublicationQueueEntry]:
    stmt = (
        select(PublicationQueueEntry)
        .where(
            PublicationQueueEntry.destination_id == destination_id,
            PublicationQueueEntry.status == QUEUE_STATUS_PENDING,
        )
        .order_by(_PRIORITY_RANK, PublicationQueueEntry.created_at, PublicationQueueEntry.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_stale_publishing(
    session: AsyncSession, *, claimed_before: datetime, limit: int = 100
) -> list[PublicationQueueEntry]:
    # Entries left in publishing by a publisher that never reported back.
    result = await session.execute(
        select(PublicationQueueEntry)
        .where(
            PublicationQueueEntry.status == QUEUE_STATUS_PUBLISHING,
            PublicationQueueEntry.updated_at < claimed_before,
        )
        .order_by(PublicationQueueEntry.updated_at, PublicationQueueEntry.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def transition_entry(
    session: AsyncSession,
    *,
    entry_id: str,
    from_status: str,
    values: dict[str, Any],
) -> bool:
    # Compare-and-swap on status; the loser of a race sees rowcount 0.
    result = await session.execute(
        update(PublicationQueueEntry)
        .where(PublicationQueueEntry.id == entry_id, PublicationQueueEntry.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def last_scheduled_at(session: AsyncSession, *, destination_id: str) -> datetime | None:
    # Latest slot already handed out; new slots are spaced after it.
    result = await session.execute(
        select(PublicationQueueEntry.scheduled_at)
        .where(
            PublicationQueueEntry.destination_id == destination_id,
            PublicationQueueEntry.status.in_(
                (QUEUE_STATUS_SCHEDULED, QUEUE_STATUS_PUBLISHING, QUEUE_STATUS_PUBLISHED)
            ),
            PublicationQueueEntry.scheduled_at.is_not(None),
        )
        .order_by(PublicationQueueEntry.scheduled_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def last_published_at(session: AsyncSession, *, destination_id: str) -> datetime | None:
    result = await session.execute(
        select(PublicationQueueEntry.published_at)
        .where(
            PublicationQueueEntry.destination_id == destination_id,
            PublicationQueueEntry.status == QUEUE_STATUS_PUBLISHED,
            PublicationQueueEntry.published_at.is_not(None),
        )
        .order_by(PublicationQueueEntry.published_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_published_between(
    session: AsyncSession, *, destination_id: str, start: datetime, end: datetime
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(PublicationQueueEntry)
        .where(
            PublicationQueueEntry.destination_id == destination_id,
            PublicationQueueEntry.status == QUEUE_STATUS_PUBLISHED,
            PublicationQueueEntry.published_at >= start,
            PublicationQueueEntry.published_at < end,
        )
    )
    return int(result.scalar() or 0)


async def count_by_status(session: AsyncSession, *, destination_id: str) -> dict[str, int]:
    result = await session.execute(
        select(PublicationQueueEntry.status, func.count())
        .where(PublicationQueueEntry.destination_id == destination_id)
        .group_by(PublicationQueueEntry.status)
    )
    return {str(status): int(count) for status, count in result.all()}


async def count_slotted_between(
    session: AsyncSession, *, destination_id: str, start: datetime, end: datetime
) -> int:
    # Slots already handed out in [start, end), whether or not they published yet.
    result = await session.execute(
        select(func.count())
        .select_from(PublicationQueueEntry)
        .where(
            PublicationQueueEntry.destination_id == destination_id,
            PublicationQueueEntry.status.in_(
                (QUEUE_STATUS_SCHEDULED, QUEUE_STATUS_PUBLISHING, QUEUE_STATUS_PUBLISHED)
            ),
            PublicationQueueEntry.scheduled_at >= start,
            PublicationQueueEntry.scheduled_at < end,
        )
    )
    return int(result.scalar() or 0)
