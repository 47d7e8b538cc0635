from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import logging
import random
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.core.clock import local_day_bounds, resolve_zone
from contentflow.core.config import get_settings
from contentflow.core.errors import PublishError, QueueStateError
from contentflow.domain.content import ContentRef
from contentflow.domain.models import (
    PRIORITY_DEFAULT,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    QUEUE_STATUS_FAILED,
    QUEUE_STATUS_PENDING,
    QUEUE_STATUS_PUBLISHED,
    QUEUE_STATUS_PUBLISHING,
    QUEUE_STATUS_SCHEDULED,
    PublicationQueueEntry,
    PublicationSchedule,
)
from contentflow.persistence.repos import items as items_repo
from contentflow.persistence.repos import programs as programs_repo
from contentflow.persistence.repos import publication as publication_repo
from contentflow.services import throttle
from contentflow.services.publisher import Publisher, PublishResult


logger = logging.getLogger(__name__)

PRIORITIES = (PRIORITY_HIGH, PRIORITY_DEFAULT, PRIORITY_LOW)

# Two weeks of hourly steps bounds the slot search.
_MAX_SLOT_STEPS = 24 * 14


async def enqueue_content(
    session: AsyncSession,
    *,
    content: ContentRef,
    destination_id: str,
    now: datetime,
    priority: str = PRIORITY_DEFAULT,
    program_item_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> PublicationQueueEntry:
    # One entry per (content, destination); re-enqueueing returns the existing row.
    if priority not in PRIORITIES:
        raise QueueStateError(f"unknown priority: {priority}")
    existing = await publication_repo.find_entry_for_content(
        session,
        content_type=content.kind.value,
        content_id=content.id,
        destination_id=destination_id,
    )
    if existing is not None:
        return existing
    entry = await publication_repo.create_entry(
        session,
        entry_id=uuid4().hex,
        content_type=content.kind.value,
        content_id=content.id,
        destination_id=destination_id,
        created_at=now,
        program_item_id=program_item_id,
        priority=priority,
        status=QUEUE_STATUS_PENDING,
        attempts=0,
        max_attempts=int(get_settings().publish_max_attempts),
        metadata_json=metadata or {},
    )
    await session.commit()
    logger.info(
        "publication_enqueued entry_id=%s destination_id=%s content=%s:%s priority=%s",
        entry.id,
        destination_id,
        content.kind.value,
        content.id,
        priority,
    )
    return entry


async def count_published_today(
    session: AsyncSession, schedule: PublicationSchedule, now: datetime
) -> int:
    start, end = local_day_bounds(now, schedule.timezone)
    return await publication_repo.count_published_between(
        session, destination_id=schedule.destination_id, start=start, end=end
    )


async def count_published_this_hour(
    session: AsyncSession, schedule: PublicationSchedule, now: datetime
) -> int:
    start, end = _hour_bounds(now, schedule.timezone)
    return await publication_repo.count_published_between(
        session, destination_id=schedule.destination_id, start=start, end=end
    )


async def remaining_capacity_today(
    session: AsyncSession, schedule: PublicationSchedule, now: datetime
) -> int:
    published = await count_published_today(session, schedule, now)
    return throttle.remaining_capacity_today(schedule, published)


async def evaluate_destination(
    session: AsyncSession, schedule: PublicationSchedule, now: datetime
) -> throttle.PublishDecision:
    return throttle.evaluate_publish_now(
        schedule,
        now,
        published_today=await count_published_today(session, schedule, now),
        published_this_hour=await count_published_this_hour(session, schedule, now),
        last_published_at=await publication_repo.last_published_at(
            session, destination_id=schedule.destination_id
        ),
    )


async def select_next_entry(
    session: AsyncSession, *, destination_id: str, now: datetime
) -> PublicationQueueEntry | None:
    # Due entries only; high before default before low, then earliest slot.
    due = await publication_repo.list_due_entries(
        session, destination_id=destination_id, now=now, limit=1
    )
    return due[0] if due else None


async def claim_next_entry(
    session: AsyncSession, *, destination_id: str, now: datetime, candidates: int = 5
) -> PublicationQueueEntry | None:
    due = await publication_repo.list_due_entries(
        session, destination_id=destination_id, now=now, limit=candidates
    )
    for entry in due:
        claimed = await publication_repo.transition_entry(
            session,
            entry_id=entry.id,
            from_status=QUEUE_STATUS_SCHEDULED,
            values={"status": QUEUE_STATUS_PUBLISHING, "updated_at": now},
        )
        if claimed:
            await session.commit()
            return await publication_repo.get_entry(session, entry.id)
    # Every candidate was claimed by another publisher.
    await session.rollback()
    return None


async def mark_published(
    session: AsyncSession,
    entry_id: str,
    *,
    now: datetime,
    result: PublishResult | None = None,
) -> PublicationQueueEntry:
    entry = await _require_entry(session, entry_id)
    values: dict[str, Any] = {
        "status": QUEUE_STATUS_PUBLISHED,
        "published_at": now,
        "error_message": None,
        "updated_at": now,
    }
    if result is not None:
        # Destination acknowledgement is kept beside the caller metadata.
        values["metadata_json"] = {
            **(entry.metadata_json or {}),
            "publish_status_code": result.status_code,
            "external_id": result.external_id,
        }
    moved = await publication_repo.transition_entry(
        session,
        entry_id=entry_id,
        from_status=QUEUE_STATUS_PUBLISHING,
        values=values,
    )
    if not moved:
        await session.rollback()
        raise QueueStateError(f"entry {entry_id} is not publishing")
    schedule = await publication_repo.get_schedule(session, entry.destination_id)
    if schedule is not None and schedule.consecutive_errors:
        await publication_repo.update_schedule(
            session, schedule_id=schedule.id, values={"consecutive_errors": 0}
        )
    if entry.program_item_id:
        item = await items_repo.get_item(session, entry.program_item_id)
        if item is not None:
            await programs_repo.add_published(session, program_id=item.program_id)
    await session.commit()
    logger.info("publication_published entry_id=%s destination_id=%s", entry_id, entry.destination_id)
    return await _require_entry(session, entry_id)


async def mark_failed(
    session: AsyncSession, entry_id: str, message: str, *, now: datetime
) -> PublicationQueueEntry:
    entry = await _require_entry(session, entry_id)
    if entry.status != QUEUE_STATUS_PUBLISHING:
        raise QueueStateError(f"entry {entry_id} is not publishing")
    attempts = int(entry.attempts or 0)
    if attempts < int(entry.max_attempts or 0):
        values = {"status": QUEUE_STATUS_PENDING, "attempts": attempts + 1}
    else:
        # Out of attempts: terminal.
        values = {"status": QUEUE_STATUS_FAILED}
    values.update({"error_message": message, "updated_at": now})
    moved = await publication_repo.transition_entry(
        session, entry_id=entry_id, from_status=QUEUE_STATUS_PUBLISHING, values=values
    )
    if not moved:
        await session.rollback()
        raise QueueStateError(f"entry {entry_id} is not publishing")
    await _record_destination_error(session, entry.destination_id, now)
    await session.commit()
    logger.warning(
        "publication_failed entry_id=%s destination_id=%s status=%s attempts=%s error=%s",
        entry_id,
        entry.destination_id,
        values["status"],
        values.get("attempts", attempts),
        message,
    )
    return await _require_entry(session, entry_id)


async def schedule_pending_entries(
    session: AsyncSession,
    *,
    destination_id: str,
    now: datetime,
    limit: int | None = None,
    rng: random.Random | None = None,
) -> list[PublicationQueueEntry]:
    """Assign publish slots to pending entries of one destination.

    Retried entries (attempts > 0) are not slotted before the retry delay.
    Slots respect the active window, spacing, and the daily and hourly caps,
    then get the configured random shift within their hour.
    """
    schedule = await publication_repo.get_schedule(session, destination_id)
    if schedule is None or not schedule.is_active:
        return []
    settings = get_settings()
    retry_delay = timedelta(minutes=int(settings.publish_retry_delay_minutes))
    pending = await publication_repo.list_pending_entries(
        session, destination_id=destination_id, limit=limit
    )
    last = await publication_repo.last_scheduled_at(session, destination_id=destination_id)

    scheduled_ids: list[str] = []
    for entry in pending:
        earliest = now + retry_delay if entry.attempts else now
        slot = await _find_slot(session, schedule, last, earliest)
        if slot is None:
            logger.warning("publication_no_slot destination_id=%s entry_id=%s", destination_id, entry.id)
            break
        slot = throttle.randomize_slot(
            schedule,
            slot,
            not_before=earliest,
            randomize_minutes=settings.publish_slot_randomize_minutes,
            edge_margin_minutes=settings.publish_slot_edge_margin_minutes,
            rng=rng,
        )
        moved = await publication_repo.transition_entry(
            session,
            entry_id=entry.id,
            from_status=QUEUE_STATUS_PENDING,
            values={"status": QUEUE_STATUS_SCHEDULED, "scheduled_at": slot, "updated_at": now},
        )
        if moved:
            scheduled_ids.append(entry.id)
            last = slot if last is None or slot > last else last
    await session.commit()
    if scheduled_ids:
        logger.info(
            "publication_slots_assigned destination_id=%s count=%s", destination_id, len(scheduled_ids)
        )
    scheduled: list[PublicationQueueEntry] = []
    for entry_id in scheduled_ids:
        entry = await publication_repo.get_entry(session, entry_id)
        if entry is not None:
            scheduled.append(entry)
    return scheduled


async def publish_due_entries(
    session: AsyncSession, publisher: Publisher, *, destination_id: str, now: datetime
) -> dict[str, int]:
    # One publisher pass for a destination: slot, then publish while the throttle allows.
    counts = {"scheduled": 0, "published": 0, "failed": 0}
    counts["scheduled"] = len(
        await schedule_pending_entries(session, destination_id=destination_id, now=now)
    )
    schedule = await publication_repo.get_schedule(session, destination_id)
    if schedule is None:
        return counts
    for _ in range(max(1, int(get_settings().publish_batch_limit))):
        decision = await evaluate_destination(session, schedule, now)
        if not decision.allowed:
            logger.info(
                "publication_throttled destination_id=%s reason=%s retry_at=%s",
                destination_id,
                decision.reason,
                decision.retry_at,
            )
            break
        entry = await claim_next_entry(session, destination_id=destination_id, now=now)
        if entry is None:
            break
        try:
            result = await publisher.publish(entry)
        except Exception as exc:  # noqa: BLE001 - any publisher error must release the claim
            if not isinstance(exc, PublishError):
                logger.exception(
                    "publication_publisher_error entry_id=%s destination_id=%s", entry.id, destination_id
                )
            await mark_failed(session, entry.id, str(exc) or type(exc).__name__, now=now)
            counts["failed"] += 1
            schedule = await publication_repo.get_schedule(session, destination_id)
            if schedule is None or not schedule.is_active:
                break
            continue
        await mark_published(session, entry.id, now=now, result=result)
        counts["published"] += 1
    return counts


async def release_stale_publishing(
    session: AsyncSession, *, now: datetime, stale_after_minutes: int | None = None
) -> list[str]:
    # A publisher that died mid-call never reports back; treat its claim as a failed attempt.
    minutes = stale_after_minutes
    if minutes is None:
        minutes = int(get_settings().publish_stale_after_minutes)
    stale = await publication_repo.list_stale_publishing(
        session, claimed_before=now - timedelta(minutes=minutes)
    )
    released: list[str] = []
    for entry in stale:
        try:
            await mark_failed(session, entry.id, "publishing timed out without a result", now=now)
        except QueueStateError:
            # Resolved by its publisher since the sweep read it.
            continue
        released.append(entry.id)
    if released:
        logger.warning("publication_stale_released count=%s", len(released))
    return released


async def schedule_preview(
    session: AsyncSession, *, destination_id: str, now: datetime, days: int = 7
) -> list[dict[str, Any]]:
    schedule = await _require_schedule(session, destination_id)
    zone = resolve_zone(schedule.timezone)
    today = now.astimezone(zone).date()
    preview = []
    for offset in range(days):
        day = today + timedelta(days=offset)
        start, end = _date_bounds(day, zone)
        slotted = await publication_repo.count_slotted_between(
            session, destination_id=destination_id, start=start, end=end
        )
        capacity = int(schedule.articles_per_day or 0)
        preview.append(
            {
                "date": day.isoformat(),
                "day_name": day.strftime("%A"),
                "is_active": day.isoweekday() in set(schedule.active_days or ()),
                "scheduled_count": slotted,
                "capacity": capacity,
                "remaining": max(0, capacity - slotted),
                "slots": throttle.daily_slots(schedule, day),
            }
        )
    return preview


async def destination_status(
    session: AsyncSession, *, destination_id: str, now: datetime
) -> dict[str, Any]:
    schedule = await _require_schedule(session, destination_id)
    report = throttle.status_report(
        schedule,
        now,
        published_today=await count_published_today(session, schedule, now),
        published_this_hour=await count_published_this_hour(session, schedule, now),
        last_published_at=await publication_repo.last_published_at(
            session, destination_id=destination_id
        ),
        queue_counts=await publication_repo.count_by_status(session, destination_id=destination_id),
    )
    report.update(
        {
            "destination_id": destination_id,
            "consecutive_errors": int(schedule.consecutive_errors or 0),
            "paused_at": schedule.paused_at,
        }
    )
    return report


async def _find_slot(
    session: AsyncSession,
    schedule: PublicationSchedule,
    last: datetime | None,
    earliest: datetime,
) -> datetime | None:
    cursor = earliest
    for _ in range(_MAX_SLOT_STEPS):
        slot = throttle.next_available_slot(schedule, last, cursor)
        if slot is None:
            return None
        day_start, day_end = local_day_bounds(slot, schedule.timezone)
        day_count = await publication_repo.count_slotted_between(
            session, destination_id=schedule.destination_id, start=day_start, end=day_end
        )
        if day_count >= int(schedule.articles_per_day or 0):
            cursor = day_end
            continue
        hour_start, hour_end = _hour_bounds(slot, schedule.timezone)
        hour_count = await publication_repo.count_slotted_between(
            session, destination_id=schedule.destination_id, start=hour_start, end=hour_end
        )
        if hour_count >= int(schedule.max_per_hour or 0):
            cursor = hour_end
            continue
        return slot
    return None


async def _record_destination_error(session: AsyncSession, destination_id: str, now: datetime) -> None:
    schedule = await publication_repo.get_schedule(session, destination_id)
    if schedule is None:
        return
    errors = await publication_repo.record_schedule_error(session, schedule_id=schedule.id)
    if (
        schedule.pause_on_error
        and schedule.is_active
        and errors >= int(schedule.max_errors_before_pause or 0)
    ):
        await publication_repo.update_schedule(
            session, schedule_id=schedule.id, values={"is_active": False, "paused_at": now}
        )
        logger.warning(
            "publication_destination_paused destination_id=%s consecutive_errors=%s",
            destination_id,
            errors,
        )


async def _require_entry(session: AsyncSession, entry_id: str) -> PublicationQueueEntry:
    entry = await publication_repo.get_entry(session, entry_id)
    if entry is None:
        raise QueueStateError(f"entry {entry_id} not found")
    return entry


async def _require_schedule(session: AsyncSession, destination_id: str) -> PublicationSchedule:
    schedule = await publication_repo.get_schedule(session, destination_id)
    if schedule is None:
        raise QueueStateError(f"no publication schedule for destination {destination_id}")
    return schedule


def _hour_bounds(moment: datetime, tz_name: str | None) -> tuple[datetime, datetime]:
    local = moment.astimezone(resolve_zone(tz_name))
    start = local.replace(minute=0, second=0, microsecond=0).astimezone(timezone.utc)
    return start, start + timedelta(hours=1)


def _date_bounds(day: date, zone) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=zone).astimezone(timezone.utc)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone).astimezone(timezone.utc)
    return start, end
