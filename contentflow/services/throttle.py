"""Publication pacing for a single destination.

Pure functions over a schedule policy and caller-supplied counts; database
reads live in `publication_queue`. All datetimes are aware, results are UTC,
and hour/day windows are evaluated in the schedule's timezone.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Protocol

from contentflow.core.clock import resolve_zone


logger = logging.getLogger(__name__)

REASON_INACTIVE = "inactive"
REASON_OUTSIDE_HOURS = "outside_active_hours"
REASON_OUTSIDE_DAYS = "outside_active_days"
REASON_DAILY_LIMIT = "daily_limit_reached"
REASON_HOURLY_LIMIT = "hourly_limit_reached"
REASON_MIN_INTERVAL = "min_interval_not_elapsed"

# Upper bound on window search steps: a full week of hours plus day jumps.
_MAX_WINDOW_STEPS = 24 * 8 + 16


class ThrottleSchedule(Protocol):
    articles_per_day: int
    max_per_hour: int
    active_hours: list[int]
    active_days: list[int]
    min_interval_minutes: int
    timezone: str
    is_active: bool


@dataclass(frozen=True)
class PublishDecision:
    allowed: bool
    reason: str | None = None
    # Earliest moment the blocking condition clears, when known.
    retry_at: datetime | None = None


def optimal_interval(schedule: ThrottleSchedule) -> timedelta:
    # Spread the daily target across active hours, never below the configured floor.
    per_day = max(1, int(schedule.articles_per_day or 0))
    spread_minutes = len(set(schedule.active_hours or ())) * 60 / per_day
    return timedelta(minutes=max(float(schedule.min_interval_minutes or 0), spread_minutes))


def is_within_active_window(schedule: ThrottleSchedule, now: datetime) -> bool:
    local = now.astimezone(resolve_zone(schedule.timezone))
    return local.hour in set(schedule.active_hours or ()) and local.isoweekday() in set(
        schedule.active_days or ()
    )


def adjust_to_active_window(schedule: ThrottleSchedule, candidate: datetime) -> datetime | None:
    """Return the earliest moment at or after `candidate` inside the active window.

    Moving off an inactive hour snaps to the start of the next hour; moving off
    an inactive day snaps to the start of the next day. Returns None when the
    window is empty.
    """
    hours = {int(hour) for hour in schedule.active_hours or ()}
    days = {int(day) for day in schedule.active_days or ()}
    if not hours or not days:
        logger.warning(
            "publication_window_empty active_hours=%s active_days=%s",
            sorted(hours),
            sorted(days),
        )
        return None

    zone = resolve_zone(schedule.timezone)
    local = candidate.astimezone(zone)
    for _ in range(_MAX_WINDOW_STEPS):
        if local.isoweekday() not in days:
            local = _next_day_start(local, zone)
            continue
        if local.hour not in hours:
            local = _next_hour_start(local, zone)
            continue
        return local.astimezone(timezone.utc)
    logger.warning("publication_window_unreachable active_hours=%s", sorted(hours))
    return None


def next_available_slot(
    schedule: ThrottleSchedule, last_scheduled_at: datetime | None, now: datetime
) -> datetime | None:
    candidate = now
    if last_scheduled_at is not None:
        spaced = last_scheduled_at + optimal_interval(schedule)
        if spaced > now:
            candidate = spaced
    return adjust_to_active_window(schedule, candidate)


def randomize_slot(
    schedule: ThrottleSchedule,
    slot: datetime,
    *,
    not_before: datetime,
    randomize_minutes: int,
    edge_margin_minutes: int,
    rng: random.Random | None = None,
) -> datetime:
    """Shift a slot off predictable publish times.

    The slot moves by a random whole number of minutes within
    +/-`randomize_minutes`, then is kept `edge_margin_minutes` away from both
    ends of its local hour. The result never leaves the slot's local hour, so
    it stays inside the active window. A result earlier than `not_before`
    falls back to the unmodified slot.
    """
    spread = max(0, int(randomize_minutes or 0))
    margin = min(max(0, int(edge_margin_minutes or 0)), 29)
    if spread == 0 and margin == 0:
        return slot
    candidate = slot
    if spread:
        candidate = slot + timedelta(minutes=(rng or random).randint(-spread, spread))

    local = slot.astimezone(resolve_zone(schedule.timezone))
    hour_start = local.replace(minute=0, second=0, microsecond=0).astimezone(timezone.utc)
    low = hour_start + timedelta(minutes=margin)
    high = hour_start + timedelta(minutes=60 - margin if margin else 59)
    candidate = min(max(candidate, low), high)
    if candidate < not_before:
        return slot
    return candidate


def remaining_capacity_today(schedule: ThrottleSchedule, published_today: int) -> int:
    return max(0, int(schedule.articles_per_day or 0) - int(published_today))


def has_hourly_capacity(schedule: ThrottleSchedule, published_this_hour: int) -> bool:
    return int(published_this_hour) < int(schedule.max_per_hour or 0)


def evaluate_publish_now(
    schedule: ThrottleSchedule,
    now: datetime,
    *,
    published_today: int,
    published_this_hour: int,
    last_published_at: datetime | None,
) -> PublishDecision:
    # Checks run in a fixed order; the first failing one is reported.
    if not schedule.is_active:
        return PublishDecision(allowed=False, reason=REASON_INACTIVE)
    zone = resolve_zone(schedule.timezone)
    local = now.astimezone(zone)
    if local.hour not in set(schedule.active_hours or ()):
        return PublishDecision(
            allowed=False, reason=REASON_OUTSIDE_HOURS, retry_at=adjust_to_active_window(schedule, now)
        )
    if local.isoweekday() not in set(schedule.active_days or ()):
        return PublishDecision(
            allowed=False, reason=REASON_OUTSIDE_DAYS, retry_at=adjust_to_active_window(schedule, now)
        )
    if remaining_capacity_today(schedule, published_today) <= 0:
        tomorrow = _next_day_start(local, zone).astimezone(timezone.utc)
        return PublishDecision(
            allowed=False,
            reason=REASON_DAILY_LIMIT,
            retry_at=adjust_to_active_window(schedule, tomorrow),
        )
    if not has_hourly_capacity(schedule, published_this_hour):
        next_hour = _next_hour_start(local, zone).astimezone(timezone.utc)
        return PublishDecision(
            allowed=False,
            reason=REASON_HOURLY_LIMIT,
            retry_at=adjust_to_active_window(schedule, next_hour),
        )
    if last_published_at is not None:
        earliest = last_published_at + timedelta(minutes=int(schedule.min_interval_minutes or 0))
        if earliest > now:
            return PublishDecision(allowed=False, reason=REASON_MIN_INTERVAL, retry_at=earliest)
    return PublishDecision(allowed=True)


def daily_slots(schedule: ThrottleSchedule, day: date) -> list[datetime]:
    """Evenly spaced publish slots for one local calendar day, in UTC."""
    hours = {int(hour) for hour in schedule.active_hours or ()}
    per_day = int(schedule.articles_per_day or 0)
    if not hours or per_day <= 0 or day.isoweekday() not in set(schedule.active_days or ()):
        return []

    zone = resolve_zone(schedule.timezone)
    interval = optimal_interval(schedule)
    cursor = datetime.combine(day, time.min, tzinfo=zone).astimezone(timezone.utc)
    day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone).astimezone(timezone.utc)

    slots: list[datetime] = []
    while cursor < day_end and len(slots) < per_day:
        local = cursor.astimezone(zone)
        if local.hour not in hours:
            cursor = _next_hour_start(local, zone).astimezone(timezone.utc)
            continue
        slots.append(cursor)
        cursor = cursor + interval
    return slots


def status_report(
    schedule: ThrottleSchedule,
    now: datetime,
    *,
    published_today: int,
    published_this_hour: int,
    last_published_at: datetime | None,
    queue_counts: dict[str, int] | None = None,
) -> dict[str, Any]:
    decision = evaluate_publish_now(
        schedule,
        now,
        published_today=published_today,
        published_this_hour=published_this_hour,
        last_published_at=last_published_at,
    )
    return {
        "is_active": bool(schedule.is_active),
        "within_active_window": is_within_active_window(schedule, now),
        "can_publish_now": decision.allowed,
        "blocked_reason": decision.reason,
        "retry_at": decision.retry_at,
        "published_today": int(published_today),
        "daily_limit": int(schedule.articles_per_day or 0),
        "remaining_today": remaining_capacity_today(schedule, published_today),
        "published_this_hour": int(published_this_hour),
        "hourly_limit": int(schedule.max_per_hour or 0),
        "optimal_interval_minutes": round(optimal_interval(schedule).total_seconds() / 60, 2),
        "last_published_at": last_published_at,
        "queue": dict(queue_counts or {}),
    }


def _next_hour_start(local: datetime, zone) -> datetime:
    # Step in absolute time so DST transitions never repeat or skip an hour.
    hour_start = local.replace(minute=0, second=0, microsecond=0)
    return (hour_start.astimezone(timezone.utc) + timedelta(hours=1)).astimezone(zone)


def _next_day_start(local: datetime, zone) -> datetime:
    start = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc).astimezone(zone)
