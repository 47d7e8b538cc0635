"""Next-run computation for program recurrence policies.

All inputs and outputs are timezone-aware; wall-clock times are evaluated in
the policy timezone and returned in UTC. Local times that fall inside a DST
gap move forward by the gap length, and ambiguous local times resolve to
their first occurrence.

`compute_next_run` never raises for a bad policy: it logs and returns None so
callers can detect a stalled program. `validate_policy` raises
`InvalidRecurrenceError` for callers that must reject a policy up front.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from contentflow.core.errors import InvalidRecurrenceError
from contentflow.domain.policies import (
    RECURRENCE_CRON,
    RECURRENCE_DAILY,
    RECURRENCE_MONTHLY,
    RECURRENCE_ONCE,
    RECURRENCE_TYPES,
    RECURRENCE_WEEKLY,
    RecurrencePolicy,
)


logger = logging.getLogger(__name__)

# Crontab order: index 0 and 7 are Sunday.
_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def compute_next_run(policy: RecurrencePolicy, now: datetime) -> datetime | None:
    try:
        return _compute(policy, _as_utc(now))
    except InvalidRecurrenceError as exc:
        logger.warning("recurrence_policy_invalid type=%s error=%s", policy.type, exc)
        return None


def validate_policy(policy: RecurrencePolicy) -> None:
    if policy.type not in RECURRENCE_TYPES:
        raise InvalidRecurrenceError(f"unknown recurrence type: {policy.type}")
    _zone(policy.timezone)
    if policy.type == RECURRENCE_ONCE:
        return
    if policy.type == RECURRENCE_CRON:
        _cron_trigger(policy.cron_expression, policy.timezone)
        return
    _parse_time(policy.time)
    if policy.type == RECURRENCE_WEEKLY:
        _weekdays(policy.days)
    if policy.type == RECURRENCE_MONTHLY and not 1 <= int(policy.day_of_month) <= 31:
        raise InvalidRecurrenceError(f"day_of_month out of range: {policy.day_of_month}")


def _compute(policy: RecurrencePolicy, now: datetime) -> datetime | None:
    validate_policy(policy)
    if policy.type == RECURRENCE_ONCE:
        start_at = _as_utc(policy.start_at) if policy.start_at else None
        if start_at is not None and start_at > now:
            return start_at
        return now
    if policy.type == RECURRENCE_CRON:
        return _next_cron(policy, now)

    zone = _zone(policy.timezone)
    hour, minute = _parse_time(policy.time)
    today = now.astimezone(zone).date()
    if policy.type == RECURRENCE_DAILY:
        return _next_daily(today, hour, minute, zone, now)
    if policy.type == RECURRENCE_WEEKLY:
        return _next_weekly(today, hour, minute, zone, now, _weekdays(policy.days))
    return _next_monthly(today, hour, minute, zone, now, int(policy.day_of_month))


def _next_daily(today: date, hour: int, minute: int, zone: ZoneInfo, now: datetime) -> datetime:
    candidate = _at_local(today, hour, minute, zone)
    if candidate <= now:
        candidate = _at_local(today + timedelta(days=1), hour, minute, zone)
    return candidate


def _next_weekly(
    today: date, hour: int, minute: int, zone: ZoneInfo, now: datetime, weekdays: set[int]
) -> datetime | None:
    # Offsets 0..7 cover "later today" through "same weekday next week".
    for offset in range(8):
        day = today + timedelta(days=offset)
        if day.isoweekday() not in weekdays:
            continue
        candidate = _at_local(day, hour, minute, zone)
        if candidate > now:
            return candidate
    return None


def _next_monthly(
    today: date, hour: int, minute: int, zone: ZoneInfo, now: datetime, day_of_month: int
) -> datetime:
    candidate = _at_local(_clamped_day(today.year, today.month, day_of_month), hour, minute, zone)
    if candidate <= now:
        year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        candidate = _at_local(_clamped_day(year, month, day_of_month), hour, minute, zone)
    return candidate


def _next_cron(policy: RecurrencePolicy, now: datetime) -> datetime | None:
    trigger = _cron_trigger(policy.cron_expression, policy.timezone)
    fire_time = trigger.get_next_fire_time(None, now.astimezone(_zone(policy.timezone)))
    if fire_time is None:
        return None
    return fire_time.astimezone(timezone.utc)


def _clamped_day(year: int, month: int, day_of_month: int) -> date:
    # Months shorter than day_of_month run on their last day.
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def _at_local(day: date, hour: int, minute: int, zone: ZoneInfo) -> datetime:
    local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone)
    # fold=0 picks the pre-transition offset, which pushes gap times forward.
    return local.astimezone(timezone.utc)


def _cron_trigger(expression: str | None, tz_name: str) -> CronTrigger:
    if not expression or not expression.strip():
        raise InvalidRecurrenceError("cron recurrence requires a cron expression")
    try:
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"expected 5 fields, got {len(fields)}")
        minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week),
            timezone=tz_name,
        )
    except ValueError as exc:
        raise InvalidRecurrenceError(f"invalid cron expression {expression!r}: {exc}") from exc


def _crontab_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field (0 and 7 are Sunday) as weekday names.

    APScheduler numbers weekdays from 0=Monday, so numeric crontab values are
    expanded to explicit names before the trigger sees them.
    """
    if field in ("*", "?"):
        return "*"
    names: list[str] = []
    for term in field.lower().split(","):
        base, _, step_text = term.partition("/")
        step = int(step_text) if step_text else 1
        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            first, last = base.split("-", 1)
            start, end = _crontab_weekday(first), _crontab_weekday(last)
        else:
            start = _crontab_weekday(base)
            end = 6 if step_text else start
        if step < 1 or start > end:
            raise ValueError(f"invalid day-of-week range: {term!r}")
        names.extend(_CRON_WEEKDAYS[day % 7] for day in range(start, end + 1, step))
    return ",".join(dict.fromkeys(names))


def _crontab_weekday(value: str) -> int:
    if value.isdigit():
        day = int(value)
        if day > 7:
            raise ValueError(f"day-of-week out of range: {value}")
        return day
    if value[:3] in _CRON_WEEKDAYS:
        return _CRON_WEEKDAYS.index(value[:3])
    raise ValueError(f"unknown day-of-week: {value!r}")


def _parse_time(value: str) -> tuple[int, int]:
    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        raise InvalidRecurrenceError(f"invalid time of day: {value!r}")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise InvalidRecurrenceError(f"invalid time of day: {value!r}") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidRecurrenceError(f"invalid time of day: {value!r}")
    return hour, minute


def _weekdays(days: tuple[int, ...]) -> set[int]:
    weekdays = {int(day) for day in days}
    if not weekdays:
        raise InvalidRecurrenceError("weekly recurrence requires at least one weekday")
    if any(day < 1 or day > 7 for day in weekdays):
        raise InvalidRecurrenceError(f"weekdays must be ISO 1-7, got {sorted(weekdays)}")
    return weekdays


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidRecurrenceError(f"unknown timezone: {name!r}") from exc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("naive datetimes are not accepted; pass an aware UTC value")
    return value.astimezone(timezone.utc)
