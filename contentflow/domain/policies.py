from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from contentflow.domain.models import Program


RECURRENCE_ONCE = "once"
RECURRENCE_DAILY = "daily"
RECURRENCE_WEEKLY = "weekly"
RECURRENCE_MONTHLY = "monthly"
RECURRENCE_CRON = "cron"

RECURRENCE_TYPES = (
    RECURRENCE_ONCE,
    RECURRENCE_DAILY,
    RECURRENCE_WEEKLY,
    RECURRENCE_MONTHLY,
    RECURRENCE_CRON,
)

QUANTITY_TOTAL = "total"
QUANTITY_PER_COUNTRY = "per_country"
QUANTITY_PER_LANGUAGE = "per_language"
QUANTITY_PER_COUNTRY_LANGUAGE = "per_country_language"

QUANTITY_MODES = (
    QUANTITY_TOTAL,
    QUANTITY_PER_COUNTRY,
    QUANTITY_PER_LANGUAGE,
    QUANTITY_PER_COUNTRY_LANGUAGE,
)

DEFAULT_TIME = "09:00"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_WEEKDAYS = (1,)
DEFAULT_DAY_OF_MONTH = 1


@dataclass(frozen=True)
class RecurrencePolicy:
    """When a program becomes eligible to run again."""

    type: str
    time: str = DEFAULT_TIME
    timezone: str = DEFAULT_TIMEZONE
    days: tuple[int, ...] = DEFAULT_WEEKDAYS
    day_of_month: int = DEFAULT_DAY_OF_MONTH
    cron_expression: str | None = None
    start_at: datetime | None = None

    @classmethod
    def from_program(cls, program: Program) -> "RecurrencePolicy":
        config: dict[str, Any] = program.recurrence_config or {}
        days = config.get("days") or list(DEFAULT_WEEKDAYS)
        return cls(
            type=program.recurrence_type or RECURRENCE_ONCE,
            time=str(config.get("time") or DEFAULT_TIME),
            timezone=str(config.get("timezone") or DEFAULT_TIMEZONE),
            days=tuple(int(day) for day in days),
            day_of_month=int(config.get("day_of_month") or DEFAULT_DAY_OF_MONTH),
            cron_expression=program.cron_expression,
            start_at=program.start_at,
        )

    @property
    def is_recurring(self) -> bool:
        return self.type != RECURRENCE_ONCE

    def describe(self) -> str:
        # Short human label for ops listings.
        if self.type == RECURRENCE_DAILY:
            return f"daily at {self.time} {self.timezone}"
        if self.type == RECURRENCE_WEEKLY:
            days = ",".join(str(day) for day in sorted(self.days))
            return f"weekly on {days} at {self.time} {self.timezone}"
        if self.type == RECURRENCE_MONTHLY:
            return f"monthly on day {self.day_of_month} at {self.time} {self.timezone}"
        if self.type == RECURRENCE_CRON:
            return f"cron {self.cron_expression or '(none)'} {self.timezone}"
        return "once"


@dataclass(frozen=True)
class QuantityPolicy:
    mode: str
    value: int

    @classmethod
    def from_program(cls, program: Program) -> "QuantityPolicy":
        return cls(mode=program.quantity_mode or QUANTITY_TOTAL, value=int(program.quantity_value or 0))

    def __post_init__(self) -> None:
        if self.mode not in QUANTITY_MODES:
            raise ValueError(f"Unknown quantity mode: {self.mode}")
        if self.value < 1:
            raise ValueError("quantity value must be a positive integer")

    @property
    def per_country(self) -> bool:
        return self.mode in (QUANTITY_PER_COUNTRY, QUANTITY_PER_COUNTRY_LANGUAGE)

    @property
    def per_language(self) -> bool:
        return self.mode in (QUANTITY_PER_LANGUAGE, QUANTITY_PER_COUNTRY_LANGUAGE)

    def item_count(self, content_types: int, countries: int, languages: int) -> int:
        count = self.value * content_types
        if self.per_country:
            count *= countries
        if self.per_language:
            count *= languages
        return count
