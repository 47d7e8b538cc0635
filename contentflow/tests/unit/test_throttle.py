from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta

from contentflow.services import throttle
from contentflow.tests.utils.factories import utc


@dataclass
class _Schedule:
    articles_per_day: int = 10
    max_per_hour: int = 2
    active_hours: list[int] = field(default_factory=lambda: list(range(9, 18)))
    active_days: list[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    min_interval_minutes: int = 30
    timezone: str = "Europe/Paris"
    is_active: bool = True


def test_optimal_interval_spreads_daily_target_over_active_hours() -> None:
    schedule = _Schedule(articles_per_day=9, active_hours=list(range(9, 18)))
    assert throttle.optimal_interval(schedule) == timedelta(minutes=60)


def test_optimal_interval_never_below_min_interval() -> None:
    schedule = _Schedule(articles_per_day=100, min_interval_minutes=45)
    assert throttle.optimal_interval(schedule) == timedelta(minutes=45)


def test_is_within_active_window_uses_schedule_timezone() -> None:
    schedule = _Schedule()
    # Tuesday 08:30 UTC is 09:30 in Paris.
    assert throttle.is_within_active_window(schedule, utc(2024, 1, 2, 8, 30))
    # Tuesday 07:30 UTC is 08:30 in Paris.
    assert not throttle.is_within_active_window(schedule, utc(2024, 1, 2, 7, 30))
    # Saturday is not an active day.
    assert not throttle.is_within_active_window(schedule, utc(2024, 1, 6, 10, 0))


def test_adjust_keeps_candidate_inside_window() -> None:
    candidate = utc(2024, 1, 2, 10, 17)
    assert throttle.adjust_to_active_window(_Schedule(), candidate) == candidate


def test_adjust_after_hours_snaps_to_next_morning() -> None:
    # Tuesday 19:30 Paris -> Wednesday 09:00 Paris.
    assert throttle.adjust_to_active_window(_Schedule(), utc(2024, 1, 2, 18, 30)) == utc(2024, 1, 3, 8, 0)


def test_adjust_weekend_snaps_to_monday_morning() -> None:
    assert throttle.adjust_to_active_window(_Schedule(), utc(2024, 1, 6, 10, 0)) == utc(2024, 1, 8, 8, 0)


def test_adjust_with_empty_window_returns_none() -> None:
    assert throttle.adjust_to_active_window(_Schedule(active_hours=[]), utc(2024, 1, 2, 10, 0)) is None
    assert throttle.adjust_to_active_window(_Schedule(active_days=[]), utc(2024, 1, 2, 10, 0)) is None


def test_next_slot_respects_spacing() -> None:
    schedule = _Schedule(articles_per_day=9)
    slot = throttle.next_available_slot(schedule, utc(2024, 1, 2, 9, 0), utc(2024, 1, 2, 9, 10))
    assert slot == utc(2024, 1, 2, 10, 0)


def test_next_slot_without_history_is_now_when_in_window() -> None:
    now = utc(2024, 1, 2, 9, 10)
    assert throttle.next_available_slot(_Schedule(), None, now) == now


def test_next_slot_is_always_inside_window() -> None:
    schedule = _Schedule(articles_per_day=4, active_hours=[9, 10, 14], active_days=[2, 4])
    last = None
    now = utc(2024, 1, 1, 0, 0)
    for _ in range(12):
        slot = throttle.next_available_slot(schedule, last, now)
        assert slot is not None
        assert throttle.is_within_active_window(schedule, slot)
        assert slot >= now
        last = slot
        now = slot + timedelta(minutes=5)


def test_remaining_capacity_never_negative() -> None:
    schedule = _Schedule(articles_per_day=10)
    assert throttle.remaining_capacity_today(schedule, 3) == 7
    assert throttle.remaining_capacity_today(schedule, 12) == 0


def test_hourly_capacity() -> None:
    schedule = _Schedule(max_per_hour=2)
    assert throttle.has_hourly_capacity(schedule, 1)
    assert not throttle.has_hourly_capacity(schedule, 2)


def test_evaluate_publish_now_allows_inside_limits() -> None:
    decision = throttle.evaluate_publish_now(
        _Schedule(),
        utc(2024, 1, 2, 10, 0),
        published_today=2,
        published_this_hour=0,
        last_published_at=utc(2024, 1, 2, 9, 0),
    )
    assert decision.allowed
    assert decision.reason is None


def test_evaluate_publish_now_reports_first_blocking_reason() -> None:
    now = utc(2024, 1, 2, 10, 0)
    inactive = throttle.evaluate_publish_now(
        _Schedule(is_active=False), now, published_today=0, published_this_hour=0, last_published_at=None
    )
    assert inactive.reason == throttle.REASON_INACTIVE

    daily = throttle.evaluate_publish_now(
        _Schedule(articles_per_day=2), now, published_today=2, published_this_hour=5, last_published_at=None
    )
    assert daily.reason == throttle.REASON_DAILY_LIMIT
    # Next allowed moment is the next active morning.
    assert daily.retry_at == utc(2024, 1, 3, 8, 0)

    hourly = throttle.evaluate_publish_now(
        _Schedule(), now, published_today=1, published_this_hour=2, last_published_at=None
    )
    assert hourly.reason == throttle.REASON_HOURLY_LIMIT
    assert hourly.retry_at == utc(2024, 1, 2, 11, 0)

    spacing = throttle.evaluate_publish_now(
        _Schedule(), now, published_today=1, published_this_hour=1, last_published_at=utc(2024, 1, 2, 9, 50)
    )
    assert spacing.reason == throttle.REASON_MIN_INTERVAL
    assert spacing.retry_at == utc(2024, 1, 2, 10, 20)


def test_evaluate_publish_now_outside_hours() -> None:
    decision = throttle.evaluate_publish_now(
        _Schedule(), utc(2024, 1, 2, 19, 0), published_today=0, published_this_hour=0, last_published_at=None
    )
    assert not decision.allowed
    assert decision.reason == throttle.REASON_OUTSIDE_HOURS
    assert decision.retry_at == utc(2024, 1, 3, 8, 0)


def test_daily_slots_are_evenly_spaced() -> None:
    schedule = _Schedule(articles_per_day=4, active_hours=list(range(9, 17)), timezone="UTC")
    slots = throttle.daily_slots(schedule, date(2024, 1, 2))
    assert slots == [utc(2024, 1, 2, 9, 0), utc(2024, 1, 2, 11, 0), utc(2024, 1, 2, 13, 0), utc(2024, 1, 2, 15, 0)]


def test_daily_slots_empty_on_inactive_day() -> None:
    assert throttle.daily_slots(_Schedule(), date(2024, 1, 6)) == []


def test_status_report_includes_decision() -> None:
    report = throttle.status_report(
        _Schedule(),
        utc(2024, 1, 2, 10, 0),
        published_today=3,
        published_this_hour=0,
        last_published_at=None,
        queue_counts={"pending": 2},
    )
    assert report["can_publish_now"] is True
    assert report["remaining_today"] == 7
    assert report["queue"] == {"pending": 2}
