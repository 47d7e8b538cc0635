from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from contentflow.domain.models import ProgramItem
from contentflow.services import run_stats
from contentflow.tests.utils.factories import transient_run, utc


def _item(item_id: str, status: str, *, country_id: int = 1, cost: str = "0") -> ProgramItem:
    return ProgramItem(
        id=item_id,
        program_id="prog-1",
        program_run_id="run-1",
        country_id=country_id,
        language_id=1,
        generation_type="article",
        status=status,
        cost=Decimal(cost),
        created_at=utc(2024, 1, 2, 8, 0, 1),
    )


def test_duration_requires_completion() -> None:
    assert run_stats.duration(transient_run()) is None
    run = transient_run(completed_at=utc(2024, 1, 2, 8, 30, 1))
    assert run_stats.duration(run) == timedelta(minutes=30)


def test_success_rate() -> None:
    assert run_stats.success_rate(transient_run(items_generated=4, items_failed=1)) == 80.0
    assert run_stats.success_rate(transient_run(items_generated=2, items_failed=1)) == 66.67


def test_success_rate_is_zero_without_resolved_items() -> None:
    assert run_stats.success_rate(transient_run()) == 0.0


def test_build_summary_groups_items() -> None:
    run = transient_run(items_planned=3)
    items = [
        _item("i-1", "completed", country_id=1, cost="0.10"),
        _item("i-2", "failed", country_id=2),
        _item("i-3", "completed", country_id=2, cost="0.15"),
    ]
    summary = run_stats.build_summary(run, items, completed_at=utc(2024, 1, 2, 8, 10, 1))
    assert summary["items_generated"] == 2
    assert summary["items_failed"] == 1
    assert Decimal(summary["total_cost"]) == Decimal("0.25")
    assert summary["duration_seconds"] == 600
    assert summary["success_rate"] == 66.67
    assert summary["by_country"]["2"] == {"planned": 2, "completed": 1, "failed": 1, "cost": "0.15"}
    assert summary["by_generation_type"]["article"]["planned"] == 3
