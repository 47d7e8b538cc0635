from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from contentflow.domain.models import (
    ITEM_STATUS_COMPLETED,
    ITEM_STATUS_FAILED,
    ProgramItem,
    ProgramRun,
)


def duration(run: ProgramRun) -> timedelta | None:
    # Only defined once the run has a completion timestamp.
    if run.completed_at is None:
        return None
    return run.completed_at - run.started_at


def success_rate(run: ProgramRun) -> float:
    return _rate(int(run.items_generated or 0), int(run.items_failed or 0))


def _rate(generated: int, failed: int) -> float:
    resolved = generated + failed
    if resolved == 0:
        return 0.0
    return round(generated / resolved * 100, 2)


def _bucket() -> dict[str, Any]:
    return {"planned": 0, "completed": 0, "failed": 0, "cost": Decimal("0")}


def _group_key(value: Any) -> str:
    # JSON object keys must be strings; missing dimensions group under "none".
    return "none" if value is None else str(value)


def build_summary(
    run: ProgramRun, items: Iterable[ProgramItem], *, completed_at: datetime
) -> dict[str, Any]:
    """Freeze the run breakdown written once when the run leaves `running`."""
    groups: dict[str, dict[str, dict[str, Any]]] = {
        "by_generation_type": defaultdict(_bucket),
        "by_country": defaultdict(_bucket),
        "by_language": defaultdict(_bucket),
    }
    generated = failed = 0
    total_cost = Decimal("0")
    for item in items:
        keys = {
            "by_generation_type": _group_key(item.generation_type),
            "by_country": _group_key(item.country_id),
            "by_language": _group_key(item.language_id),
        }
        cost = Decimal(str(item.cost or 0))
        for group, key in keys.items():
            bucket = groups[group][key]
            bucket["planned"] += 1
            if item.status == ITEM_STATUS_COMPLETED:
                bucket["completed"] += 1
                bucket["cost"] += cost
            elif item.status == ITEM_STATUS_FAILED:
                bucket["failed"] += 1
        if item.status == ITEM_STATUS_COMPLETED:
            generated += 1
            total_cost += cost
        elif item.status == ITEM_STATUS_FAILED:
            failed += 1

    summary: dict[str, Any] = {
        name: {key: {**bucket, "cost": str(bucket["cost"])} for key, bucket in sorted(group.items())}
        for name, group in groups.items()
    }
    summary.update(
        {
            "items_planned": int(run.items_planned or 0),
            "items_generated": generated,
            "items_failed": failed,
            "total_cost": str(total_cost),
            "duration_seconds": int((completed_at - run.started_at).total_seconds()),
            "success_rate": _rate(generated, failed),
        }
    )
    return summary
