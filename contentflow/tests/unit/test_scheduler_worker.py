from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from contentflow.workers.scheduler_worker import (
    ItemResultPayload,
    WorkerSettings,
    publication_tick,
    record_item_result,
)


def test_item_result_payload_defaults() -> None:
    payload = ItemResultPayload.model_validate(
        {"item_id": "item-1", "status": "completed", "content_type": "article", "content_id": "42"}
    )
    assert payload.cost == Decimal("0")
    assert payload.result_data is None


@pytest.mark.parametrize(
    "payload",
    [
        {"item_id": "item-1", "status": "done"},
        {"item_id": "item-1", "status": "completed", "cost": "-1"},
        {"status": "failed"},
    ],
)
def test_item_result_payload_rejects_invalid_contracts(payload) -> None:
    with pytest.raises(ValidationError):
        ItemResultPayload.model_validate(payload)


@pytest.mark.asyncio
async def test_record_item_result_validates_before_touching_storage() -> None:
    with pytest.raises(ValidationError):
        await record_item_result({}, {"item_id": "item-1", "status": "unknown"})


@pytest.mark.asyncio
async def test_publication_tick_without_publisher_is_noop() -> None:
    assert await publication_tick({}) == {}


def test_worker_settings_register_cron_jobs() -> None:
    names = {job.name for job in WorkerSettings.cron_jobs}
    assert names == {
        "cron:scheduler_tick",
        "cron:publication_tick",
        "cron:reap_stale_runs",
        "cron:reap_stale_publications",
    }
    assert record_item_result in WorkerSettings.functions
