from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from contentflow.apps.api.deps import get_clock, get_db, get_reference_provider
from contentflow.apps.api.errors import domain_error_status
from contentflow.apps.api.main import create_app
from contentflow.core.errors import (
    ContentTypeMismatchError,
    InvalidRecurrenceError,
    ProgramAlreadyRunningError,
    ReferenceDataError,
)
from contentflow.domain.content import ContentRef
from contentflow.domain.reference import StaticReferenceProvider
from contentflow.persistence.repos import items as items_repo
from contentflow.services import programs as program_service
from contentflow.services.runner import ProgramRunner
from contentflow.tests.utils.factories import create_program, create_schedule, utc


TICK = utc(2024, 1, 2, 8, 0, 1)


@pytest.fixture
def app(session_factory, snapshot):
    app = create_app()

    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_reference_provider] = lambda: StaticReferenceProvider(snapshot)
    app.dependency_overrides[get_clock] = lambda: (lambda: TICK)
    return app


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _seed_program(session, **overrides):
    program = await create_program(session, program_id="prog-api", name="Expat guides", **overrides)
    program_service.activate(program, utc(2024, 1, 1, 10, 0))
    await session.commit()
    return program


@pytest.mark.asyncio
async def test_health_envelope_and_legacy(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["db"] == "ok"
    assert body["data"]["reference_data"] == "ok"
    assert body["data"]["checked_at"].startswith("2024-01-02T08:00:01")
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1", "service": "contentflow"}
    assert response.headers["X-Request-Id"] == "req-123"

    legacy = (await client.get("/health")).json()
    assert legacy["status"] == "ok"
    assert "meta" not in legacy


class _MissingReferenceProvider:
    async def load_snapshot(self):
        raise ReferenceDataError("reference data file not found")


@pytest.mark.asyncio
async def test_health_degrades_without_reference_data(app, client) -> None:
    app.dependency_overrides[get_reference_provider] = lambda: _MissingReferenceProvider()
    data = (await client.get("/v1/health")).json()["data"]
    assert data["status"] == "degraded"
    assert data["db"] == "ok"
    assert data["reference_data"] == "unavailable"


@pytest.mark.asyncio
async def test_ready_programs_and_detail(client, session) -> None:
    await _seed_program(session)

    response = await client.get("/v1/ops/programs/ready")
    assert response.status_code == 200
    items = response.json()["data"]["items"]
    assert [item["id"] for item in items] == ["prog-api"]
    assert items[0]["recurrence"] == "daily at 08:00 UTC"

    detail = (await client.get("/v1/ops/programs/prog-api")).json()["data"]
    assert detail["status"] == "active"
    assert detail["next_run_at"].startswith("2024-01-02T08:00:00")
    assert detail["estimate"]["items_count"] == 5
    assert detail["estimate"]["reference_loaded"] is True
    assert Decimal(detail["estimate"]["estimated_cost"]) == Decimal("0.40") + Decimal("0.20")


@pytest.mark.asyncio
async def test_draft_without_quantity_has_no_estimate(client, session) -> None:
    await create_program(session, program_id="prog-draft", quantity_value=0)

    response = await client.get("/v1/ops/programs/prog-draft")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "draft"
    assert data["quantity_value"] == 0
    assert data["estimate"] is None


@pytest.mark.asyncio
async def test_unknown_program_returns_error_envelope(client) -> None:
    response = await client.get("/v1/ops/programs/missing")
    assert response.status_code == 404
    body = response.json()
    assert body["error"]["code"] == "NOT_FOUND"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_run_detail_reports_success_rate(client, session, snapshot) -> None:
    program = await _seed_program(session, quantity_value=2)
    runner = ProgramRunner(reference_provider=StaticReferenceProvider(snapshot))
    run = await runner.start_run(session, program, TICK)
    first, second = await items_repo.list_items_for_run(session, run.id)
    await runner.complete_item(session, first.id, content=ContentRef.parse("article", 1), now=TICK)
    await runner.fail_item(session, second.id, "timeout", now=TICK + timedelta(minutes=4))

    data = (await client.get(f"/v1/ops/runs/{run.id}")).json()["data"]
    assert data["status"] == "completed"
    assert data["success_rate"] == 50.0
    assert data["duration_seconds"] == 240.0
    assert data["summary"]["items_failed"] == 1

    runs = (await client.get("/v1/ops/programs/prog-api/runs")).json()["data"]["items"]
    assert [row["id"] for row in runs] == [run.id]


@pytest.mark.asyncio
async def test_publication_status_and_preview(client, session) -> None:
    await create_schedule(session, destination_id="blog-fr")

    status = (await client.get("/v1/ops/publication/blog-fr/status")).json()["data"]
    assert status["destination_id"] == "blog-fr"
    assert status["remaining_today"] == 3
    assert status["can_publish_now"] is True

    preview = (await client.get("/v1/ops/publication/blog-fr/preview?days=3")).json()["data"]
    assert [day["date"] for day in preview["days"]] == ["2024-01-02", "2024-01-03", "2024-01-04"]
    assert len(preview["days"][0]["slots"]) == 3

    missing = await client.get("/v1/ops/publication/unknown/status")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_preview_rejects_out_of_range_days(client, session) -> None:
    await create_schedule(session, destination_id="blog-fr")
    response = await client.get("/v1/ops/publication/blog-fr/preview?days=0")
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


def test_domain_errors_map_to_status_codes() -> None:
    assert domain_error_status(ProgramAlreadyRunningError("busy")) == (409, "PROGRAM_STATE_CONFLICT")
    assert domain_error_status(ContentTypeMismatchError("kind")) == (409, "ITEM_STATE_CONFLICT")
    assert domain_error_status(InvalidRecurrenceError("cron")) == (422, "INVALID_RECURRENCE")
    assert domain_error_status(ReferenceDataError("missing")) == (503, "REFERENCE_DATA_UNAVAILABLE")
