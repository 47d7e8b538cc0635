from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
import logging
from typing import Any, Literal

from arq import cron
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from contentflow.core.clock import utc_now
from contentflow.core.config import get_settings
from contentflow.core.logging import configure_logging
from contentflow.domain.content import ContentRef
from contentflow.domain.reference import JsonFileReferenceProvider
from contentflow.persistence.db import SessionLocal
from contentflow.persistence.repos import publication as publication_repo
from contentflow.services.dispatch import ArqItemDispatcher, ItemDispatcher
from contentflow.services.publication_queue import publish_due_entries, release_stale_publishing
from contentflow.services.publisher import Publisher, WebhookPublisher
from contentflow.services.runner import ProgramRunner


logger = logging.getLogger(__name__)


class ItemResultPayload(BaseModel):
    # Result contract reported by generation workers for a single item.
    item_id: str
    status: Literal["generating", "completed", "failed"]
    content_type: str | None = None
    content_id: str | None = None
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    result_data: dict[str, Any] | None = None
    error_message: str | None = None


def build_runner(dispatcher: ItemDispatcher | None = None) -> ProgramRunner:
    settings = get_settings()
    return ProgramRunner(
        reference_provider=JsonFileReferenceProvider(settings.reference_data_path),
        dispatcher=dispatcher,
    )


async def scheduler_tick(ctx) -> list[dict[str, Any]]:
    runner: ProgramRunner = ctx["runner"]
    async with SessionLocal() as session:
        outcomes = await runner.run_scheduled(session, utc_now())
    return [asdict(outcome) for outcome in outcomes]


async def reap_stale_runs(ctx) -> list[str]:
    runner: ProgramRunner = ctx["runner"]
    async with SessionLocal() as session:
        return await runner.reap_stale_runs(session, utc_now())


async def publication_tick(ctx) -> dict[str, dict[str, int]]:
    publisher: Publisher | None = ctx.get("publisher")
    if publisher is None:
        # No destination endpoint configured; entries stay queued.
        return {}
    now = utc_now()
    results: dict[str, dict[str, int]] = {}
    async with SessionLocal() as session:
        destinations = [
            schedule.destination_id for schedule in await publication_repo.list_active_schedules(session)
        ]
        for destination_id in destinations:
            try:
                results[destination_id] = await publish_due_entries(
                    session, publisher, destination_id=destination_id, now=now
                )
            except Exception:  # noqa: BLE001 - one destination must not block the others
                await session.rollback()
                logger.exception("publication_tick_failed destination_id=%s", destination_id)
    return results


async def reap_stale_publications(ctx) -> list[str]:
    async with SessionLocal() as session:
        return await release_stale_publishing(session, now=utc_now())


async def record_item_result(ctx, payload: dict) -> str:
    # Parse and validate payloads in the worker to enforce schema contracts.
    result = ItemResultPayload.model_validate(payload)
    runner: ProgramRunner = ctx["runner"]
    async with SessionLocal() as session:
        if result.status == "generating":
            item = await runner.mark_item_generating(session, result.item_id)
        elif result.status == "completed":
            if not result.content_type or result.content_id is None:
                item = await runner.fail_item(
                    session, result.item_id, "completed result is missing its content reference"
                )
            else:
                item = await runner.complete_item(
                    session,
                    result.item_id,
                    content=ContentRef.parse(result.content_type, result.content_id),
                    cost=result.cost,
                    result_data=result.result_data,
                )
        else:
            item = await runner.fail_item(
                session, result.item_id, result.error_message or "generation failed"
            )
    return item.status


async def _startup(ctx) -> None:
    configure_logging()
    # Reuse the worker's own Redis connection for generation dispatch.
    ctx["runner"] = build_runner(ArqItemDispatcher(pool=ctx["redis"]))
    settings = get_settings()
    if settings.publish_webhook_url:
        ctx["publisher"] = WebhookPublisher()
    else:
        logger.warning("publication_publisher_disabled reason=no_webhook_url")


async def _shutdown(ctx) -> None:
    ctx.pop("runner", None)
    ctx.pop("publisher", None)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scheduler_queue_name
    functions = [record_item_result]
    cron_jobs = [
        cron(scheduler_tick, minute=None, second=0, unique=True),
        cron(publication_tick, minute=None, second=30, unique=True),
        cron(reap_stale_runs, minute={0, 15, 30, 45}, second=10, unique=True),
        cron(reap_stale_publications, minute={5, 20, 35, 50}, second=10, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
