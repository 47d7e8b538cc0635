from __future__ import annotations

import asyncio
import logging

from contentflow.core.clock import utc_now
from contentflow.core.logging import configure_logging
from contentflow.persistence.db import SessionLocal
from contentflow.services.dispatch import ArqItemDispatcher
from contentflow.workers.scheduler_worker import build_runner


logger = logging.getLogger(__name__)


async def _main() -> None:
    # One-shot tick for hosts that drive scheduling from system cron instead of the arq worker.
    configure_logging()
    runner = build_runner(ArqItemDispatcher())
    async with SessionLocal() as session:
        reaped = await runner.reap_stale_runs(session, utc_now())
        outcomes = await runner.run_scheduled(session, utc_now())
    for outcome in outcomes:
        logger.info(
            "scheduler_tick_outcome program_id=%s status=%s run_id=%s reason=%s",
            outcome.program_id,
            outcome.status,
            outcome.run_id,
            outcome.reason,
        )
    logger.info("scheduler_tick_done outcomes=%s reaped=%s", len(outcomes), len(reaped))


if __name__ == "__main__":
    asyncio.run(_main())
