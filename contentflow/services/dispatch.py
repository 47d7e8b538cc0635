from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from contentflow.core.config import get_settings
from contentflow.domain.models import Program, ProgramRun


logger = logging.getLogger(__name__)

# Job consumed by the external generation workers.
GENERATION_JOB_NAME = "generate_program_batch"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class GenerationBatchPayload(BaseModel):
    # Published job schema for scheduler-to-generator handoff.
    program_id: str
    run_id: str
    batch_number: int
    item_ids: list[str]


class ItemDispatcher(Protocol):
    async def dispatch(self, program: Program, run: ProgramRun, item_ids: Sequence[str]) -> int:
        ...


def batch_size_for(program: Program) -> int:
    # A program-level concurrency limit caps the batch size.
    settings = get_settings()
    if program.concurrent_jobs_limit and program.concurrent_jobs_limit > 0:
        return int(program.concurrent_jobs_limit)
    return max(1, int(settings.dispatch_batch_size))


def plan_batches(
    item_ids: Sequence[str], *, batch_size: int, stagger_s: int
) -> list[tuple[int, list[str], int]]:
    """Split item ids into (batch_number, ids, defer_seconds) tuples.

    Batch n (1-based) is deferred by (n - 1) * stagger_s seconds.
    """
    batches = []
    for index, start in enumerate(range(0, len(item_ids), batch_size)):
        batches.append((index + 1, list(item_ids[start : start + batch_size]), index * stagger_s))
    return batches


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.generation_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class ArqItemDispatcher:
    """Enqueue pending items onto the generation queue in staggered batches."""

    def __init__(self, *, pool=None) -> None:
        self._pool = pool

    async def _get_pool(self):
        if self._pool is not None:
            return self._pool
        return await get_redis_pool()

    async def dispatch(self, program: Program, run: ProgramRun, item_ids: Sequence[str]) -> int:
        settings = get_settings()
        if not item_ids:
            return 0
        redis = await self._get_pool()
        batches = plan_batches(
            item_ids,
            batch_size=batch_size_for(program),
            stagger_s=int(settings.dispatch_batch_stagger_s),
        )
        for batch_number, ids, defer_s in batches:
            payload = GenerationBatchPayload(
                program_id=program.id,
                run_id=run.id,
                batch_number=batch_number,
                item_ids=ids,
            )
            # Stable job ids make re-dispatch of the same batch a no-op in arq.
            await redis.enqueue_job(
                GENERATION_JOB_NAME,
                payload.model_dump(),
                _job_id=f"{run.id}:batch:{batch_number}",
                _queue_name=settings.generation_queue_name,
                _defer_by=defer_s or None,
            )
        logger.info(
            "program_run_dispatched program_id=%s run_id=%s items=%s batches=%s",
            program.id,
            run.id,
            len(item_ids),
            len(batches),
        )
        return len(batches)
