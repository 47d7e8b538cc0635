from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.domain.models import RUN_STATUS_RUNNING, ProgramRun


async def create_run(
    session: AsyncSession,
    *,
    run_id: str,
    program_id: str,
    started_at: datetime,
    items_planned: int = 0,
) -> ProgramRun:
    run = ProgramRun(
        id=run_id,
        program_id=program_id,
        started_at=started_at,
        status=RUN_STATUS_RUNNING,
        items_planned=items_planned,
        items_generated=0,
        items_failed=0,
        cost=Decimal("0"),
    )
    session.add(run)
    return run


async def get_run(session: AsyncSession, run_id: str) -> ProgramRun | None:
    # Counters change through UPDATE statements; always reload from the row.
    result = await session.execute(
        select(ProgramRun)
        .where(ProgramRun.id == run_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_runs_for_program(
    session: AsyncSession, program_id: str, *, limit: int = 20
) -> list[ProgramRun]:
    result = await session.execute(
        select(ProgramRun)
        .where(ProgramRun.program_id == program_id)
        .order_by(ProgramRun.started_at.desc(), ProgramRun.id)
        .limit(limit)
    )
    return list(result.scalars().all())


def _has_room():
    return ProgramRun.items_generated + ProgramRun.items_failed < ProgramRun.items_planned


async def increment_generated(session: AsyncSession, *, run_id: str, cost: Decimal) -> bool:
    # Single conditional UPDATE; concurrent completions never lose increments.
    result = await session.execute(
        update(ProgramRun)
        .where(ProgramRun.id == run_id, ProgramRun.status == RUN_STATUS_RUNNING, _has_room())
        .values(
            items_generated=ProgramRun.items_generated + 1,
            cost=ProgramRun.cost + cost,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def increment_failed(session: AsyncSession, *, run_id: str) -> bool:
    result = await session.execute(
        update(ProgramRun)
        .where(ProgramRun.id == run_id, ProgramRun.status == RUN_STATUS_RUNNING, _has_room())
        .values(items_failed=ProgramRun.items_failed + 1)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def finish_run(
    session: AsyncSession,
    *,
    run_id: str,
    status: str,
    completed_at: datetime,
    summary: dict[str, Any],
    error_message: str | None = None,
) -> bool:
    # Terminal transitions only leave `running`; the summary is written once here.
    result = await session.execute(
        update(ProgramRun)
        .where(ProgramRun.id == run_id, ProgramRun.status == RUN_STATUS_RUNNING)
        .values(
            status=status,
            completed_at=completed_at,
            summary=summary,
            error_message=error_message,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def list_stale_runs(session: AsyncSession, *, started_before: datetime) -> list[ProgramRun]:
    result = await session.execute(
        select(ProgramRun)
        .where(ProgramRun.status == RUN_STATUS_RUNNING, ProgramRun.started_at < started_before)
        .order_by(ProgramRun.started_at)
    )
    return list(result.scalars().all())
