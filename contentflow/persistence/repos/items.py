from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.domain.models import ProgramItem


async def add_items(session: AsyncSession, items: Iterable[ProgramItem]) -> list[ProgramItem]:
    rows = list(items)
    session.add_all(rows)
    return rows


async def get_item(session: AsyncSession, item_id: str) -> ProgramItem | None:
    result = await session.execute(
        select(ProgramItem)
        .where(ProgramItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_items_for_run(
    session: AsyncSession, run_id: str, *, status: str | None = None
) -> list[ProgramItem]:
    stmt = select(ProgramItem).where(ProgramItem.program_run_id == run_id)
    if status:
        stmt = stmt.where(ProgramItem.status == status)
    result = await session.execute(
        stmt.order_by(ProgramItem.created_at, ProgramItem.id).execution_options(
            populate_existing=True
        )
    )
    return list(result.scalars().all())


async def transition_item(
    session: AsyncSession,
    *,
    item_id: str,
    from_statuses: Iterable[str],
    values: dict[str, Any],
) -> bool:
    # Compare-and-swap on status so a resolved item cannot be resolved twice.
    result = await session.execute(
        update(ProgramItem)
        .where(ProgramItem.id == item_id, ProgramItem.status.in_(tuple(from_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def count_items_created_between(
    session: AsyncSession, *, program_id: str, start: datetime, end: datetime
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(ProgramItem)
        .where(
            ProgramItem.program_id == program_id,
            ProgramItem.created_at >= start,
            ProgramItem.created_at < end,
        )
    )
    return int(result.scalar() or 0)


async def sum_item_cost_between(
    session: AsyncSession, *, program_id: str, start: datetime, end: datetime
) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(ProgramItem.cost), 0)).where(
            ProgramItem.program_id == program_id,
            ProgramItem.created_at >= start,
            ProgramItem.created_at < end,
        )
    )
    return Decimal(str(result.scalar() or 0))
