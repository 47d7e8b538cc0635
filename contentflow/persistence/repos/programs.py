from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.domain.models import (
    PROGRAM_STATUS_ACTIVE,
    PROGRAM_STATUS_SCHEDULED,
    Program,
)


RUNNABLE_STATUSES = (PROGRAM_STATUS_ACTIVE, PROGRAM_STATUS_SCHEDULED)


async def create_program(
    session: AsyncSession,
    *,
    program_id: str,
    name: str,
    content_types: list[str],
    **fields: Any,
) -> Program:
    program = Program(id=program_id, name=name, content_types=list(content_types), **fields)
    session.add(program)
    return program


async def get_program(session: AsyncSession, program_id: str) -> Program | None:
    result = await session.execute(
        select(Program).where(Program.id == program_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_programs(
    session: AsyncSession, *, status: str | None = None, limit: int = 100
) -> list[Program]:
    stmt = select(Program)
    if status:
        stmt = stmt.where(Program.status == status)
    result = await session.execute(stmt.order_by(Program.created_at, Program.id).limit(limit))
    return list(result.scalars().all())


def _ready_conditions(now: datetime) -> tuple[Any, ...]:
    # Shared by the readiness query and the claim so both agree on eligibility.
    return (
        Program.status.in_(RUNNABLE_STATUSES),
        or_(Program.next_run_at.is_(None), Program.next_run_at <= now),
        or_(Program.end_at.is_(None), Program.end_at > now),
        Program.current_run_id.is_(None),
    )


async def list_ready_programs(
    session: AsyncSession, *, now: datetime, limit: int | None = None
) -> list[Program]:
    stmt = (
        select(Program)
        .where(*_ready_conditions(now))
        .order_by(Program.priority.desc(), Program.next_run_at.asc().nulls_first(), Program.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def claim_program(
    session: AsyncSession, *, program_id: str, run_id: str, now: datetime
) -> bool:
    # Compare-and-swap on current_run_id; exactly one concurrent tick wins.
    result = await session.execute(
        update(Program)
        .where(Program.id == program_id, *_ready_conditions(now))
        .values(current_run_id=run_id, status=PROGRAM_STATUS_ACTIVE)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def release_program(
    session: AsyncSession, *, program_id: str, run_id: str, values: dict[str, Any]
) -> bool:
    # Only the owning run may release the claim.
    result = await session.execute(
        update(Program)
        .where(Program.id == program_id, Program.current_run_id == run_id)
        .values(current_run_id=None, **values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def add_published(session: AsyncSession, *, program_id: str, count: int = 1) -> None:
    await session.execute(
        update(Program)
        .where(Program.id == program_id)
        .values(total_published=Program.total_published + count)
        .execution_options(synchronize_session=False)
    )
