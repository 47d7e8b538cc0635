from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Sequence

import pytest

from contentflow.core.errors import (
    ContentTypeMismatchError,
    ItemStateError,
    ProgramAlreadyRunningError,
    RunStateError,
)
from contentflow.domain.content import ContentKind, ContentRef
from contentflow.domain.reference import StaticReferenceProvider
from contentflow.persistence.repos import items as items_repo
from contentflow.persistence.repos import programs as programs_repo
from contentflow.persistence.repos import runs as runs_repo
from contentflow.services import programs as program_service
from contentflow.services.run_stats import success_rate
from contentflow.services.runner import OUTCOME_DISPATCHED, OUTCOME_SKIPPED, ProgramRunner
from contentflow.tests.utils.factories import create_program, utc


class _RecordingDispatcher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []

    async def dispatch(self, program, run, item_ids: Sequence[str]) -> int:
        self.calls.append((run.id, list(item_ids)))
        return 1


def _runner(snapshot, dispatcher=None) -> ProgramRunner:
    return ProgramRunner(reference_provider=StaticReferenceProvider(snapshot), dispatcher=dispatcher)


async def _active_program(session, now, **overrides):
    program = await create_program(session, **overrides)
    program_service.activate(program, now)
    await session.commit()
    return program


@pytest.mark.asyncio
async def test_daily_program_end_to_end(session, snapshot) -> None:
    program = await _active_program(session, utc(2024, 1, 1, 10, 0), program_id="prog-daily")
    assert program.status == "active"
    assert program.next_run_at == utc(2024, 1, 2, 8, 0)

    dispatcher = _RecordingDispatcher()
    runner = _runner(snapshot, dispatcher)
    tick = utc(2024, 1, 2, 8, 0, 1)
    outcomes = await runner.run_scheduled(session, tick)

    assert [outcome.status for outcome in outcomes] == [OUTCOME_DISPATCHED]
    run_id = outcomes[0].run_id
    run = await runs_repo.get_run(session, run_id)
    assert run.items_planned == 5
    items = await items_repo.list_items_for_run(session, run_id)
    assert len(items) == 5
    assert {item.status for item in items} == {"pending"}
    assert dispatcher.calls == [(run_id, [item.id for item in items])]

    for offset, item in enumerate(items[:4]):
        await runner.complete_item(
            session,
            item.id,
            content=ContentRef(kind=ContentKind.ARTICLE, id=f"article-{offset}"),
            cost=Decimal("0.10"),
            now=tick + timedelta(minutes=offset + 1),
        )
    finished_at = tick + timedelta(minutes=10)
    await runner.fail_item(session, items[4].id, "model timeout", now=finished_at)

    run = await runs_repo.get_run(session, run_id)
    assert run.status == "completed"
    assert run.items_generated == 4
    assert run.items_failed == 1
    assert success_rate(run) == 80.0
    assert run.completed_at == finished_at
    assert Decimal(run.summary["total_cost"]) == Decimal("0.40")

    program = await programs_repo.get_program(session, "prog-daily")
    assert program.status == "active"
    assert program.next_run_at == utc(2024, 1, 3, 8, 0)
    assert program.last_run_at == finished_at
    assert program.current_run_id is None
    assert program.run_count == 1
    assert program.total_generated == 4
    assert program.total_errors == 1

    # Already settled: a second finalize is rejected.
    with pytest.raises(RunStateError):
        await runner.finalize_run(session, run_id, now=finished_at)


@pytest.mark.asyncio
async def test_programs_are_not_ready_before_next_run(session, snapshot) -> None:
    await _active_program(session, utc(2024, 1, 1, 10, 0))
    runner = _runner(snapshot)
    assert await runner.find_ready_programs(session, utc(2024, 1, 2, 7, 59)) == []
    assert len(await runner.find_ready_programs(session, utc(2024, 1, 2, 8, 0))) == 1


@pytest.mark.asyncio
async def test_ready_programs_order_by_priority(session, snapshot) -> None:
    now = utc(2024, 1, 1, 10, 0)
    await _active_program(session, now, program_id="prog-low", priority=1)
    await _active_program(session, now, program_id="prog-high", priority=5)
    ready = await _runner(snapshot).find_ready_programs(session, utc(2024, 1, 2, 9, 0))
    assert [program.id for program in ready] == ["prog-high", "prog-low"]


@pytest.mark.asyncio
async def test_concurrent_start_is_exclusive(session_factory, snapshot) -> None:
    async with session_factory() as setup:
        await _active_program(setup, utc(2024, 1, 1, 10, 0), program_id="prog-race")
    tick = utc(2024, 1, 2, 8, 0, 1)

    async with session_factory() as first, session_factory() as second:
        program_a = await programs_repo.get_program(first, "prog-race")
        program_b = await programs_repo.get_program(second, "prog-race")
        run = await _runner(snapshot).start_run(first, program_a, tick)
        with pytest.raises(ProgramAlreadyRunningError):
            await _runner(snapshot).start_run(second, program_b, tick)

        assert await _runner(snapshot).find_ready_programs(second, tick) == []
        runs = await runs_repo.list_runs_for_program(second, "prog-race")
        assert [row.id for row in runs] == [run.id]


@pytest.mark.asyncio
async def test_tick_skips_program_over_daily_generation_limit(session, snapshot) -> None:
    program = await _active_program(
        session,
        utc(2024, 1, 1, 10, 0),
        program_id="prog-limited",
        recurrence_type="cron",
        recurrence_config={"timezone": "UTC"},
        cron_expression="0 */6 * * *",
        daily_generation_limit=5,
    )
    runner = _runner(snapshot)
    first_tick = utc(2024, 1, 1, 12, 0, 1)
    outcomes = await runner.run_scheduled(session, first_tick)
    assert [outcome.status for outcome in outcomes] == [OUTCOME_DISPATCHED]
    await runner.cancel_run(session, outcomes[0].run_id, now=first_tick + timedelta(minutes=1))

    program = await programs_repo.get_program(session, "prog-limited")
    assert program.next_run_at == utc(2024, 1, 1, 18, 0)
    assert not await runner.can_run_today(session, program, utc(2024, 1, 1, 18, 0, 1))
    outcomes = await runner.run_scheduled(session, utc(2024, 1, 1, 18, 0, 1))
    assert [(outcome.status, outcome.reason) for outcome in outcomes] == [(OUTCOME_SKIPPED, "daily limit reached")]
    # A new local day resets the gate.
    assert await runner.can_run_today(session, program, utc(2024, 1, 2, 0, 0, 1))


@pytest.mark.asyncio
async def test_zero_daily_limits_block_runs(session, snapshot) -> None:
    now = utc(2024, 1, 1, 10, 0)
    runner = _runner(snapshot)
    no_items = await _active_program(session, now, program_id="prog-zero-items", daily_generation_limit=0)
    no_budget = await _active_program(
        session, now, program_id="prog-zero-budget", daily_budget_limit=Decimal("0")
    )
    unlimited = await _active_program(session, now, program_id="prog-unlimited")

    assert not await runner.can_run_today(session, no_items, now)
    assert not await runner.can_run_today(session, no_budget, now)
    assert await runner.can_run_today(session, unlimited, now)


@pytest.mark.asyncio
async def test_once_program_completes_after_run(session, snapshot) -> None:
    now = utc(2024, 1, 1, 10, 0)
    await _active_program(session, now, program_id="prog-once", recurrence_type="once", quantity_value=1)
    runner = _runner(snapshot)
    run = await runner.start_run(session, await programs_repo.get_program(session, "prog-once"), now)
    items = await items_repo.list_items_for_run(session, run.id)
    await runner.complete_item(session, items[0].id, content=ContentRef.parse("article", 1), now=now)

    program = await programs_repo.get_program(session, "prog-once")
    assert program.status == "completed"
    assert program.next_run_at is None


@pytest.mark.asyncio
async def test_run_past_end_at_completes_program(session, snapshot) -> None:
    now = utc(2024, 1, 1, 10, 0)
    await _active_program(session, now, program_id="prog-ending", quantity_value=1, end_at=utc(2024, 1, 2, 12, 0))
    runner = _runner(snapshot)
    tick = utc(2024, 1, 2, 8, 0, 1)
    run = await runner.start_run(session, await programs_repo.get_program(session, "prog-ending"), tick)
    await runner.fail_run(session, run.id, "generator offline", now=tick)

    run = await runs_repo.get_run(session, run.id)
    assert run.status == "failed"
    assert run.error_message == "generator offline"
    program = await programs_repo.get_program(session, "prog-ending")
    assert program.status == "completed"


@pytest.mark.asyncio
async def test_invalid_cron_puts_program_in_error(session, snapshot) -> None:
    now = utc(2024, 1, 1, 10, 0)
    await create_program(
        session,
        program_id="prog-bad-cron",
        status="active",
        recurrence_type="cron",
        cron_expression="61 * * * *",
        next_run_at=now,
        quantity_value=1,
    )
    runner = _runner(snapshot)
    run = await runner.start_run(session, await programs_repo.get_program(session, "prog-bad-cron"), now)
    await runner.cancel_run(session, run.id, now=now)

    program = await programs_repo.get_program(session, "prog-bad-cron")
    assert program.status == "error"
    assert program.error_message
    assert program.current_run_id is None


@pytest.mark.asyncio
async def test_all_items_failed_marks_run_failed(session, snapshot) -> None:
    now = utc(2024, 1, 1, 10, 0)
    await _active_program(session, now, program_id="prog-failing", quantity_value=2)
    runner = _runner(snapshot)
    tick = utc(2024, 1, 2, 8, 0, 1)
    run = await runner.start_run(session, await programs_repo.get_program(session, "prog-failing"), tick)
    for item in await items_repo.list_items_for_run(session, run.id):
        await runner.fail_item(session, item.id, "quality below threshold", now=tick)

    run = await runs_repo.get_run(session, run.id)
    assert run.status == "failed"
    assert success_rate(run) == 0.0
    program = await programs_repo.get_program(session, "prog-failing")
    # A failed run does not stop the schedule.
    assert program.status == "active"
    assert program.next_run_at == utc(2024, 1, 3, 8, 0)


@pytest.mark.asyncio
async def test_item_results_are_guarded(session, snapshot) -> None:
    now = utc(2024, 1, 1, 10, 0)
    await _active_program(session, now, program_id="prog-guarded", content_types=["dossier"], quantity_value=2)
    runner = _runner(snapshot)
    tick = utc(2024, 1, 2, 8, 0, 1)
    run = await runner.start_run(session, await programs_repo.get_program(session, "prog-guarded"), tick)
    first, second = await items_repo.list_items_for_run(session, run.id)

    with pytest.raises(ContentTypeMismatchError):
        await runner.complete_item(session, first.id, content=ContentRef.parse("article", 1), now=tick)
    assert (await items_repo.get_item(session, first.id)).status == "pending"

    generating = await runner.mark_item_generating(session, first.id, now=tick)
    assert generating.status == "generating"
    await runner.complete_item(session, first.id, content=ContentRef.parse("press_dossier", 1), now=tick)
    with pytest.raises(ItemStateError):
        await runner.fail_item(session, first.id, "late failure", now=tick)

    run = await runs_repo.get_run(session, run.id)
    assert run.items_generated == 1
    assert run.status == "running"

    await runner.cancel_run(session, run.id, now=tick)
    with pytest.raises(RunStateError):
        await runner.complete_item(session, second.id, content=ContentRef.parse("press_dossier", 2), now=tick)
    assert (await items_repo.get_item(session, second.id)).status == "pending"


@pytest.mark.asyncio
async def test_stale_runs_are_reaped(session, snapshot) -> None:
    await _active_program(session, utc(2024, 1, 1, 10, 0), program_id="prog-stale")
    runner = _runner(snapshot)
    tick = utc(2024, 1, 2, 8, 0, 1)
    run = await runner.start_run(session, await programs_repo.get_program(session, "prog-stale"), tick)

    assert await runner.reap_stale_runs(session, tick + timedelta(minutes=30)) == []
    assert await runner.reap_stale_runs(session, tick + timedelta(hours=2)) == [run.id]
    run = await runs_repo.get_run(session, run.id)
    assert run.status == "failed"
    assert "timed out" in run.error_message
    program = await programs_repo.get_program(session, "prog-stale")
    assert program.current_run_id is None
    assert program.next_run_at == utc(2024, 1, 3, 8, 0)


@pytest.mark.asyncio
async def test_empty_expansion_settles_immediately(session, snapshot) -> None:
    await _active_program(session, utc(2024, 1, 1, 10, 0), program_id="prog-empty", regions=[99], quantity_mode="per_country")
    runner = _runner(snapshot)
    tick = utc(2024, 1, 2, 8, 0, 1)
    run = await runner.start_run(session, await programs_repo.get_program(session, "prog-empty"), tick)
    assert run.items_planned == 0
    assert run.status == "completed"
    program = await programs_repo.get_program(session, "prog-empty")
    assert program.current_run_id is None
