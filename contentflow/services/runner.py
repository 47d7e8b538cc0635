from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.core.clock import local_day_bounds, utc_now
from contentflow.core.config import Settings, get_settings
from contentflow.core.errors import (
    InvalidRecurrenceError,
    ItemStateError,
    ProgramAlreadyRunningError,
    ProgramStateError,
    RunStateError,
)
from contentflow.domain.content import ContentRef, ensure_matches
from contentflow.domain.models import (
    ITEM_STATUS_COMPLETED,
    ITEM_STATUS_FAILED,
    ITEM_STATUS_GENERATING,
    ITEM_STATUS_PENDING,
    PROGRAM_STATUS_COMPLETED,
    PROGRAM_STATUS_ERROR,
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
    Program,
    ProgramItem,
    ProgramRun,
)
from contentflow.domain.policies import RecurrencePolicy
from contentflow.domain.reference import ReferenceDataProvider
from contentflow.persistence.repos import items as items_repo
from contentflow.persistence.repos import programs as programs_repo
from contentflow.persistence.repos import runs as runs_repo
from contentflow.services.dispatch import ItemDispatcher
from contentflow.services.expansion import build_items, plan_items
from contentflow.services.programs import estimate_item_count, merged_options
from contentflow.services.recurrence import compute_next_run, validate_policy
from contentflow.services.run_stats import build_summary


logger = logging.getLogger(__name__)

OUTCOME_DISPATCHED = "dispatched"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"

_UNRESOLVED_ITEM_STATUSES = (ITEM_STATUS_PENDING, ITEM_STATUS_GENERATING)


@dataclass(frozen=True)
class TickOutcome:
    # One entry per ready program handled by a scheduler tick.
    program_id: str
    status: str
    run_id: str | None = None
    reason: str | None = None


class ProgramRunner:
    """Start, track and settle program runs against the shared database.

    Every public operation commits its own transaction. Exclusive run start,
    counter increments and item resolution are conditional UPDATEs, so any
    number of scheduler and worker processes can share the same store.
    """

    def __init__(
        self,
        *,
        reference_provider: ReferenceDataProvider,
        dispatcher: ItemDispatcher | None = None,
        time_provider: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._reference_provider = reference_provider
        self._dispatcher = dispatcher
        # Allow time injection for deterministic scheduling tests.
        self._time_provider = time_provider or utc_now
        self._settings = settings or get_settings()

    def _now(self, now: datetime | None) -> datetime:
        return now if now is not None else self._time_provider()

    async def find_ready_programs(
        self, session: AsyncSession, now: datetime | None = None
    ) -> list[Program]:
        return await programs_repo.list_ready_programs(session, now=self._now(now))

    async def can_run_today(
        self, session: AsyncSession, program: Program, now: datetime | None = None
    ) -> bool:
        # Daily gates count items created during the program's local day.
        if program.daily_generation_limit is None and program.daily_budget_limit is None:
            return True
        policy = RecurrencePolicy.from_program(program)
        start, end = local_day_bounds(self._now(now), policy.timezone)
        if program.daily_generation_limit is not None:
            count = await items_repo.count_items_created_between(
                session, program_id=program.id, start=start, end=end
            )
            if count >= program.daily_generation_limit:
                logger.info(
                    "program_daily_generation_limit program_id=%s count=%s limit=%s",
                    program.id,
                    count,
                    program.daily_generation_limit,
                )
                return False
        if program.daily_budget_limit is not None:
            spent = await items_repo.sum_item_cost_between(
                session, program_id=program.id, start=start, end=end
            )
            if spent >= Decimal(str(program.daily_budget_limit)):
                logger.info(
                    "program_daily_budget_limit program_id=%s spent=%s limit=%s",
                    program.id,
                    spent,
                    program.daily_budget_limit,
                )
                return False
        return True

    async def start_run(
        self, session: AsyncSession, program: Program, now: datetime | None = None
    ) -> ProgramRun:
        now = self._now(now)
        program_id = program.id
        run_id = uuid4().hex
        claimed = await programs_repo.claim_program(
            session, program_id=program_id, run_id=run_id, now=now
        )
        if not claimed:
            await session.rollback()
            raise ProgramAlreadyRunningError(f"program {program_id} is not ready or already running")

        try:
            snapshot = await self._reference_provider.load_snapshot()
            planned = plan_items(program, snapshot)
            expected = estimate_item_count(program, snapshot)
            if expected != len(planned):
                logger.warning(
                    "program_run_plan_mismatch program_id=%s expected=%s planned=%s",
                    program.id,
                    expected,
                    len(planned),
                )
            run = await runs_repo.create_run(
                session,
                run_id=run_id,
                program_id=program.id,
                started_at=now,
                items_planned=len(planned),
            )
            items = build_items(
                program, run_id, planned, now=now, generation_params=merged_options(program)
            )
            await items_repo.add_items(session, items)
            await session.flush()
            await session.commit()
        except Exception:
            # Roll back the claim with the partial run so the next tick can retry.
            await session.rollback()
            raise
        await programs_repo.get_program(session, program_id)

        logger.info(
            "program_run_started program_id=%s run_id=%s items_planned=%s",
            program.id,
            run_id,
            run.items_planned,
        )
        if run.items_planned == 0:
            # Nothing to generate; settle immediately so the program is released.
            return await self.finalize_run(session, run_id, now=now)
        return run

    async def dispatch_run(self, session: AsyncSession, program: Program, run: ProgramRun) -> int:
        if self._dispatcher is None or run.status != RUN_STATUS_RUNNING:
            return 0
        pending = await items_repo.list_items_for_run(session, run.id, status=ITEM_STATUS_PENDING)
        return await self._dispatcher.dispatch(program, run, [item.id for item in pending])

    async def mark_item_generating(
        self, session: AsyncSession, item_id: str, now: datetime | None = None
    ) -> ProgramItem:
        now = self._now(now)
        moved = await items_repo.transition_item(
            session,
            item_id=item_id,
            from_statuses=(ITEM_STATUS_PENDING,),
            values={"status": ITEM_STATUS_GENERATING, "started_at": now},
        )
        if not moved:
            await session.rollback()
            raise ItemStateError(f"item {item_id} is not pending")
        await session.commit()
        return await self._require_item(session, item_id)

    async def complete_item(
        self,
        session: AsyncSession,
        item_id: str,
        *,
        content: ContentRef,
        cost: Decimal | float | int = 0,
        result_data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ProgramItem:
        now = self._now(now)
        item = await self._require_item(session, item_id)
        ensure_matches(item.generation_type, content)
        item_cost = Decimal(str(cost))
        merged = {**(item.result_data or {}), **(result_data or {})}
        moved = await items_repo.transition_item(
            session,
            item_id=item_id,
            from_statuses=_UNRESOLVED_ITEM_STATUSES,
            values={
                "status": ITEM_STATUS_COMPLETED,
                "content_type": content.kind.value,
                "content_id": content.id,
                "cost": item_cost,
                "result_data": merged,
                "completed_at": now,
            },
        )
        if not moved:
            await session.rollback()
            raise ItemStateError(f"item {item_id} was already resolved")
        counted = await runs_repo.increment_generated(
            session, run_id=item.program_run_id, cost=item_cost
        )
        if not counted:
            await session.rollback()
            raise RunStateError(f"run {item.program_run_id} no longer accepts item results")
        await session.commit()
        logger.info(
            "program_item_completed item_id=%s run_id=%s content=%s:%s cost=%s",
            item_id,
            item.program_run_id,
            content.kind.value,
            content.id,
            item_cost,
        )
        await self._finalize_if_resolved(session, item.program_run_id, now)
        return await self._require_item(session, item_id)

    async def fail_item(
        self, session: AsyncSession, item_id: str, message: str, now: datetime | None = None
    ) -> ProgramItem:
        now = self._now(now)
        item = await self._require_item(session, item_id)
        moved = await items_repo.transition_item(
            session,
            item_id=item_id,
            from_statuses=_UNRESOLVED_ITEM_STATUSES,
            values={"status": ITEM_STATUS_FAILED, "error_message": message, "completed_at": now},
        )
        if not moved:
            await session.rollback()
            raise ItemStateError(f"item {item_id} was already resolved")
        counted = await runs_repo.increment_failed(session, run_id=item.program_run_id)
        if not counted:
            await session.rollback()
            raise RunStateError(f"run {item.program_run_id} no longer accepts item results")
        await session.commit()
        logger.warning(
            "program_item_failed item_id=%s run_id=%s error=%s", item_id, item.program_run_id, message
        )
        await self._finalize_if_resolved(session, item.program_run_id, now)
        return await self._require_item(session, item_id)

    async def finalize_run(
        self, session: AsyncSession, run_id: str, now: datetime | None = None
    ) -> ProgramRun:
        now = self._now(now)
        run = await self._require_run(session, run_id)
        status = self._outcome_status(run)
        error_message = None
        if status == RUN_STATUS_FAILED:
            error_message = f"{run.items_failed} of {run.items_generated + run.items_failed} items failed"
        return await self._finish(session, run, status=status, now=now, error_message=error_message)

    async def fail_run(
        self, session: AsyncSession, run_id: str, message: str, now: datetime | None = None
    ) -> ProgramRun:
        run = await self._require_run(session, run_id)
        return await self._finish(
            session, run, status=RUN_STATUS_FAILED, now=self._now(now), error_message=message
        )

    async def cancel_run(
        self, session: AsyncSession, run_id: str, now: datetime | None = None
    ) -> ProgramRun:
        # Issued items are not recalled; late results are rejected by the run guard.
        run = await self._require_run(session, run_id)
        return await self._finish(session, run, status=RUN_STATUS_CANCELLED, now=self._now(now))

    async def reap_stale_runs(
        self, session: AsyncSession, now: datetime | None = None
    ) -> list[str]:
        now = self._now(now)
        timeout = int(self._settings.run_stale_after_minutes)
        stale = await runs_repo.list_stale_runs(
            session, started_before=now - timedelta(minutes=timeout)
        )
        reaped: list[str] = []
        for run in stale:
            try:
                await self.fail_run(
                    session, run.id, f"run timed out after {timeout} minutes", now=now
                )
            except RunStateError:
                # Finalized concurrently; nothing left to reap.
                continue
            reaped.append(run.id)
        if reaped:
            logger.warning("program_runs_reaped count=%s run_ids=%s", len(reaped), reaped)
        return reaped

    async def run_scheduled(
        self, session: AsyncSession, now: datetime | None = None
    ) -> list[TickOutcome]:
        now = self._now(now)
        outcomes: list[TickOutcome] = []
        ready_ids = [program.id for program in await self.find_ready_programs(session, now)]
        for program_id in ready_ids:
            # Reload per program; a rollback for an earlier program expires loaded rows.
            program = await programs_repo.get_program(session, program_id)
            if program is None:
                continue
            if not await self.can_run_today(session, program, now):
                outcomes.append(
                    TickOutcome(program_id=program_id, status=OUTCOME_SKIPPED, reason="daily limit reached")
                )
                continue
            try:
                run = await self.start_run(session, program, now)
                await self.dispatch_run(session, program, run)
            except ProgramAlreadyRunningError:
                outcomes.append(
                    TickOutcome(program_id=program_id, status=OUTCOME_SKIPPED, reason="already running")
                )
                continue
            except Exception as exc:  # noqa: BLE001 - one failing program must not stop the tick
                await session.rollback()
                logger.exception("program_run_start_failed program_id=%s", program_id)
                outcomes.append(TickOutcome(program_id=program_id, status=OUTCOME_ERROR, reason=str(exc)))
                continue
            outcomes.append(TickOutcome(program_id=program_id, status=OUTCOME_DISPATCHED, run_id=run.id))
        logger.info(
            "scheduler_tick_completed ready=%s dispatched=%s",
            len(outcomes),
            sum(1 for outcome in outcomes if outcome.status == OUTCOME_DISPATCHED),
        )
        return outcomes

    def _outcome_status(self, run: ProgramRun) -> str:
        failed = int(run.items_failed or 0)
        resolved = int(run.items_generated or 0) + failed
        if failed and failed / resolved >= float(self._settings.run_failure_ratio_threshold):
            return RUN_STATUS_FAILED
        return RUN_STATUS_COMPLETED

    async def _finalize_if_resolved(self, session: AsyncSession, run_id: str, now: datetime) -> None:
        run = await self._require_run(session, run_id)
        if run.status != RUN_STATUS_RUNNING:
            return
        if run.items_generated + run.items_failed < run.items_planned:
            return
        try:
            await self.finalize_run(session, run_id, now=now)
        except RunStateError:
            # Another worker resolved the last item and finalized first.
            logger.info("program_run_already_finalized run_id=%s", run_id)

    async def _finish(
        self,
        session: AsyncSession,
        run: ProgramRun,
        *,
        status: str,
        now: datetime,
        error_message: str | None = None,
    ) -> ProgramRun:
        if run.status != RUN_STATUS_RUNNING:
            raise RunStateError(f"run {run.id} is already {run.status}")
        items = await items_repo.list_items_for_run(session, run.id)
        summary = build_summary(run, items, completed_at=now)
        finished = await runs_repo.finish_run(
            session,
            run_id=run.id,
            status=status,
            completed_at=now,
            summary=summary,
            error_message=error_message,
        )
        if not finished:
            await session.rollback()
            raise RunStateError(f"run {run.id} was finalized concurrently")
        await self._settle_program(session, run, now)
        await session.commit()
        run = await self._require_run(session, run.id)
        logger.info(
            "program_run_finished run_id=%s program_id=%s status=%s generated=%s failed=%s",
            run.id,
            run.program_id,
            run.status,
            run.items_generated,
            run.items_failed,
        )
        return run

    async def _settle_program(self, session: AsyncSession, run: ProgramRun, now: datetime) -> None:
        # Fold run totals into the program, advance its schedule and drop the claim.
        program = await programs_repo.get_program(session, run.program_id)
        if program is None:
            raise ProgramStateError(f"program {run.program_id} not found for run {run.id}")
        values: dict[str, Any] = {
            "total_generated": Program.total_generated + int(run.items_generated or 0),
            "total_errors": Program.total_errors + int(run.items_failed or 0),
            "total_cost": Program.total_cost + Decimal(str(run.cost or 0)),
            "run_count": Program.run_count + 1,
            "last_run_at": now,
        }
        values.update(self._next_schedule(program, now))
        released = await programs_repo.release_program(
            session, program_id=program.id, run_id=run.id, values=values
        )
        if not released:
            logger.warning(
                "program_claim_missing program_id=%s run_id=%s current_run_id=%s",
                program.id,
                run.id,
                program.current_run_id,
            )

    def _next_schedule(self, program: Program, now: datetime) -> dict[str, Any]:
        policy = RecurrencePolicy.from_program(program)
        if not policy.is_recurring:
            return {"status": PROGRAM_STATUS_COMPLETED, "next_run_at": None}
        try:
            validate_policy(policy)
        except InvalidRecurrenceError as exc:
            logger.warning("program_recurrence_invalid program_id=%s error=%s", program.id, exc)
            return {"status": PROGRAM_STATUS_ERROR, "error_message": str(exc), "next_run_at": None}

        next_run = compute_next_run(policy, now)
        if next_run is not None and program.next_run_at is not None and next_run <= program.next_run_at:
            # Never re-fire the slot that produced this run.
            next_run = compute_next_run(policy, program.next_run_at + timedelta(seconds=1))
        if next_run is None or (program.end_at is not None and next_run >= program.end_at):
            return {"status": PROGRAM_STATUS_COMPLETED, "next_run_at": None}
        return {"next_run_at": next_run}

    async def _require_run(self, session: AsyncSession, run_id: str) -> ProgramRun:
        run = await runs_repo.get_run(session, run_id)
        if run is None:
            raise RunStateError(f"run {run_id} not found")
        return run

    async def _require_item(self, session: AsyncSession, item_id: str) -> ProgramItem:
        item = await items_repo.get_item(session, item_id)
        if item is None:
            raise ItemStateError(f"item {item_id} not found")
        return item
