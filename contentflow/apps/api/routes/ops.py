from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.apps.api.deps import get_clock, get_db, get_reference_provider
from contentflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from contentflow.apps.api.response import SuccessEnvelope, success_response
from contentflow.core.errors import ReferenceDataError
from contentflow.domain.models import Program, ProgramRun
from contentflow.domain.policies import RecurrencePolicy
from contentflow.domain.reference import ReferenceDataProvider, ReferenceSnapshot
from contentflow.persistence.repos import programs as programs_repo
from contentflow.persistence.repos import publication as publication_repo
from contentflow.persistence.repos import runs as runs_repo
from contentflow.services import publication_queue, run_stats
from contentflow.services.programs import estimate


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class ProgramSummaryResponse(BaseModel):
    id: str
    name: str
    status: str
    priority: int
    recurrence: str
    next_run_at: datetime | None
    last_run_at: datetime | None
    current_run_id: str | None
    run_count: int


class ProgramListResponse(BaseModel):
    items: list[ProgramSummaryResponse]


class ContentTypeEstimateResponse(BaseModel):
    items: int
    unit_cost: Decimal
    unit_seconds: int


class EstimateResponse(BaseModel):
    items_count: int
    estimated_cost: Decimal
    estimated_time_seconds: int
    estimated_time_human: str
    by_content_type: dict[str, ContentTypeEstimateResponse]
    # False when the estimate fell back to the default reference set sizes.
    reference_loaded: bool


class ProgramDetailResponse(ProgramSummaryResponse):
    description: str | None
    content_types: list[str]
    quantity_mode: str
    quantity_value: int
    start_at: datetime | None
    end_at: datetime | None
    error_message: str | None
    total_generated: int
    total_published: int
    total_errors: int
    total_cost: Decimal
    # None while the program's quantity settings cannot be sized.
    estimate: EstimateResponse | None


class RunResponse(BaseModel):
    id: str
    program_id: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    items_planned: int
    items_generated: int
    items_failed: int
    cost: Decimal
    duration_seconds: float | None
    success_rate: float
    summary: dict[str, Any] | None
    error_message: str | None


class RunListResponse(BaseModel):
    items: list[RunResponse]


class PublicationStatusResponse(BaseModel):
    destination_id: str
    is_active: bool
    within_active_window: bool
    can_publish_now: bool
    blocked_reason: str | None
    retry_at: datetime | None
    published_today: int
    daily_limit: int
    remaining_today: int
    published_this_hour: int
    hourly_limit: int
    optimal_interval_minutes: float
    last_published_at: datetime | None
    consecutive_errors: int
    paused_at: datetime | None
    queue: dict[str, int]


class PreviewDayResponse(BaseModel):
    # ISO calendar date in the schedule timezone.
    date: str
    day_name: str
    is_active: bool
    scheduled_count: int
    capacity: int
    remaining: int
    slots: list[datetime]


class PublicationPreviewResponse(BaseModel):
    destination_id: str
    days: list[PreviewDayResponse]


def _program_summary(program: Program) -> dict[str, Any]:
    return {
        "id": program.id,
        "name": program.name,
        "status": program.status,
        "priority": program.priority,
        "recurrence": RecurrencePolicy.from_program(program).describe(),
        "next_run_at": program.next_run_at,
        "last_run_at": program.last_run_at,
        "current_run_id": program.current_run_id,
        "run_count": int(program.run_count or 0),
    }


def _run_payload(run: ProgramRun) -> RunResponse:
    elapsed = run_stats.duration(run)
    return RunResponse(
        id=run.id,
        program_id=run.program_id,
        status=run.status,
        started_at=run.started_at,
        completed_at=run.completed_at,
        items_planned=int(run.items_planned or 0),
        items_generated=int(run.items_generated or 0),
        items_failed=int(run.items_failed or 0),
        cost=run.cost or Decimal("0"),
        duration_seconds=elapsed.total_seconds() if elapsed is not None else None,
        success_rate=run_stats.success_rate(run),
        summary=run.summary,
        error_message=run.error_message,
    )


def _estimate_payload(program: Program, snapshot: ReferenceSnapshot | None) -> EstimateResponse | None:
    try:
        sizing = estimate(program, snapshot)
    except ValueError as exc:
        logger.warning("ops_estimate_unavailable program_id=%s error=%s", program.id, exc)
        return None
    return EstimateResponse(
        items_count=sizing.items_count,
        estimated_cost=sizing.estimated_cost,
        estimated_time_seconds=sizing.estimated_time_seconds,
        estimated_time_human=sizing.estimated_time_human,
        by_content_type={
            kind: ContentTypeEstimateResponse(
                items=row.items, unit_cost=row.unit_cost, unit_seconds=row.unit_seconds
            )
            for kind, row in sizing.by_content_type.items()
        },
        reference_loaded=snapshot is not None,
    )


async def _require_program(session: AsyncSession, program_id: str) -> Program:
    program = await programs_repo.get_program(session, program_id)
    if program is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Program not found"})
    return program


@router.get("/programs", response_model=SuccessEnvelope[ProgramListResponse] | ProgramListResponse)
async def list_programs(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    programs = await programs_repo.list_programs(db, status=status, limit=limit)
    payload = ProgramListResponse(items=[ProgramSummaryResponse(**_program_summary(p)) for p in programs])
    return success_response(request=request, data=payload)


@router.get(
    "/programs/ready", response_model=SuccessEnvelope[ProgramListResponse] | ProgramListResponse
)
async def list_ready_programs(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    # Same query the scheduler tick uses, without claiming anything.
    programs = await programs_repo.list_ready_programs(db, now=clock(), limit=limit)
    payload = ProgramListResponse(items=[ProgramSummaryResponse(**_program_summary(p)) for p in programs])
    return success_response(request=request, data=payload)


@router.get(
    "/programs/{program_id}",
    response_model=SuccessEnvelope[ProgramDetailResponse] | ProgramDetailResponse,
)
async def get_program(
    program_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    reference_provider: ReferenceDataProvider = Depends(get_reference_provider),
) -> dict:
    program = await _require_program(db, program_id)
    try:
        snapshot = await reference_provider.load_snapshot()
    except ReferenceDataError as exc:
        logger.warning("ops_estimate_without_reference program_id=%s error=%s", program_id, exc)
        snapshot = None
    payload = ProgramDetailResponse(
        **_program_summary(program),
        description=program.description,
        content_types=list(program.content_types or []),
        quantity_mode=program.quantity_mode,
        quantity_value=int(program.quantity_value or 0),
        start_at=program.start_at,
        end_at=program.end_at,
        error_message=program.error_message,
        total_generated=int(program.total_generated or 0),
        total_published=int(program.total_published or 0),
        total_errors=int(program.total_errors or 0),
        total_cost=program.total_cost or Decimal("0"),
        estimate=_estimate_payload(program, snapshot),
    )
    return success_response(request=request, data=payload)


@router.get(
    "/programs/{program_id}/runs",
    response_model=SuccessEnvelope[RunListResponse] | RunListResponse,
)
async def list_program_runs(
    program_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_program(db, program_id)
    runs = await runs_repo.list_runs_for_program(db, program_id, limit=limit)
    payload = RunListResponse(items=[_run_payload(run) for run in runs])
    return success_response(request=request, data=payload)


@router.get("/runs/{run_id}", response_model=SuccessEnvelope[RunResponse] | RunResponse)
async def get_run(run_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    run = await runs_repo.get_run(db, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Run not found"})
    return success_response(request=request, data=_run_payload(run))


async def _require_destination(session: AsyncSession, destination_id: str) -> None:
    if await publication_repo.get_schedule(session, destination_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "Publication schedule not found"},
        )


@router.get(
    "/publication/{destination_id}/status",
    response_model=SuccessEnvelope[PublicationStatusResponse] | PublicationStatusResponse,
)
async def publication_status(
    destination_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    await _require_destination(db, destination_id)
    report = await publication_queue.destination_status(db, destination_id=destination_id, now=clock())
    payload = PublicationStatusResponse(**report)
    return success_response(request=request, data=payload)


@router.get(
    "/publication/{destination_id}/preview",
    response_model=SuccessEnvelope[PublicationPreviewResponse] | PublicationPreviewResponse,
)
async def publication_preview(
    destination_id: str,
    request: Request,
    days: int = Query(default=7, ge=1, le=31),
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    await _require_destination(db, destination_id)
    preview = await publication_queue.schedule_preview(
        db, destination_id=destination_id, now=clock(), days=days
    )
    payload = PublicationPreviewResponse(
        destination_id=destination_id,
        days=[PreviewDayResponse(**day) for day in preview],
    )
    return success_response(request=request, data=payload)
