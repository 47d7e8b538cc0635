from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.apps.api.deps import get_clock, get_db, get_reference_provider
from contentflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from contentflow.apps.api.response import SuccessEnvelope, success_response
from contentflow.core.errors import ReferenceDataError
from contentflow.domain.reference import ReferenceDataProvider


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    # "degraded" when the scheduler could not plan runs right now.
    status: str
    db: str
    reference_data: str
    checked_at: datetime


async def _db_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(select(1))
    except SQLAlchemyError as exc:
        logger.warning("health_db_unavailable error=%s", exc)
        return False
    return True


async def _reference_ok(provider: ReferenceDataProvider) -> bool:
    try:
        await provider.load_snapshot()
    except ReferenceDataError as exc:
        logger.warning("health_reference_unavailable error=%s", exc)
        return False
    return True


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reference_provider: ReferenceDataProvider = Depends(get_reference_provider),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    db_ok = await _db_ok(db)
    reference_ok = await _reference_ok(reference_provider)
    payload = HealthResponse(
        status="ok" if db_ok and reference_ok else "degraded",
        db="ok" if db_ok else "degraded",
        reference_data="ok" if reference_ok else "unavailable",
        checked_at=clock(),
    )
    return success_response(request=request, data=payload)
