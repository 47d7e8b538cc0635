from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from contentflow.core.clock import utc_now
from contentflow.core.config import get_settings
from contentflow.domain.reference import JsonFileReferenceProvider, ReferenceDataProvider
from contentflow.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


@lru_cache
def _file_reference_provider(path: str) -> JsonFileReferenceProvider:
    return JsonFileReferenceProvider(path)


def get_reference_provider() -> ReferenceDataProvider:
    return _file_reference_provider(get_settings().reference_data_path)


def get_clock():
    # Overridable so tests can pin "now".
    return utc_now
