from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from contentflow.core.config import get_settings
from contentflow.domain.models import Base
from contentflow.tests.utils.factories import build_snapshot


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; monkeypatched env must not leak across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # One SQLite file per test keeps runs isolated without cleanup queries.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'contentflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def snapshot():
    return build_snapshot()
