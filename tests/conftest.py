"""Shared test fixtures.

Every test gets its own SQLite database file (aiosqlite) with the schema
created from the ORM metadata, so tests are isolated without TRUNCATE.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from classpoints.config import Settings, get_settings
from classpoints.database import close_db, get_engine, get_session_factory, init_db
from classpoints.db import models  # noqa: F401
from classpoints.db.base import Base
from classpoints.db.models import ActivityCompletion
from classpoints.rewards.seed import seed_achievements

# Tuesday, inside term 2026-T3 (Sep-Dec), ISO week 2026-W38
FIXED_NOW = datetime(2026, 9, 15, 10, 30, tzinfo=timezone.utc)


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    """Settings pointing at a per-test SQLite file."""
    monkeypatch.setenv("CP_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/test.db")
    monkeypatch.setenv("CP_LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Initialized engine with all tables created."""
    await init_db(settings.database_url)
    eng = get_engine()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await close_db()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for test assertions."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_db(db_session: AsyncSession) -> AsyncSession:
    """DB session with achievement definitions seeded (commits)."""
    await seed_achievements(db_session)
    return db_session


@pytest_asyncio.fixture
async def client(engine: AsyncEngine) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the app, sharing the test database.

    ASGITransport does not run the lifespan, so the DB is initialized by
    the engine fixture and Redis stays uninitialized (cache disabled).
    """
    from classpoints.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def make_completion_row(
    student_id: str = "stu-1",
    source_id: str = "act-1",
    activity_type: str = "QUIZ",
    completed_at: datetime = FIXED_NOW,
    **overrides: object,
) -> ActivityCompletion:
    """An activity_completions row as the grading subsystem would write it."""
    values: dict = {
        "student_id": student_id,
        "source": "ACTIVITY",
        "source_id": source_id,
        "activity_type": activity_type,
        "difficulty": None,
        "score": None,
        "max_score": None,
        "class_id": "class-7b",
        "subject_id": "math",
        "course_id": "algebra-1",
        "campus_id": "north",
        "completed_at": completed_at,
    }
    values.update(overrides)
    return ActivityCompletion(**values)
