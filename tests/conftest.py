"""Shared test fixtures.

Every test gets a throwaway SQLite database (aiosqlite) built from the ORM
metadata, and an AsyncMock standing in for the Redis publisher.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ascend.auth.jwt import create_access_token
from ascend.database import get_session
from ascend.db import models  # noqa: F401
from ascend.db.base import Base
from ascend.db.models import Challenge, User
from ascend.dependencies import get_redis_dep
from ascend.main import create_app


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with real BEGIN/SAVEPOINT semantics."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ascend.db'}")

    # pysqlite defers BEGIN and mishandles SAVEPOINT; take over transaction control.
    @event.listens_for(eng.sync_engine, "connect")
    def _do_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def publisher() -> AsyncMock:
    """Stand-in for redis.asyncio.Redis; records publish() calls."""
    redis = AsyncMock()
    redis.publish.return_value = 1
    return redis


@pytest.fixture
def make_user(session_factory):
    """Factory: insert a user and return its id."""
    counter = {"n": 0}

    async def _make(username: str | None = None, created_at: datetime | None = None, **fields) -> int:
        counter["n"] += 1
        async with session_factory() as db:
            user = User(
                username=username or f"founder{counter['n']}",
                created_at=created_at or datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
                **fields,
            )
            db.add(user)
            await db.commit()
            return user.id

    return _make


@pytest.fixture
def make_challenge(session_factory):
    """Factory: insert a challenge and return its id."""

    async def _make(requirements: dict | None = None, xp_reward: int = 100, **fields) -> int:
        async with session_factory() as db:
            challenge = Challenge(
                title=fields.pop("title", "Say hello"),
                description=fields.pop("description", "Introduce yourself to the community"),
                category=fields.pop("category", "community"),
                difficulty=fields.pop("difficulty", "beginner"),
                xp_reward=xp_reward,
                requirements={} if requirements is None else requirements,
                is_active=fields.pop("is_active", True),
                created_at=fields.pop("created_at", datetime.now(timezone.utc)),
                **fields,
            )
            db.add(challenge)
            await db.commit()
            return challenge.id

    return _make


@pytest.fixture
def auth_headers():
    """Factory: bearer headers for a user id."""

    def _headers(user_id: int) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


@pytest_asyncio.fixture
async def client(session_factory, publisher) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and mock publisher."""
    app = create_app()

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def _redis() -> AsyncGenerator[object, None]:
        yield publisher

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_redis_dep] = _redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
