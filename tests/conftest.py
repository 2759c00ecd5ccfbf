"""Test fixtures: a fresh in-memory database per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own in-memory SQLite (aiosqlite) engine with the
   schema created from the ORM models. StaticPool keeps the single
   connection alive, so every session in the test sees the same data.
2. The app's get_db dependency is overridden to hand out that session,
   and get_clock to hand out a FrozenClock the test can move forward, so
   expiry and poll throttling are tested without sleeping.
3. Browser sessions are real signed cookies (create_session_token), so
   the actual resolver pipeline runs for every request.
"""

import os

os.environ.setdefault("SKILLSAUTH_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SKILLSAUTH_LOG_LEVEL", "WARNING")

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from skillsauth.auth.dependencies import get_clock
from skillsauth.auth.session import create_session_token
from skillsauth.config import settings
from skillsauth.db.engine import get_db
from skillsauth.db.models import Base, User
from skillsauth.main import app


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def session_headers(user_id, email: str | None = None) -> dict:
    """Cookie header for a logged-in browser session."""
    token = create_session_token(str(user_id), email=email)
    return {"Cookie": f"{settings.session_cookie_name}={token}"}


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(db_engine):
    session = AsyncSession(bind=db_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()


@pytest_asyncio.fixture()
async def user(db_session):
    """A marketplace account. Detached, so a service-side rollback never expires it."""
    row = User(id=uuid.uuid4(), email="ada@example.com", name="Ada")
    db_session.add(row)
    await db_session.commit()
    db_session.expunge(row)
    return row


@pytest_asyncio.fixture()
async def other_user(db_session):
    row = User(id=uuid.uuid4(), email="grace@example.com", name="Grace")
    db_session.add(row)
    await db_session.commit()
    db_session.expunge(row)
    return row


@pytest_asyncio.fixture()
async def client(db_session, clock):
    """HTTP client with get_db and the clock overridden; auth runs for real."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def user_session(user):
    """Cookie headers for `user` logged in through the browser."""
    return session_headers(user.id, user.email)


async def fetch_all(db, model, *criteria) -> list:
    """Read rows fresh from the database, bypassing the identity map."""
    stmt = select(model).where(*criteria).execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def fetch_one(db, model, *criteria):
    rows = await fetch_all(db, model, *criteria)
    assert len(rows) == 1, rows
    return rows[0]
