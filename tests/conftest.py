"""Shared fixtures: in-memory database, frozen clock, recording SMS sender."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers every table on Base.metadata)
from db.database import Base
from services.actors import Actor, ActorRole
from services.clock import Clock
from services.errors import NotificationError

T0 = datetime(2025, 3, 10, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock(Clock):
    """Clock that only moves when told to, with scripted codes."""

    def __init__(self, now: datetime = T0, codes: list[str] | None = None):
        self.current = now
        self.codes = list(codes or [])

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current += timedelta(**delta)
        return self.current

    def random_code(self, digits: int = 6) -> str:
        if self.codes:
            return self.codes.pop(0)
        return super().random_code(digits)


class FakeSender:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone: str, code: str) -> None:
        if self.fail:
            raise NotificationError("gateway down")
        self.sent.append((phone, code))

    def last_code(self, phone: str) -> str:
        return [code for p, code in self.sent if p == phone][-1]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock(codes=["482913", "115208", "730004", "904117"])


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def agent():
    return Actor(id="agent-7", role=ActorRole.AGENT)


@pytest.fixture
def postmaster():
    return Actor(id="pm-1", role=ActorRole.POSTMASTER)


@pytest.fixture
def postman():
    return Actor(id="postman-9", role=ActorRole.POSTMAN)


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN)
