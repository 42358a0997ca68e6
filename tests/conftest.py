"""
Shared pytest fixtures.

Every test gets its own SQLite file under tmp_path (a file, not :memory:, so
separate sessions really race on the same rows). The API is driven through
httpx's ASGI transport with get_db and get_claims overridden; the lifespan
hook is not run, so no Redis, NATS or scheduler is touched.
"""
import os

# must be set before the app modules read settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RL_ENABLED"] = "false"
os.environ["ENABLE_NATS_EVENTS"] = "false"
os.environ["ENABLE_SCHEDULER"] = "false"

import uuid
from decimal import Decimal

import httpx
import pytest
from fastapi import Header, HTTPException
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vale_cashback.db import init_db, make_engine
from vale_cashback.deps import get_claims, get_db
from vale_cashback.models import Wallet

CLIENT_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")
OTHER_CLIENT_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")
MERCHANT_ID = uuid.UUID("33333333-3333-4333-8333-333333333333")
OTHER_MERCHANT_ID = uuid.UUID("44444444-4444-4444-8444-444444444444")


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


async def _test_claims(authorization: str | None = Header(default=None)):
    """Test tokens are ``Bearer <user-uuid>:<role>``."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    sub, _, role = authorization.split(" ", 1)[1].partition(":")
    return {"sub": sub, "role": role}


@pytest.fixture
async def api(session_maker):
    """
    Factory for authenticated httpx clients against the payments app:
    ``api(CLIENT_ID, "client")``. Pass ``None`` for an anonymous client.
    """
    from vale_cashback.main import app

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_claims] = _test_claims
    opened: list[httpx.AsyncClient] = []

    def make(user_id: uuid.UUID | None, role: str | None = None) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {user_id}:{role}"} if user_id else {}
        c = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver", headers=headers)
        opened.append(c)
        return c

    yield make
    for c in opened:
        await c.aclose()
    app.dependency_overrides.clear()


@pytest.fixture
def log_records():
    """Collect loguru records emitted during the test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


# ---------------------------------------------------------------------------
# Helpers, not fixtures, so test modules can import and call them directly.
# ---------------------------------------------------------------------------
async def fund(session_maker, user_id: uuid.UUID, balance: str) -> None:
    async with session_maker() as s:
        s.add(Wallet(user_id=user_id, balance=Decimal(balance), total_earned=Decimal("0.00")))
        await s.commit()


async def wallet_of(session_maker, user_id: uuid.UUID) -> Wallet | None:
    async with session_maker() as s:
        return (await s.execute(select(Wallet).where(Wallet.user_id == user_id))).scalar_one_or_none()
