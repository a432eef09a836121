"""Test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite + StaticPool, so
every session shares one connection) with all tables created from the
models. Redis is replaced by an ``AsyncMock``; the deadline index is only a
wake-up hint, so nothing under test depends on what it stores.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.actor import Actor
from app.config import settings
from app.database import Base, get_db, utcnow
from app.main import app
from app.models import (  # noqa: F401 (registers models on Base.metadata)
    audit,
    bid,
    commission,
    job,
    notification,
    party,
    payment,
    review,
    trust,
    warranty,
)
from app.models.job import JobPost
from app.models.party import ActorRole, Dealer, Technician
from app.redis import get_redis
from app.schemas.job import JobCreate
from app.services import bidding, escrow
from app.services import jobs as job_service


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "notification_backend", "log")
    object.__setattr__(settings, "payment_processor_backend", "sandbox")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite with a real connection per session, for concurrency tests."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'market.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def redis_mock() -> AsyncMock:
    redis = AsyncMock()
    redis.zrangebyscore.return_value = []
    redis.zremrangebyscore.return_value = 0
    return redis


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    redis_mock: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB and Redis dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield redis_mock

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def actor_headers(actor_id: uuid.UUID | str, role: str) -> dict[str, str]:
    """Gateway identity headers for a request."""
    return {"X-Actor-Id": str(actor_id), "X-Actor-Role": role}


def dealer_actor(dealer: Dealer) -> Actor:
    return Actor(dealer.dealer_id, ActorRole.DEALER)


def technician_actor(technician: Technician) -> Actor:
    return Actor(technician.technician_id, ActorRole.TECHNICIAN)


ADMIN = Actor(uuid.uuid4(), ActorRole.ADMIN)
SUPER_ADMIN = Actor(uuid.uuid4(), ActorRole.SUPER_ADMIN)


async def make_dealer(db: AsyncSession, **kwargs) -> Dealer:  # type: ignore[no-untyped-def]
    dealer = Dealer(
        dealer_id=kwargs.pop("dealer_id", uuid.uuid4()),
        display_name=kwargs.pop("display_name", "Test Motors"),
        city=kwargs.pop("city", "Pune"),
        region=kwargs.pop("region", "Maharashtra"),
        **kwargs,
    )
    db.add(dealer)
    await db.commit()
    return dealer


async def make_technician(db: AsyncSession, **kwargs) -> Technician:  # type: ignore[no-untyped-def]
    technician = Technician(
        technician_id=kwargs.pop("technician_id", uuid.uuid4()),
        display_name=kwargs.pop("display_name", "Test Technician"),
        city=kwargs.pop("city", "Pune"),
        region=kwargs.pop("region", "Maharashtra"),
        trust_score=kwargs.pop("trust_score", Decimal("50.00")),
        **kwargs,
    )
    db.add(technician)
    await db.commit()
    return technician


def make_job_data(**overrides) -> JobCreate:  # type: ignore[no-untyped-def]
    data = {
        "title": "Replace clutch plate",
        "description": "Hatchback, 60k km",
        "service_category": "mechanical",
        "service_sub_category": "clutch",
        "estimated_cost": 12_000,
    }
    data.update(overrides)
    return JobCreate(**data)


async def post_job(db: AsyncSession, dealer: Dealer, **overrides) -> JobPost:  # type: ignore[no-untyped-def]
    outcome = await job_service.post_job(db, dealer.dealer_id, make_job_data(**overrides))
    assert outcome.ok, outcome.detail
    return outcome.value


async def soft_lock(
    db: AsyncSession,
    dealer: Dealer,
    technician: Technician,
    price: int = 10_000,
    now: datetime | None = None,
) -> JobPost:
    """Post a job, bid on it and accept the bid. Returns the SOFT_LOCKED job."""
    now = now or utcnow()
    job = await post_job(db, dealer)
    bid = (await bidding.submit_bid(db, job.job_id, technician.technician_id, price)).value
    outcome = await bidding.accept_bid(db, job.job_id, bid.bid_id, dealer_actor(dealer), now=now)
    assert outcome.ok, outcome.detail
    return outcome.value


async def assign(
    db: AsyncSession,
    dealer: Dealer,
    technician: Technician,
    price: int = 10_000,
    now: datetime | None = None,
) -> JobPost:
    """Drive a job through soft lock, confirmation and capture. Returns the ASSIGNED job."""
    now = now or utcnow()
    job = await soft_lock(db, dealer, technician, price, now)
    actor = dealer_actor(dealer)
    assert (await bidding.confirm_soft_lock(db, job.job_id, actor, now=now + timedelta(seconds=5))).ok
    payment = (await escrow.create_payment_intent(
        db, job.job_id, actor, now=now + timedelta(seconds=10)
    )).value
    outcome = await escrow.handle_capture_success(
        db, payment.payment_intent_id, now=now + timedelta(seconds=20)
    )
    assert outcome.ok, outcome.detail
    return job


async def complete(
    db: AsyncSession,
    dealer: Dealer,
    technician: Technician,
    price: int = 10_000,
    now: datetime | None = None,
) -> JobPost:
    """Run the full happy path to COMPLETED."""
    now = now or utcnow()
    job = await assign(db, dealer, technician, price, now)
    tech = technician_actor(technician)
    assert (await job_service.start_job(db, job.job_id, tech)).ok
    assert (await job_service.request_completion(db, job.job_id, tech)).ok
    outcome = await job_service.approve_completion(
        db, job.job_id, dealer_actor(dealer), now=now + timedelta(hours=2)
    )
    assert outcome.ok, outcome.detail
    return job
