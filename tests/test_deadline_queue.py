"""Tests for the Redis deadline index (Redis mocked)."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from app.services.deadline_queue import (
    DEADLINE_KEY,
    cancel_deadline,
    next_deadline,
    pop_due,
    schedule_deadline,
    seconds_until_next,
)


@pytest.mark.asyncio
async def test_schedule_adds_member_scored_by_deadline() -> None:
    redis = AsyncMock()
    job_id = uuid.uuid4()
    deadline = datetime(2030, 1, 1, tzinfo=UTC)

    await schedule_deadline(redis, "soft_lock", job_id, deadline)
    redis.zadd.assert_awaited_once_with(DEADLINE_KEY, {f"soft_lock:{job_id}": deadline.timestamp()})


@pytest.mark.asyncio
async def test_schedule_swallows_redis_errors() -> None:
    redis = AsyncMock()
    redis.zadd.side_effect = ConnectionError("redis down")
    await schedule_deadline(redis, "payment", uuid.uuid4(), datetime.now(UTC))


@pytest.mark.asyncio
async def test_cancel_removes_member() -> None:
    redis = AsyncMock()
    job_id = uuid.uuid4()
    await cancel_deadline(redis, "payment", job_id)
    redis.zrem.assert_awaited_once_with(DEADLINE_KEY, f"payment:{job_id}")


@pytest.mark.asyncio
async def test_next_deadline() -> None:
    redis = AsyncMock()
    redis.zrangebyscore.return_value = []
    assert await next_deadline(redis) is None

    redis.zrangebyscore.return_value = [("soft_lock:x", 1700000000.0)]
    assert await next_deadline(redis) == 1700000000.0


@pytest.mark.asyncio
async def test_pop_due() -> None:
    redis = AsyncMock()
    redis.zremrangebyscore.return_value = 3
    assert await pop_due(redis, now=1700000000.0) == 3
    redis.zremrangebyscore.assert_awaited_once_with(DEADLINE_KEY, "-inf", 1700000000.0)


def test_seconds_until_next() -> None:
    assert seconds_until_next(None, 100.0, 30.0) == 30.0
    assert seconds_until_next(110.0, 100.0, 30.0) == 10.0
    assert seconds_until_next(90.0, 100.0, 30.0) == 0.0
    assert seconds_until_next(500.0, 100.0, 30.0) == 30.0
