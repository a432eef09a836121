"""Deadline index using a Redis sorted set.

When a job gains a wall-clock deadline (soft-lock expiry or payment deadline)
we ZADD a member with score = deadline unix timestamp. The
in-process sweep loop peeks at the earliest score to decide how long to
sleep. Entries are wake-up hints only: the database stays authoritative and
the sweep re-checks every deadline itself, so a lost or stale entry never
changes an outcome.
"""

import logging
import time
import uuid
from datetime import datetime

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

DEADLINE_KEY = "marketplace:deadlines"


def _member(kind: str, entity_id: uuid.UUID) -> str:
    return f"{kind}:{entity_id}"


async def schedule_deadline(
    redis: aioredis.Redis,
    kind: str,
    entity_id: uuid.UUID,
    deadline: datetime,
) -> None:
    """Record a deadline for the sweep loop. Failures are logged, not raised."""
    try:
        await redis.zadd(DEADLINE_KEY, {_member(kind, entity_id): deadline.timestamp()})
        logger.info("Scheduled %s deadline for %s at %s", kind, entity_id, deadline.isoformat())
    except Exception:
        logger.exception("Could not index %s deadline for %s", kind, entity_id)


async def cancel_deadline(redis: aioredis.Redis, kind: str, entity_id: uuid.UUID) -> None:
    try:
        await redis.zrem(DEADLINE_KEY, _member(kind, entity_id))
    except Exception:
        logger.exception("Could not drop %s deadline for %s", kind, entity_id)


async def next_deadline(redis: aioredis.Redis) -> float | None:
    """Unix timestamp of the earliest indexed deadline, or None."""
    entries = await redis.zrangebyscore(
        DEADLINE_KEY, "-inf", "+inf", start=0, num=1, withscores=True
    )
    if not entries:
        return None
    return float(entries[0][1])


async def pop_due(redis: aioredis.Redis, now: float | None = None) -> int:
    """Drop every entry at or before ``now``. Returns how many were removed."""
    now = time.time() if now is None else now
    return await redis.zremrangebyscore(DEADLINE_KEY, "-inf", now)


def seconds_until_next(deadline_ts: float | None, now: float, ceiling: float) -> float:
    """How long the sweep loop should sleep, bounded by ``ceiling``."""
    if deadline_ts is None:
        return ceiling
    return max(0.0, min(deadline_ts - now, ceiling))
