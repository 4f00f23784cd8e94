import datetime as dt
import logging
from collections.abc import Iterable
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def cache_key(owner_id: int) -> str:
    return f"sub:{owner_id}"


def _encode(summary: dict[str, Any]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for key, value in summary.items():
        if isinstance(value, bool):
            mapping[key] = "1" if value else "0"
        elif isinstance(value, dt.datetime):
            mapping[key] = value.isoformat()
        elif value is None:
            mapping[key] = ""
        else:
            mapping[key] = str(value)
    return mapping


def _decode(cached: dict[str, str]) -> dict[str, Any]:
    period_end = cached.get("current_period_end") or None
    return {
        "id": int(cached["id"]),
        "owner_id": int(cached["owner_id"]),
        "plan_id": int(cached["plan_id"]),
        "plan_name": cached.get("plan_name", ""),
        "status": cached.get("status", ""),
        "active": cached.get("active") == "1",
        "current_period_end": dt.datetime.fromisoformat(period_end) if period_end else None,
        "cancel_at_period_end": cached.get("cancel_at_period_end") == "1",
        "time_priority": int(cached.get("time_priority") or 0),
    }


async def get_cached(redis: Redis, owner_id: int) -> dict[str, Any] | None:
    try:
        cached = await redis.hgetall(cache_key(owner_id))
    except RedisError as exc:
        logger.warning("Subscription cache read failed for %s: %s", owner_id, exc)
        return None
    if not cached or not cached.get("id"):
        return None
    return _decode(cached)


async def store(redis: Redis, owner_id: int, summary: dict[str, Any], ttl_seconds: int) -> None:
    key = cache_key(owner_id)
    try:
        await redis.hset(key, mapping=_encode(summary))
        await redis.expire(key, ttl_seconds)
    except RedisError as exc:
        logger.warning("Subscription cache write failed for %s: %s", owner_id, exc)


async def invalidate(redis: Redis, owner_ids: Iterable[int]) -> None:
    keys = [cache_key(owner_id) for owner_id in set(owner_ids)]
    if not keys:
        return
    try:
        await redis.delete(*keys)
    except RedisError as exc:
        logger.warning("Subscription cache invalidation failed: %s", exc)
