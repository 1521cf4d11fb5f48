from __future__ import annotations

import logging
import os
from functools import lru_cache

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except RedisError as exc:
        logger.warning("redis not ready: %s", exc)
        return False


def acquire_lock(key: str, token: str, ttl_seconds: int) -> bool:
    """Take a short-lived lock; returns False when another holder has it."""
    return bool(get_redis().set(key, token, nx=True, ex=ttl_seconds))


def release_lock(key: str, token: str) -> None:
    redis = get_redis()
    # Only the holder may release; an expired lock may already belong to another run.
    if redis.get(key) == token:
        redis.delete(key)
