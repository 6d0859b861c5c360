"""
Redis access for state that must be shared across API instances.

Only the rate limiter keeps anything here. Callers get ``None`` while Redis
is unreachable and are expected to degrade (the limiter fails open). After a
failed connect the next attempt waits ``RECONNECT_INTERVAL_S`` so a Redis
outage does not add a connect timeout to every request.
"""
import logging
import time
from typing import Optional

import redis
from redis.exceptions import RedisError

from core.config import settings

logger = logging.getLogger(__name__)

RECONNECT_INTERVAL_S = 30.0

_client: Optional[redis.Redis] = None
_last_failure: Optional[float] = None


def get_redis_client() -> Optional[redis.Redis]:
    global _client, _last_failure

    if _client is not None:
        return _client
    if _last_failure is not None and time.monotonic() - _last_failure < RECONNECT_INTERVAL_S:
        return None

    candidate = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        health_check_interval=30,
    )
    try:
        candidate.ping()
    except RedisError as e:
        _last_failure = time.monotonic()
        logger.warning(
            "Redis unreachable; shared rate limits are off until it returns",
            extra={"extra_fields": {"error": str(e), "retry_in_s": RECONNECT_INTERVAL_S}},
        )
        return None

    _client = candidate
    _last_failure = None
    logger.info("Redis connected")
    return _client


def reset_redis_client() -> None:
    """Forget the cached client (tests, or after a fork)."""
    global _client, _last_failure
    _client = None
    _last_failure = None


def cache_key(prefix: str, *parts) -> str:
    """``prefix:part1:part2``; ``None`` parts are left out."""
    return ":".join([prefix, *(str(p) for p in parts if p is not None)])
