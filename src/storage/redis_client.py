"""Redis connection backing the notification outbox worker locks."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from src.core.config import get_settings


REDIS_CONNECT_TIMEOUT_SECONDS = 5


@lru_cache(maxsize=1)
def get_client() -> Redis:
    return Redis.from_url(
        get_settings().redis_url,
        decode_responses=True,
        socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
    )


def check_redis(client: Optional[Redis] = None) -> Tuple[bool, Optional[str]]:
    """Ping Redis; the outbox worker cannot take workspace locks without it."""

    try:
        (client or get_client()).ping()
    except RedisError as exc:
        return False, str(exc)
    return True, None
