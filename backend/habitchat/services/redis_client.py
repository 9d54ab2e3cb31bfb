from functools import lru_cache

import redis
import structlog

from habitchat.core.config import get_settings

logger = structlog.get_logger(__name__)


@lru_cache
def get_redis_client() -> redis.Redis | None:
    settings = get_settings()
    if not settings.redis_url:
        return None
    try:
        return redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=1,
        )
    except (redis.RedisError, ValueError):
        logger.warning("redis_client_unavailable", redis_url=settings.redis_url)
        return None
