"""Tracks which users currently hold at least one connected socket.

The in-memory registry is enough for a single worker. The Redis registry
lets several workers share presence; room membership itself stays
process-local.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable

import redis
import structlog

from habitchat.core.config import get_settings
from habitchat.services.redis_client import get_redis_client

logger = structlog.get_logger(__name__)


class PresenceRegistry(ABC):
    # True when entries lapse unless refreshed with touch()
    expires: bool = False

    @abstractmethod
    def connect(self, user_id: int, sid: str) -> None: ...

    def touch(self, user_id: int, sid: str) -> None:
        """Mark a still-connected socket as alive."""

    @abstractmethod
    def disconnect(self, user_id: int, sid: str) -> bool:
        """Drop one socket; return True while the user still has others."""

    @abstractmethod
    def is_online(self, user_id: int) -> bool: ...

    def online_user_ids(self, user_ids: Iterable[int]) -> set[int]:
        return {user_id for user_id in user_ids if self.is_online(user_id)}


class InMemoryPresenceRegistry(PresenceRegistry):
    def __init__(self) -> None:
        self._sids: dict[int, set[str]] = {}
        self._lock = threading.Lock()

    def connect(self, user_id: int, sid: str) -> None:
        with self._lock:
            self._sids.setdefault(user_id, set()).add(sid)

    def disconnect(self, user_id: int, sid: str) -> bool:
        with self._lock:
            sids = self._sids.get(user_id)
            if not sids:
                return False
            sids.discard(sid)
            if not sids:
                del self._sids[user_id]
                return False
            return True

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._sids.get(user_id))

    def clear(self) -> None:
        with self._lock:
            self._sids.clear()


class RedisPresenceRegistry(PresenceRegistry):
    """One sorted set per user: member = sid, score = expiry epoch."""

    expires = True

    def __init__(self, client: redis.Redis, ttl_seconds: int) -> None:
        self._redis = client
        self._ttl = max(1, ttl_seconds)

    @staticmethod
    def _key(user_id: int) -> str:
        return f"habitchat:presence:{user_id}"

    def connect(self, user_id: int, sid: str) -> None:
        self.touch(user_id, sid)

    def touch(self, user_id: int, sid: str) -> None:
        key = self._key(user_id)
        try:
            pipe = self._redis.pipeline()
            pipe.zadd(key, {sid: time.time() + self._ttl})
            pipe.expire(key, self._ttl)
            pipe.execute()
        except redis.RedisError as exc:
            logger.warning("presence_touch_failed", user_id=user_id, error=str(exc))

    def disconnect(self, user_id: int, sid: str) -> bool:
        key = self._key(user_id)
        try:
            pipe = self._redis.pipeline()
            pipe.zrem(key, sid)
            pipe.zremrangebyscore(key, "-inf", time.time())
            pipe.zcard(key)
            _, _, remaining = pipe.execute()
        except redis.RedisError as exc:
            logger.warning("presence_disconnect_failed", user_id=user_id, error=str(exc))
            return False
        return int(remaining) > 0

    def is_online(self, user_id: int) -> bool:
        try:
            return bool(self._redis.zcount(self._key(user_id), time.time(), "+inf"))
        except redis.RedisError as exc:
            logger.warning("presence_lookup_failed", user_id=user_id, error=str(exc))
            return False


def build_presence_registry() -> PresenceRegistry:
    settings = get_settings()
    if settings.presence_backend == "redis":
        client = get_redis_client()
        if client is not None:
            return RedisPresenceRegistry(client, settings.presence_ttl_seconds)
        logger.warning("presence_redis_unavailable_falling_back_to_memory")
    return InMemoryPresenceRegistry()


presence_registry = build_presence_registry()
