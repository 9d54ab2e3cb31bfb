"""Fixed-window limits for HTTP calls, socket traffic and chat sends.

Each limit is a named policy built from settings. Counters live in Redis so
workers share them; without Redis every process counts on its own.
"""

import math
import threading
import time
from dataclasses import dataclass

import redis
import structlog

from habitchat.core.config import Settings, get_settings
from habitchat.core.exceptions import RateLimitedError
from habitchat.services.redis_client import get_redis_client

logger = structlog.get_logger(__name__)

KEY_PREFIX = "habitchat:ratelimit"
MAX_MEMORY_COUNTERS = 10_000

API_AUTH = "api:auth"
API_GLOBAL = "api:global"
SOCKET_CONNECT = "ws:connect"
SOCKET_EVENT = "ws:event"
CHAT_SEND = "chat:send"


@dataclass(frozen=True)
class RateLimitPolicy:
    scope: str
    limit: int
    window_seconds: int


def build_policies(settings: Settings) -> dict[str, RateLimitPolicy]:
    configured = {
        API_AUTH: (settings.rate_limit_auth_limit, settings.rate_limit_auth_window_seconds),
        API_GLOBAL: (settings.rate_limit_global_limit, settings.rate_limit_global_window_seconds),
        SOCKET_CONNECT: (settings.websocket_connect_limit, settings.websocket_connect_window_seconds),
        SOCKET_EVENT: (settings.websocket_event_limit, settings.websocket_event_window_seconds),
        CHAT_SEND: (settings.chat_send_limit, settings.chat_send_window_seconds),
    }
    return {
        scope: RateLimitPolicy(scope, max(1, int(limit)), max(1, int(window)))
        for scope, (limit, window) in configured.items()
    }


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_seconds: int

    @classmethod
    def for_count(cls, policy: RateLimitPolicy, count: int, reset_after: int) -> "RateLimitDecision":
        allowed = count <= policy.limit
        return cls(
            allowed=allowed,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            retry_after_seconds=0 if allowed else reset_after,
            reset_after_seconds=reset_after,
        )

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset-Seconds": str(self.reset_after_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimitService:
    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        *,
        use_redis: bool = True,
        policies: dict[str, RateLimitPolicy] | None = None,
    ) -> None:
        if redis_client is None and use_redis:
            redis_client = get_redis_client()
        self._redis = redis_client
        self._policies = policies if policies is not None else build_policies(get_settings())
        # key -> (window index, count, window end epoch)
        self._counters: dict[str, tuple[int, int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, scope: str, subject: str | int) -> RateLimitDecision:
        """Count one call by `subject` against the `scope` policy."""
        policy = self._policies[scope]
        now = time.time()
        window = int(now // policy.window_seconds)
        window_end = (window + 1) * policy.window_seconds
        key = f"{scope}:{subject}"

        count = self._incr_redis(key, window, policy.window_seconds)
        if count is None:
            count = self._incr_memory(key, window, window_end, now)

        decision = RateLimitDecision.for_count(policy, count, max(1, math.ceil(window_end - now)))
        if not decision.allowed:
            logger.warning("rate_limited", scope=scope, subject=str(subject), count=count)
        return decision

    def enforce(self, scope: str, subject: str | int) -> RateLimitDecision:
        decision = self.hit(scope, subject)
        if not decision.allowed:
            raise RateLimitedError(
                "Too many requests. Slow down.",
                details={"scope": scope, "retry_after_seconds": decision.retry_after_seconds},
            )
        return decision

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def _incr_redis(self, key: str, window: int, window_seconds: int) -> int | None:
        if self._redis is None:
            return None
        redis_key = f"{KEY_PREFIX}:{key}:{window}"
        try:
            pipe = self._redis.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, window_seconds + 1)
            count, _ = pipe.execute()
        except redis.RedisError as exc:
            logger.debug("rate_limit_redis_error", error=str(exc))
            return None
        return int(count)

    def _incr_memory(self, key: str, window: int, window_end: float, now: float) -> int:
        with self._lock:
            counted_window, count, _ = self._counters.get(key, (window, 0, window_end))
            count = count + 1 if counted_window == window else 1
            self._counters[key] = (window, count, window_end)
            if len(self._counters) > MAX_MEMORY_COUNTERS:
                self._counters = {
                    name: entry for name, entry in self._counters.items() if entry[2] > now
                }
        return count


rate_limit_service = RateLimitService()
