"""Rate limiting for the public endpoints.

Two layers:
- slowapi route limits (requests per minute per remote address), and
- a sliding-window limiter used inside the pipeline, keyed by action and client IP.
"""

import logging
import os
import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from formguard.core.redis_client import get_redis_url
from formguard.core.state_store import KeyValueStore

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("formguard.security")

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")


def _build_limiter() -> Limiter:
    redis_url = get_redis_url()
    if IS_TESTING or not redis_url:
        # In-memory storage for tests and single-process deployments
        return Limiter(key_func=get_remote_address, storage_uri="memory://", enabled=not IS_TESTING)

    # Try Redis, fall back to memory if connection fails
    try:
        import redis

        r = redis.from_url(redis_url, socket_connect_timeout=1)
        r.ping()
        return Limiter(key_func=get_remote_address, storage_uri=redis_url)
    except Exception as e:
        logger.warning(f"Redis unavailable for rate limiting, using in-memory: {e}")
        return Limiter(key_func=get_remote_address, storage_uri="memory://")


limiter = _build_limiter()


def build_identifier(action: str, client_ip: str) -> str:
    return f"{action}:{client_ip}"


class SlidingWindowRateLimiter:
    """Allow at most ``max_attempts`` per identifier in any ``window_seconds`` span."""

    def __init__(self, store: KeyValueStore, clock=time.time):
        self.store = store
        self._clock = clock

    def check(self, identifier: str, max_attempts: int, window_seconds: int) -> bool:
        """Record an attempt and return True, or return False if over the limit.

        Rejected attempts are not recorded.
        """
        allowed = self.store.window_hit(
            f"rate:{identifier}", self._clock(), window_seconds, max_attempts
        )
        if not allowed:
            security_logger.warning(
                "Rate limit exceeded",
                extra={
                    "event": "rate_limit_exceeded",
                    "identifier": identifier,
                    "max_attempts": max_attempts,
                    "window_seconds": window_seconds,
                },
            )
        return allowed
