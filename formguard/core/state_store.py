"""Key-value stores for CSRF tokens and rate-limit windows.

Both stores expose the two atomic primitives the pipeline relies on:

- ``pop_if_equal``: compare-and-delete, so a CSRF token is consumed at most once
  even when the same token arrives on two concurrent requests.
- ``window_hit``: prune, count and record in one step, so concurrent attempts
  cannot both slip under a sliding-window limit.
"""

from __future__ import annotations

import logging
import math
import secrets
import threading
import time
from typing import Protocol

from formguard.core.redis_client import get_sync_redis_client

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def pop_if_equal(self, key: str, expected: str) -> bool: ...

    def window_hit(self, key: str, now: float, window_seconds: int, max_attempts: int) -> bool: ...


class InMemoryStore:
    """Process-local store guarded by a single lock.

    Lapsed values and idle windows are swept every ``sweep_every`` writes, and
    by ``cleanup()``, so distinct sessions and client IPs do not accumulate.
    """

    def __init__(self, sweep_every: int = 1000) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, tuple[str, float]] = {}
        # key -> (timestamps, window length in seconds)
        self._windows: dict[str, tuple[list[float], int]] = {}
        self._sweep_every = sweep_every
        self._writes = 0

    def _live_value(self, key: str, now: float) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._values[key]
            return None
        return value

    def _sweep(self, now: float, window_now: float) -> int:
        removed = 0
        for key in [k for k, (_, exp) in self._values.items() if exp <= now]:
            del self._values[key]
            removed += 1
        for key, (stamps, span) in list(self._windows.items()):
            live = [ts for ts in stamps if ts > window_now - span]
            if live:
                self._windows[key] = (live, span)
            else:
                del self._windows[key]
                removed += 1
        return removed

    def _count_write(self, window_now: float | None = None) -> None:
        self._writes += 1
        if self._writes >= self._sweep_every:
            self._writes = 0
            now = time.time()
            self._sweep(now, now if window_now is None else window_now)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live_value(key, time.time())

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, time.time() + ttl_seconds)
            self._count_write()

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def pop_if_equal(self, key: str, expected: str) -> bool:
        with self._lock:
            current = self._live_value(key, time.time())
            if current is None or not secrets.compare_digest(current, expected):
                return False
            del self._values[key]
            return True

    def window_hit(self, key: str, now: float, window_seconds: int, max_attempts: int) -> bool:
        with self._lock:
            cutoff = now - window_seconds
            stamps, _ = self._windows.get(key, ([], window_seconds))
            attempts = [ts for ts in stamps if ts > cutoff]
            if len(attempts) >= max_attempts:
                self._windows[key] = (attempts, window_seconds)
                return False
            attempts.append(now)
            self._windows[key] = (attempts, window_seconds)
            self._count_write(window_now=now)
            return True

    def cleanup(self, now: float | None = None) -> int:
        """Drop lapsed values and windows with no live attempts. Returns keys removed.

        ``now`` is the rate-limiter clock; value expiry always uses wall time.
        """
        wall = time.time()
        with self._lock:
            return self._sweep(wall, wall if now is None else now)


_POP_IF_EQUAL_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_WINDOW_HIT_LUA = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
if redis.call('ZCARD', KEYS[1]) >= tonumber(ARGV[3]) then
    return 0
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[5]))
return 1
"""


class RedisStore:
    """Shared store for multi-worker deployments."""

    def __init__(self, client, prefix: str = "formguard:") -> None:
        self._client = client
        self._prefix = prefix
        self._pop_if_equal = client.register_script(_POP_IF_EQUAL_LUA)
        self._window_hit = client.register_script(_WINDOW_HIT_LUA)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> str | None:
        return self._client.get(self._key(key))

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def pop_if_equal(self, key: str, expected: str) -> bool:
        return bool(self._pop_if_equal(keys=[self._key(key)], args=[expected]))

    def window_hit(self, key: str, now: float, window_seconds: int, max_attempts: int) -> bool:
        member = f"{now:.6f}:{secrets.token_hex(4)}"
        result = self._window_hit(
            keys=[self._key(f"window:{key}")],
            args=[now, window_seconds, max_attempts, member, math.ceil(window_seconds)],
        )
        return bool(result)


_default_store: KeyValueStore | None = None


def get_state_store() -> KeyValueStore:
    """Return the process-wide store, redis-backed when REDIS_URL is configured."""
    global _default_store
    if _default_store is None:
        client = get_sync_redis_client()
        if client is not None:
            _default_store = RedisStore(client)
        else:
            logger.info("REDIS_URL not set, keeping CSRF and rate-limit state in memory")
            _default_store = InMemoryStore()
    return _default_store
