"""Shared redis connection for CSRF tokens and rate-limit windows."""

from __future__ import annotations

from formguard.core.config import settings

REDIS_DISABLED_URL = "memory://"
HEALTH_CHECK_INTERVAL_SECONDS = 30

_client = None


def get_redis_url() -> str | None:
    """Configured redis URL, or None when state should stay in process."""
    url = (settings.REDIS_URL or "").strip()
    if not url or url.lower() == REDIS_DISABLED_URL:
        return None
    return url


def get_sync_redis_client():
    url = get_redis_url()
    if url is None:
        return None

    global _client
    if _client is None:
        import redis

        _client = redis.Redis.from_url(
            url,
            max_connections=max(settings.REDIS_MAX_CONNECTIONS, 1),
            socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
            socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
            health_check_interval=HEALTH_CHECK_INTERVAL_SECONDS,
            retry_on_timeout=True,
            decode_responses=True,
        )
    return _client
