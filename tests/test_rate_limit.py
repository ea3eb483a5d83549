"""Tests for the sliding-window limiter and the in-memory state store."""

from formguard.core.rate_limit import SlidingWindowRateLimiter, build_identifier
from formguard.core.state_store import InMemoryStore


def test_three_per_minute_window(clock):
    limiter = SlidingWindowRateLimiter(InMemoryStore(), clock=clock)
    key = build_identifier("form_submission", "8.8.8.8")

    assert [limiter.check(key, 3, 60) for _ in range(3)] == [True, True, True]
    assert limiter.check(key, 3, 60) is False

    clock.advance(59)
    assert limiter.check(key, 3, 60) is False

    clock.advance(2)
    assert limiter.check(key, 3, 60) is True


def test_window_slides_per_attempt(clock):
    limiter = SlidingWindowRateLimiter(InMemoryStore(), clock=clock)
    key = "form_submission:8.8.8.8"

    assert limiter.check(key, 2, 60)
    clock.advance(30)
    assert limiter.check(key, 2, 60)
    clock.advance(31)
    # First attempt fell out of the window, second is still inside
    assert limiter.check(key, 2, 60)
    assert not limiter.check(key, 2, 60)


def test_rejected_attempts_are_not_recorded(clock):
    limiter = SlidingWindowRateLimiter(InMemoryStore(), clock=clock)
    key = "file_upload:8.8.8.8"
    limiter.check(key, 1, 60)
    for _ in range(5):
        clock.advance(10)
        assert not limiter.check(key, 1, 60)
    clock.advance(11)
    assert limiter.check(key, 1, 60)


def test_identifiers_are_independent(clock):
    limiter = SlidingWindowRateLimiter(InMemoryStore(), clock=clock)
    assert limiter.check(build_identifier("form_submission", "8.8.8.8"), 1, 60)
    assert limiter.check(build_identifier("form_submission", "1.1.1.1"), 1, 60)
    assert limiter.check(build_identifier("file_upload", "8.8.8.8"), 1, 60)


def test_store_values_expire_and_cleanup():
    store = InMemoryStore()
    store.set("a", "1", ttl_seconds=0)
    store.set("b", "2", ttl_seconds=3600)
    assert store.get("a") is None
    assert store.get("b") == "2"
    store.set("c", "3", ttl_seconds=0)
    assert store.cleanup() == 1
    assert store.pop_if_equal("b", "x") is False
    assert store.pop_if_equal("b", "2") is True
    assert store.get("b") is None


def test_redis_url_disabled_values(monkeypatch):
    from formguard.core.config import settings
    from formguard.core.redis_client import get_redis_url, get_sync_redis_client

    for value in ("", "memory://", "  MEMORY://  "):
        monkeypatch.setattr(settings, "REDIS_URL", value)
        assert get_redis_url() is None
        assert get_sync_redis_client() is None

    monkeypatch.setattr(settings, "REDIS_URL", " redis://cache:6379/0 ")
    assert get_redis_url() == "redis://cache:6379/0"


def test_cleanup_drops_idle_windows(clock):
    store = InMemoryStore()
    limiter = SlidingWindowRateLimiter(store, clock=clock)
    for i in range(1000):
        limiter.check(build_identifier("form_submission", f"10.0.{i // 256}.{i % 256}"), 3, 60)
    limiter.check("form_submission:8.8.8.8", 3, 600)

    clock.advance(120)
    assert store.cleanup(now=clock()) == 1000
    assert list(store._windows) == ["rate:form_submission:8.8.8.8"]


def test_windows_are_swept_during_writes(clock):
    store = InMemoryStore(sweep_every=10)
    limiter = SlidingWindowRateLimiter(store, clock=clock)
    for i in range(9):
        limiter.check(f"file_upload:10.0.0.{i}", 1, 60)

    clock.advance(61)
    limiter.check("file_upload:8.8.8.8", 1, 60)
    assert list(store._windows) == ["rate:file_upload:8.8.8.8"]
