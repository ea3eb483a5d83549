"""Tests for single-use CSRF tokens."""

from concurrent.futures import ThreadPoolExecutor

from formguard.core.csrf import DEFAULT_ACTION, CsrfGate
from formguard.core.state_store import InMemoryStore


def _gate(clock, lifetime=3600) -> CsrfGate:
    return CsrfGate(InMemoryStore(), lifetime_seconds=lifetime, clock=clock)


def test_token_validates_once(clock):
    gate = _gate(clock)
    token = gate.issue("sess-1")
    assert gate.validate("sess-1", DEFAULT_ACTION, token) is True
    assert gate.validate("sess-1", DEFAULT_ACTION, token) is False


def test_issue_returns_existing_token_until_consumed(clock):
    gate = _gate(clock)
    first = gate.issue("sess-1")
    assert gate.issue("sess-1") == first
    gate.validate("sess-1", DEFAULT_ACTION, first)
    assert gate.issue("sess-1") != first


def test_wrong_token_does_not_consume_real_one(clock):
    gate = _gate(clock)
    token = gate.issue("sess-1")
    assert gate.validate("sess-1", DEFAULT_ACTION, "forged") is False
    assert gate.validate("sess-1", DEFAULT_ACTION, token) is True


def test_token_bound_to_session_and_action(clock):
    gate = _gate(clock)
    token = gate.issue("sess-1", "upload")
    assert gate.validate("sess-2", "upload", token) is False
    assert gate.validate("sess-1", DEFAULT_ACTION, token) is False
    assert gate.validate("sess-1", "upload", token) is True


def test_expired_token_fails_closed(clock):
    gate = _gate(clock=clock, lifetime=60)
    token = gate.issue("sess-1")
    clock.advance(61)
    assert gate.validate("sess-1", DEFAULT_ACTION, token) is False
    # The expired entry is gone, a new token is minted
    assert gate.issue("sess-1") != token


def test_missing_session_or_token_fails(clock):
    gate = _gate(clock)
    token = gate.issue("sess-1")
    assert gate.validate(None, DEFAULT_ACTION, token) is False
    assert gate.validate("sess-1", DEFAULT_ACTION, None) is False
    assert gate.validate("sess-1", DEFAULT_ACTION, "") is False


def test_concurrent_validation_accepts_exactly_one(clock):
    gate = _gate(clock)
    token = gate.issue("sess-1")
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: gate.validate("sess-1", DEFAULT_ACTION, token), range(16)))
    assert results.count(True) == 1


def test_cleanup_drops_lapsed_entries():
    store = InMemoryStore()
    gate = CsrfGate(store, lifetime_seconds=0)
    gate.issue("sess-1")
    assert gate.cleanup() == 1
    assert store.get("csrf:sess-1:" + DEFAULT_ACTION) is None
