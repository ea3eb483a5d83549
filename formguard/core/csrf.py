"""Single-use, per-action CSRF tokens bound to an anonymous session cookie."""

from __future__ import annotations

import logging
import secrets
import time
from typing import Optional

from fastapi import Request, Response

from formguard.core.config import settings
from formguard.core.state_store import KeyValueStore

logger = logging.getLogger(__name__)

CSRF_FIELD_NAME = "csrf_token"
DEFAULT_ACTION = "form_submission"
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def generate_token() -> str:
    """Generate a new random token."""
    return secrets.token_urlsafe(32)


def get_session_id(request: Request) -> Optional[str]:
    """Fetch the anonymous session id from its cookie."""
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


def set_session_cookie(response: Response, session_id: Optional[str] = None) -> str:
    """Set the session cookie and return the id used."""
    value = session_id or generate_token()
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=value,
        max_age=settings.SESSION_COOKIE_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        path="/",
    )
    return value


class CsrfGate:
    """Issue and verify CSRF tokens.

    Tokens are stored as ``"<issued_at>:<token>"`` under ``csrf:<session>:<action>``.
    Verification is compare-and-delete, so a token is good for exactly one
    successful validation.
    """

    def __init__(
        self,
        store: KeyValueStore,
        lifetime_seconds: int = DEFAULT_TOKEN_LIFETIME_SECONDS,
        clock=time.time,
    ):
        self.store = store
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    @staticmethod
    def _key(session_id: str, action: str) -> str:
        return f"csrf:{session_id}:{action}"

    @staticmethod
    def _parse(stored: str) -> tuple[float, str] | None:
        issued_at, sep, token = stored.partition(":")
        if not sep:
            return None
        try:
            return float(issued_at), token
        except ValueError:
            return None

    def issue(self, session_id: str, action: str = DEFAULT_ACTION) -> str:
        """Return the still-valid token for this action or mint a new one."""
        key = self._key(session_id, action)
        now = self._clock()
        stored = self.store.get(key)
        if stored:
            parsed = self._parse(stored)
            if parsed and now - parsed[0] <= self.lifetime_seconds:
                return parsed[1]

        token = generate_token()
        # Keep the entry a little longer than its lifetime so expiry is observed, not silent.
        self.store.set(key, f"{now:.6f}:{token}", self.lifetime_seconds * 2)
        return token

    def validate(self, session_id: str | None, action: str, supplied: str | None) -> bool:
        """Consume the token if it matches. Fails closed."""
        if not session_id or not supplied:
            return False
        key = self._key(session_id, action)
        stored = self.store.get(key)
        if not stored:
            return False
        parsed = self._parse(stored)
        if parsed is None:
            self.store.delete(key)
            return False

        issued_at, token = parsed
        if self._clock() - issued_at > self.lifetime_seconds:
            self.store.delete(key)
            logger.info("Expired CSRF token presented", extra={"action": action})
            return False
        if not secrets.compare_digest(token, supplied):
            return False
        return self.store.pop_if_equal(key, stored)

    def cleanup(self) -> int:
        """Drop lapsed token entries. Redis expires them on its own."""
        purge = getattr(self.store, "cleanup", None)
        if purge is None:
            return 0
        return purge()
