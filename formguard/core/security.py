"""Security screen helpers: client IP, malicious-input signatures, output sanitization.

These are stateless. The rate limiter lives in ``formguard.core.rate_limit``.
"""

from __future__ import annotations

import html
import ipaddress
import re

import nh3
from fastapi import Request

from formguard.core.config import settings

FORWARDED_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "client-ip")
FALLBACK_IP = "0.0.0.0"

XSS_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE | re.DOTALL)
    for p in (
        r"<\s*script\b",
        r"<\s*/\s*script\s*>",
        r"<\s*iframe\b",
        r"<\s*object\b",
        r"<\s*embed\b",
        r"<\s*applet\b",
        r"<\s*form\b",
        r"<\s*meta\b[^>]*http-equiv",
        r"javascript\s*:",
        r"vbscript\s*:",
        r"\bon[a-z]+\s*=",
    )
)

SQL_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bunion\b(?:\s+all)?\s+select\b",
        r";\s*(?:select|insert|update|delete|drop|alter|truncate|create|exec)\b",
        r"\b(?:drop|alter|truncate|create)\s+(?:table|database|schema)\b",
        r"\bexec(?:ute)?\s*\(",
        r"\b(?:or|and)\s+(\d+|'[^']*'|\"[^\"]*\")\s*=\s*(\d+|'[^']*'|\"[^\"]*\")",
        r"'\s*(?:or|and)\s+'",
        r"--(?:\s|$)",
        r"/\*|\*/",
    )
)

SUSPICIOUS_USER_AGENT_PATTERNS = tuple(
    re.compile(rf"\b{p}", re.IGNORECASE)
    for p in ("bot", "crawler", "spider", "scraper", "curl", "wget", "python", "java", "perl")
)


def is_public_ip(value: str) -> bool:
    """True for globally routable addresses (not private, loopback, reserved, ...)."""
    try:
        return ipaddress.ip_address(value.strip()).is_global
    except ValueError:
        return False


def get_client_ip(request: Request | None) -> str:
    """
    Extract the client IP used for rate limiting and audit.

    Forwarded headers are only consulted when TRUST_PROXY_HEADERS is enabled, and
    only a value that parses as a public address is accepted. Forged headers that
    point at private ranges fall through to the connection address.
    """
    if request is None:
        return FALLBACK_IP

    if settings.TRUST_PROXY_HEADERS:
        for header in FORWARDED_IP_HEADERS:
            raw = request.headers.get(header)
            if not raw:
                continue
            for candidate in raw.split(","):
                candidate = candidate.strip()
                if is_public_ip(candidate):
                    return candidate

    if request.client and request.client.host:
        return request.client.host
    return FALLBACK_IP


def get_user_agent(request: Request | None) -> str | None:
    if request is None:
        return None
    ua = request.headers.get("user-agent", "")
    return ua[:500] if ua else None


def contains_xss(value: str) -> bool:
    return any(p.search(value) for p in XSS_PATTERNS)


def contains_sql_injection(value: str) -> bool:
    return any(p.search(value) for p in SQL_PATTERNS)


def contains_malicious_pattern(value: str) -> bool:
    """Check text against the XSS and SQL signature sets."""
    return contains_xss(value) or contains_sql_injection(value)


def sanitize_output(value: str | None, allow_html: bool = False) -> str:
    """Make text safe for HTML output.

    With ``allow_html`` a small set of formatting tags survives; everything else
    (scripts, handlers, styles) is stripped by nh3.
    """
    if not value:
        return ""
    if not allow_html:
        return html.escape(value, quote=True)
    return nh3.clean(
        value,
        tags={"p", "br", "strong", "b", "em", "i", "u", "ul", "ol", "li", "a"},
        attributes={"a": {"href", "title"}},
        url_schemes={"http", "https", "mailto"},
    )


def is_suspicious_user_agent(user_agent: str | None) -> bool:
    if not user_agent:
        return True
    return any(p.search(user_agent) for p in SUSPICIOUS_USER_AGENT_PATTERNS)
