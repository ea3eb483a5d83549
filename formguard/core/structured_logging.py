"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    event: str | None = None,
    form_id: str | None = None,
    submission_id: str | None = None,
    field_id: str | None = None,
    client_ip: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict.

    Only identifiers go in here. Field values, uploaded filenames and any other
    attacker-controlled text must never be passed.
    """
    context: dict[str, Any] = {}
    if event:
        context["event"] = event
    if form_id:
        context["form_id"] = form_id
    if submission_id:
        context["submission_id"] = submission_id
    if field_id:
        context["field_id"] = field_id
    if client_ip:
        context["client_ip"] = client_ip
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
