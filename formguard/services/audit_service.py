"""Access and security event logging.

Events are appended to ``audit_events`` in the caller's session (so an accepted
submission and its audit row commit together) and mirrored to stdlib logging.
Security rejections and detected threats are escalated to the separate
``formguard.security`` logger.

Security guidelines:
- NEVER log raw field values, client-supplied filenames or payload fragments
- Details carry identifiers, field types and threat labels only
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from formguard.core.structured_logging import build_log_context
from formguard.db.enums import AuditEventType, Severity
from formguard.db.models import AuditEvent

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("formguard.security")

_SEVERITY_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class AccessLogger:
    """Append-only structured event sink."""

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def log_event(
        self,
        db: Session,
        event_type: AuditEventType,
        severity: Severity = Severity.INFO,
        *,
        form_id: str | None = None,
        submission_id: str | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
        escalate: bool = False,
    ) -> AuditEvent:
        """Add an audit row to ``db`` (not committed) and log it."""
        event = AuditEvent(
            event_type=event_type.value,
            severity=severity.value,
            form_id=form_id,
            submission_id=submission_id,
            client_ip=client_ip,
            user_agent=user_agent[:500] if user_agent else None,
            details=details or None,
            created_at=self._clock(),
        )
        db.add(event)

        context = build_log_context(
            event=event_type.value,
            form_id=form_id,
            submission_id=submission_id,
            client_ip=client_ip,
        )
        logger.log(_SEVERITY_LEVELS[severity], event_type.value, extra=context)
        if escalate or event_type.is_security:
            security_logger.warning(
                "Suspicious activity: %s",
                event_type.value,
                extra={**context, "severity": severity.value, "details": details or {}},
            )
        return event

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    def log_form_submission(
        self,
        db: Session,
        *,
        form_id: str,
        submission_id: str,
        client_ip: str | None,
        user_agent: str | None,
        file_count: int,
        warnings: list[str] | None = None,
    ) -> AuditEvent:
        return self.log_event(
            db,
            AuditEventType.FORM_SUBMISSION_ACCEPTED,
            form_id=form_id,
            submission_id=submission_id,
            client_ip=client_ip,
            user_agent=user_agent,
            details={"file_count": file_count, "warnings": warnings or []},
        )

    def log_validation_failure(
        self,
        db: Session,
        *,
        form_id: str,
        field_id: str,
        field_type: str,
        reason: str,
        client_ip: str | None = None,
    ) -> AuditEvent:
        event_type = (
            AuditEventType.SECURITY_MALICIOUS_INPUT
            if reason == "malicious_input"
            else AuditEventType.FORM_VALIDATION_FAILED
        )
        severity = Severity.HIGH if event_type.is_security else Severity.INFO
        return self.log_event(
            db,
            event_type,
            severity,
            form_id=form_id,
            client_ip=client_ip,
            details={"field_id": field_id, "field_type": field_type, "reason": reason},
        )

    def log_security_rejection(
        self,
        db: Session,
        event_type: AuditEventType,
        *,
        form_id: str | None,
        client_ip: str | None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        return self.log_event(
            db,
            event_type,
            Severity.WARNING,
            form_id=form_id,
            client_ip=client_ip,
            user_agent=user_agent,
            escalate=True,
        )

    def log_threat_detected(
        self,
        db: Session,
        *,
        form_id: str | None,
        field_id: str | None,
        threats: list[str] | tuple[str, ...],
        client_ip: str | None,
        source: str,
    ) -> AuditEvent:
        return self.log_event(
            db,
            AuditEventType.SECURITY_THREAT_DETECTED,
            Severity.HIGH,
            form_id=form_id,
            client_ip=client_ip,
            details={"field_id": field_id, "threats": list(threats), "source": source},
            escalate=True,
        )

    def log_file_upload(
        self,
        db: Session,
        event_type: AuditEventType,
        *,
        form_id: str | None = None,
        submission_id: str | None = None,
        field_id: str | None = None,
        client_ip: str | None = None,
        size_bytes: int | None = None,
        mime_type: str | None = None,
        warnings: list[str] | tuple[str, ...] = (),
    ) -> AuditEvent:
        return self.log_event(
            db,
            event_type,
            Severity.WARNING if warnings else Severity.INFO,
            form_id=form_id,
            submission_id=submission_id,
            client_ip=client_ip,
            details={
                "field_id": field_id,
                "size_bytes": size_bytes,
                "mime_type": mime_type,
                "warnings": list(warnings),
            },
        )

    def log_suspicious_activity(
        self,
        db: Session,
        activity: str,
        *,
        client_ip: str | None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return self.log_event(
            db,
            AuditEventType.SECURITY_SUSPICIOUS_ACTIVITY,
            Severity.WARNING,
            client_ip=client_ip,
            user_agent=user_agent,
            details={"activity": activity, **(details or {})},
            escalate=True,
        )

    # ------------------------------------------------------------------
    # Reporting and retention
    # ------------------------------------------------------------------

    def get_access_statistics(self, db: Session, days: int = 7) -> dict[str, Any]:
        since = self._clock() - timedelta(days=days)
        rows = (
            db.query(AuditEvent.event_type, func.count(AuditEvent.id))
            .filter(AuditEvent.created_at >= since)
            .group_by(AuditEvent.event_type)
            .all()
        )
        by_type = {event_type: count for event_type, count in rows}

        security_ips = Counter(
            ip
            for (ip,) in db.query(AuditEvent.client_ip)
            .filter(
                AuditEvent.created_at >= since,
                AuditEvent.event_type.like("security_%"),
                AuditEvent.client_ip.isnot(None),
            )
            .all()
        )
        return {
            "period_days": days,
            "total_events": sum(by_type.values()),
            "by_event_type": by_type,
            "submissions_accepted": by_type.get(AuditEventType.FORM_SUBMISSION_ACCEPTED.value, 0),
            "security_events": sum(
                count for event_type, count in by_type.items() if event_type.startswith("security_")
            ),
            "top_security_ips": security_ips.most_common(10),
        }

    def get_recent_security_events(self, db: Session, limit: int = 50) -> list[AuditEvent]:
        return (
            db.query(AuditEvent)
            .filter(AuditEvent.event_type.like("security_%"))
            .order_by(AuditEvent.created_at.desc())
            .limit(limit)
            .all()
        )

    def cleanup_logs(self, db: Session, days: int = 90, dry_run: bool = False) -> int:
        cutoff = self._clock() - timedelta(days=days)
        query = db.query(AuditEvent).filter(AuditEvent.created_at < cutoff)
        if dry_run:
            return query.count()
        deleted = query.delete(synchronize_session=False)
        logger.info("Pruned %s audit events older than %s days", deleted, days)
        return deleted
