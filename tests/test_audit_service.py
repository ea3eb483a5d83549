"""Tests for access/security event logging and reporting."""

import logging
from datetime import datetime, timedelta, timezone

from formguard.db.enums import AuditEventType, Severity
from formguard.db.models import AuditEvent
from formguard.services.audit_service import AccessLogger


class DateClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_log_event_is_added_to_session_without_commit(db):
    logger = AccessLogger()
    logger.log_event(db, AuditEventType.FILE_STAGED, client_ip="8.8.8.8")
    db.rollback()
    assert db.query(AuditEvent).count() == 0


def test_security_events_escalate_to_security_logger(db, caplog):
    logger = AccessLogger()
    with caplog.at_level(logging.WARNING, logger="formguard.security"):
        logger.log_security_rejection(
            db, AuditEventType.SECURITY_CSRF_FAILED, form_id="form-1", client_ip="8.8.8.8"
        )
    assert any(r.name == "formguard.security" for r in caplog.records)
    db.commit()
    event = db.query(AuditEvent).one()
    assert event.severity == Severity.WARNING.value


def test_threat_details_hold_labels_only(db):
    AccessLogger().log_threat_detected(
        db,
        form_id="form-1",
        field_id="photo",
        threats=("php_tag", "blocked_extension:php"),
        client_ip="8.8.8.8",
        source="submission",
    )
    db.commit()
    event = db.query(AuditEvent).one()
    assert event.severity == Severity.HIGH.value
    assert event.details == {
        "field_id": "photo",
        "threats": ["php_tag", "blocked_extension:php"],
        "source": "submission",
    }


def test_validation_failure_type_depends_on_reason(db):
    logger = AccessLogger()
    logger.log_validation_failure(db, form_id="f", field_id="bio", field_type="text", reason="malicious_input")
    logger.log_validation_failure(db, form_id="f", field_id="code", field_type="text", reason="pattern_mismatch")
    db.commit()
    types = sorted(e.event_type for e in db.query(AuditEvent).all())
    assert types == [AuditEventType.FORM_VALIDATION_FAILED.value, AuditEventType.SECURITY_MALICIOUS_INPUT.value]


def test_user_agent_is_truncated(db):
    AccessLogger().log_suspicious_activity(db, "suspicious_user_agent", client_ip="8.8.8.8", user_agent="x" * 800)
    db.commit()
    assert len(db.query(AuditEvent).one().user_agent) == 500


def test_access_statistics(db):
    clock = DateClock()
    logger = AccessLogger(clock=clock)
    logger.log_form_submission(
        db, form_id="f", submission_id="SUB_1", client_ip="8.8.8.8", user_agent=None, file_count=0
    )
    for _ in range(3):
        logger.log_security_rejection(db, AuditEventType.SECURITY_RATE_LIMITED, form_id="f", client_ip="1.1.1.1")
    logger.log_threat_detected(db, form_id="f", field_id="x", threats=["php_tag"], client_ip="8.8.8.8", source="upload")
    db.commit()

    stats = logger.get_access_statistics(db, days=7)
    assert stats["total_events"] == 5
    assert stats["submissions_accepted"] == 1
    assert stats["security_events"] == 4
    assert stats["top_security_ips"][0] == ("1.1.1.1", 3)

    recent = logger.get_recent_security_events(db, limit=2)
    assert len(recent) == 2
    assert all(e.event_type.startswith("security_") for e in recent)


def test_cleanup_logs_respects_retention(db):
    clock = DateClock()
    logger = AccessLogger(clock=clock)
    logger.log_event(db, AuditEventType.FILE_STAGED)
    db.commit()

    clock.now += timedelta(days=91)
    logger.log_event(db, AuditEventType.FILE_STAGED)
    db.commit()

    assert logger.cleanup_logs(db, days=90, dry_run=True) == 1
    assert db.query(AuditEvent).count() == 2
    assert logger.cleanup_logs(db, days=90) == 1
    db.commit()
    assert db.query(AuditEvent).count() == 1
