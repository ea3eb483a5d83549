"""Enum definitions for application constants."""

from enum import Enum


class FieldType(str, Enum):
    """
    Field types a form schema may declare.

    File-backed types (FILE, PHOTO, SIGNATURE) are resolved from uploads, every
    other type is validated by the field validator.
    """
    TEXT = "text"
    TEXTAREA = "textarea"
    EMAIL = "email"
    NUMBER = "number"
    AADHAR = "aadhar"
    PHONE = "phone"
    URL = "url"
    DATE = "date"
    TIME = "time"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    FILE = "file"
    PHOTO = "photo"
    SIGNATURE = "signature"

    @property
    def is_file(self) -> bool:
        return self in FILE_FIELD_TYPES


FILE_FIELD_TYPES = frozenset({FieldType.FILE, FieldType.PHOTO, FieldType.SIGNATURE})


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    ARCHIVED = "archived"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    """
    Access and security events.

    Groups:
    - FORM_*: Submission lifecycle
    - FILE_*: Upload staging and promotion
    - SECURITY_*: Rejections escalated to the security log
    """

    # Submissions
    FORM_SUBMISSION_ACCEPTED = "form_submission_accepted"
    FORM_SUBMISSION_REJECTED = "form_submission_rejected"
    FORM_VALIDATION_FAILED = "form_validation_failed"

    # Files
    FILE_STAGED = "file_staged"
    FILE_STORED = "file_stored"
    FILE_RESOLUTION_FAILED = "file_resolution_failed"
    FILE_PREVIEWED = "file_previewed"

    # Security
    SECURITY_CSRF_FAILED = "security_csrf_failed"
    SECURITY_RATE_LIMITED = "security_rate_limited"
    SECURITY_THREAT_DETECTED = "security_threat_detected"
    SECURITY_MALICIOUS_INPUT = "security_malicious_input"
    SECURITY_SUSPICIOUS_ACTIVITY = "security_suspicious_activity"

    @property
    def is_security(self) -> bool:
        return self.value.startswith("security_")
