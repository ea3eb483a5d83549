"""SQLAlchemy ORM models for forms, submissions, uploads and audit events."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from formguard.db.base import Base
from formguard.db.enums import SubmissionStatus


def _uuid_str() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Forms
# =============================================================================

class Form(Base):
    """
    An administrator-defined form.

    ``schema_json`` holds the ordered field list; ``settings_json`` holds
    presentation and limit settings (success message, default file size).
    """
    __tablename__ = "forms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    schema_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    settings_json: Mapped[dict | None] = mapped_column(JSON)
    share_link: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())

    submissions: Mapped[list["Submission"]] = relationship(back_populates="form")


# =============================================================================
# Submissions
# =============================================================================

class Submission(Base):
    """An accepted submission. Written together with its files in one transaction."""
    __tablename__ = "submissions"
    __table_args__ = (
        Index("idx_submissions_form_submitted", "form_id", "submitted_at"),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    form_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("forms.id", ondelete="CASCADE"), nullable=False
    )
    submission_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), index=True)
    user_agent: Mapped[str | None] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(
        String(20), default=SubmissionStatus.PENDING.value, nullable=False
    )

    form: Mapped[Form] = relationship(back_populates="submissions")
    files: Mapped[list["SubmissionFile"]] = relationship(
        back_populates="submission", cascade="all, delete-orphan"
    )


class SubmissionFile(Base):
    """A file promoted into permanent storage for one submission field."""
    __tablename__ = "submission_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    submission_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    field_id: Mapped[str] = mapped_column(String(100), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_filename: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    relative_path: Mapped[str] = mapped_column(String(500), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    checksum_sha256: Mapped[str | None] = mapped_column(String(64))
    uploaded_at: Mapped[datetime] = mapped_column(nullable=False)

    submission: Mapped[Submission] = relationship(back_populates="files")


class StagedFile(Base):
    """
    A file uploaded ahead of the form submission.

    Lives in the quarantined temp directory until a submission consumes it or
    it expires. ``temp_id`` is random and is the only handle given to clients.
    """
    __tablename__ = "staged_files"

    temp_id: Mapped[str] = mapped_column(String(40), primary_key=True)
    stored_name: Mapped[str] = mapped_column(String(60), nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    client_ip: Mapped[str | None] = mapped_column(String(45))
    created_at: Mapped[datetime] = mapped_column(nullable=False, index=True)


# =============================================================================
# Audit
# =============================================================================

class AuditEvent(Base):
    """
    Append-only access and security log.

    Security:
    - Never stores raw field values, filenames from clients or payload fragments
    - Details hold identifiers, type names and threat labels only
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_event_created", "event_type", "created_at"),
        Index("idx_audit_severity_created", "severity", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    form_id: Mapped[str | None] = mapped_column(String(36))
    submission_id: Mapped[str | None] = mapped_column(String(40))
    client_ip: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(String(500))
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
