"""Submission orchestrator: gates, validation, file resolution and commit.

States::

    RECEIVED -> CSRF_CHECKED -> RATE_CHECKED -> FIELDS_VALIDATED -> FILES_RESOLVED
             -> PERSISTED | REJECTED | PERSIST_FAILED

Accepted files are written to ``pending/`` first. The submission row, its file
rows, the consumed staged-file rows and the audit rows commit in one
transaction; pending files are renamed into ``files/`` only after that commit
(see ``storage.register_promotion_on_commit``). Any rejection rolls the session
back, which deletes pending direct uploads and returns staged files to ``temp/``.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from fastapi import UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from formguard.core.config import settings
from formguard.core.csrf import DEFAULT_ACTION as CSRF_ACTION
from formguard.core.csrf import CsrfGate
from formguard.core.exceptions import (
    FileRejected,
    FormGuardError,
    SecurityRejection,
    StagedFileNotFound,
    ThreatDetected,
    TransientIOFailure,
    ValidationFailure,
)
from formguard.core.rate_limit import SlidingWindowRateLimiter, build_identifier
from formguard.core.security import is_suspicious_user_agent
from formguard.core.structured_logging import build_log_context
from formguard.db.enums import AuditEventType, FieldType
from formguard.db.models import Form, Submission, SubmissionFile
from formguard.schemas.forms import FieldSpec, FormSchema
from formguard.services import form_service, storage
from formguard.services.audit_service import AccessLogger
from formguard.services.field_validator import FieldValidator
from formguard.services.threat_scanner import ScanResult, ThreatScanner, file_extension
from formguard.services.upload_stager import UploadStager
from formguard.utils.file_upload import stream_size

logger = logging.getLogger(__name__)

RATE_LIMIT_ACTION = "form_submission"
IMAGE_FIELD_ALLOWED_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
TEMP_TOKEN_SUFFIXES = ("_temp", "_temp_id")


class SubmissionState(str, Enum):
    """Terminal states of a submission attempt."""
    PERSISTED = "persisted"
    REJECTED = "rejected"
    PERSIST_FAILED = "persist_failed"


@dataclass
class SubmissionAttempt:
    """The in-flight unit of work. Never persisted as such."""

    form_id: str
    raw_values: dict[str, Any]
    files: dict[str, UploadFile] = field(default_factory=dict)
    client_ip: str = "0.0.0.0"
    user_agent: str | None = None
    csrf_token: str | None = None
    session_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ResolvedFile:
    field_id: str
    original_filename: str
    stored_filename: str
    size_bytes: int
    mime_type: str
    checksum_sha256: str
    source: str
    warnings: tuple[str, ...] = ()

    def summary(self) -> dict[str, Any]:
        return {
            "original_name": self.original_filename,
            "stored_filename": self.stored_filename,
            "relative_path": storage.relative_file_path(self.stored_filename),
            "size": self.size_bytes,
            "mime_type": self.mime_type,
        }


@dataclass
class SubmissionOutcome:
    accepted: bool
    state: SubmissionState
    submission_id: str | None = None
    message: str = ""
    error: FormGuardError | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def errors(self) -> dict[str, str]:
        return getattr(self.error, "errors", {}) if self.error else {}


def generate_submission_id(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"SUB_{now:%Y%m%d}_{secrets.token_hex(8).upper()}"


def _clean_filename(filename: str | None) -> str:
    name = os.path.basename((filename or "").replace("\\", "/")).replace("\x00", "").strip()
    return name[:255] or "upload"


def _safe_extension(filename: str | None) -> str:
    return re.sub(r"[^a-z0-9]", "", file_extension(filename))[:10]


class SubmissionOrchestrator:
    """Turn a SubmissionAttempt into an accepted submission or a rejection."""

    def __init__(
        self,
        validator: FieldValidator,
        scanner: ThreatScanner,
        csrf_gate: CsrfGate,
        rate_limiter: SlidingWindowRateLimiter,
        stager: UploadStager,
        access_logger: AccessLogger,
    ):
        self.validator = validator
        self.scanner = scanner
        self.csrf_gate = csrf_gate
        self.rate_limiter = rate_limiter
        self.stager = stager
        self.access_logger = access_logger

    def submit(
        self,
        db: Session,
        form: Form,
        attempt: SubmissionAttempt,
        schema: FormSchema | None = None,
    ) -> SubmissionOutcome:
        form_id = form.id
        schema = schema or form_service.parse_schema(form.schema_json)
        audits: list[Callable[[], Any]] = []

        if is_suspicious_user_agent(attempt.user_agent):
            audits.append(
                lambda: self.access_logger.log_suspicious_activity(
                    db,
                    "suspicious_user_agent",
                    client_ip=attempt.client_ip,
                    user_agent=attempt.user_agent,
                    details={"form_id": form_id},
                )
            )

        # Gates: same generic rejection for both so callers cannot tell which fired
        if settings.CSRF_ENABLED and not self.csrf_gate.validate(
            attempt.session_id, CSRF_ACTION, attempt.csrf_token
        ):
            return self._reject_security(
                db, attempt, form_id, AuditEventType.SECURITY_CSRF_FAILED, audits
            )

        identifier = build_identifier(RATE_LIMIT_ACTION, attempt.client_ip)
        if not self.rate_limiter.check(
            identifier,
            settings.SUBMISSION_RATE_LIMIT_MAX,
            settings.SUBMISSION_RATE_LIMIT_WINDOW_SECONDS,
        ):
            return self._reject_security(
                db, attempt, form_id, AuditEventType.SECURITY_RATE_LIMITED, audits
            )

        # Field validation, no I/O until every value passes
        report = self.validator.validate_fields(schema, attempt.raw_values)
        for flagged in report.flagged:
            audits.append(
                lambda flagged=flagged: self.access_logger.log_validation_failure(
                    db,
                    form_id=form_id,
                    field_id=flagged.field_id,
                    field_type=flagged.field_type,
                    reason=flagged.reason,
                    client_ip=attempt.client_ip,
                )
            )
        errors = dict(report.errors)
        for spec in schema.file_fields:
            if spec.required and not self._has_file_input(spec, attempt):
                errors[spec.id] = f"{spec.display_label} is required."
        if errors:
            return self._reject(
                db, ValidationFailure(errors), SubmissionState.REJECTED, audits, attempt, form_id
            )

        # File resolution
        submission_id = generate_submission_id(attempt.created_at)
        resolved: list[ResolvedFile] = []
        warnings: list[str] = []
        for spec in schema.file_fields:
            try:
                result = self._resolve_file(db, form, spec, attempt, submission_id)
            except FormGuardError as exc:
                audits.append(self._file_failure_audit(db, exc, spec, attempt, form_id))
                if spec.required:
                    errors[spec.id] = exc.public_message
                else:
                    warnings.append(f"{spec.display_label}: {exc.public_message}")
                    logger.warning(
                        "Optional file field dropped",
                        extra=build_log_context(
                            event="file_resolution_failed", form_id=form_id, field_id=spec.id
                        ),
                    )
                continue
            if result is None:
                continue
            resolved.append(result)
            if result.warnings:
                warnings.append(f"{spec.display_label}: the file type could not be fully verified.")
        if errors:
            return self._reject(
                db, ValidationFailure(errors), SubmissionState.REJECTED, audits, attempt, form_id
            )

        # Commit
        message = form_service.success_message(form)
        submission_data = dict(report.values)
        for item in resolved:
            submission_data[item.field_id] = item.summary()

        submission = Submission(
            id=submission_id,
            form_id=form_id,
            submission_data=submission_data,
            submitted_at=attempt.created_at,
            ip_address=attempt.client_ip,
            user_agent=attempt.user_agent[:500] if attempt.user_agent else None,
        )
        db.add(submission)
        for item in resolved:
            db.add(
                SubmissionFile(
                    submission_id=submission_id,
                    field_id=item.field_id,
                    original_filename=item.original_filename,
                    stored_filename=item.stored_filename,
                    relative_path=storage.relative_file_path(item.stored_filename),
                    size_bytes=item.size_bytes,
                    mime_type=item.mime_type,
                    checksum_sha256=item.checksum_sha256,
                    uploaded_at=attempt.created_at,
                )
            )
            self.access_logger.log_file_upload(
                db,
                AuditEventType.FILE_STORED,
                form_id=form_id,
                submission_id=submission_id,
                field_id=item.field_id,
                client_ip=attempt.client_ip,
                size_bytes=item.size_bytes,
                mime_type=item.mime_type,
                warnings=item.warnings,
            )
        self.access_logger.log_form_submission(
            db,
            form_id=form_id,
            submission_id=submission_id,
            client_ip=attempt.client_ip,
            user_agent=attempt.user_agent,
            file_count=len(resolved),
            warnings=warnings,
        )
        for audit in audits:
            audit()

        try:
            db.commit()
        except SQLAlchemyError as exc:
            logger.exception(
                "Failed to persist submission",
                extra=build_log_context(
                    event="persist_failed", form_id=form_id, submission_id=submission_id
                ),
            )
            return self._reject(
                db,
                TransientIOFailure(str(exc)),
                SubmissionState.PERSIST_FAILED,
                audits,
                attempt,
                form_id,
            )

        logger.info(
            "Submission accepted",
            extra=build_log_context(
                event="submission_accepted", form_id=form_id, submission_id=submission_id
            ),
        )
        return SubmissionOutcome(
            accepted=True,
            state=SubmissionState.PERSISTED,
            submission_id=submission_id,
            message=message,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # File resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _temp_token(spec: FieldSpec, attempt: SubmissionAttempt) -> str | None:
        for suffix in TEMP_TOKEN_SUFFIXES:
            value = attempt.raw_values.get(f"{spec.id}{suffix}")
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def _has_file_input(self, spec: FieldSpec, attempt: SubmissionAttempt) -> bool:
        upload = attempt.files.get(spec.id)
        if upload is not None and upload.filename:
            return True
        return self._temp_token(spec, attempt) is not None

    @staticmethod
    def _allowed_types(spec: FieldSpec) -> list[str]:
        if spec.allowed_types:
            return list(spec.allowed_types)
        if spec.type in (FieldType.PHOTO, FieldType.SIGNATURE):
            return list(IMAGE_FIELD_ALLOWED_TYPES)
        return []

    def _resolve_file(
        self,
        db: Session,
        form: Form,
        spec: FieldSpec,
        attempt: SubmissionAttempt,
        submission_id: str,
    ) -> ResolvedFile | None:
        max_size = form_service.max_file_size_bytes(form, spec)
        upload = attempt.files.get(spec.id)
        if upload is not None and upload.filename:
            return self._store_direct(db, spec, upload, max_size, submission_id)
        token = self._temp_token(spec, attempt)
        if token:
            return self._store_staged(db, spec, token, max_size, submission_id)
        return None

    def _scan_or_raise(
        self, data: bytes, filename: str, declared_mime: str | None, spec: FieldSpec
    ) -> ScanResult:
        result = self.scanner.scan(data, filename, declared_mime, self._allowed_types(spec))
        if not result.safe:
            raise ThreatDetected(list(result.threats))
        return result

    @staticmethod
    def _size_error(max_size: int) -> FileRejected:
        return FileRejected(
            "size limit",
            public_message=f"File size exceeds {max_size / (1024 * 1024):.0f} MB limit.",
        )

    def _store_direct(
        self,
        db: Session,
        spec: FieldSpec,
        upload: UploadFile,
        max_size: int,
        submission_id: str,
    ) -> ResolvedFile:
        size = stream_size(upload.file)
        if size > max_size:
            raise self._size_error(max_size)
        upload.file.seek(0)
        data = upload.file.read(max_size + 1)
        upload.file.seek(0)
        if len(data) > max_size:
            raise self._size_error(max_size)

        original = _clean_filename(upload.filename)
        scan = self._scan_or_raise(data, original, upload.content_type, spec)
        data = storage.strip_image_metadata(data, scan.detected_mime)

        stored = storage.generate_stored_filename(submission_id, spec.id, _safe_extension(original))
        try:
            pending = storage.write_atomic(settings.pending_dir, stored, data)
        except OSError as exc:
            raise TransientIOFailure(str(exc)) from exc
        storage.register_promotion_on_commit(
            db, pending, os.path.join(settings.files_dir, stored)
        )
        return ResolvedFile(
            field_id=spec.id,
            original_filename=original,
            stored_filename=stored,
            size_bytes=len(data),
            mime_type=scan.detected_mime,
            checksum_sha256=storage.calculate_checksum(data),
            source="direct",
            warnings=scan.warnings,
        )

    def _store_staged(
        self,
        db: Session,
        spec: FieldSpec,
        token: str,
        max_size: int,
        submission_id: str,
    ) -> ResolvedFile:
        staged = self.stager.get(db, token)
        if staged.size_bytes > max_size:
            raise self._size_error(max_size)
        try:
            data = self.stager.read(staged, max_size + 1)
        except FileNotFoundError as exc:
            raise StagedFileNotFound("staged file vanished") from exc
        except OSError as exc:
            raise TransientIOFailure(str(exc)) from exc
        if len(data) > max_size:
            raise self._size_error(max_size)

        original = _clean_filename(staged.original_name)
        scan = self._scan_or_raise(data, original, staged.mime_type, spec)

        stored = storage.generate_stored_filename(submission_id, spec.id, _safe_extension(original))
        pending = os.path.join(settings.pending_dir, stored)
        restore_path = self.stager.temp_path(staged)
        try:
            self.stager.consume(db, staged, pending)
        except FileNotFoundError as exc:
            raise StagedFileNotFound("staged file vanished") from exc
        except OSError as exc:
            raise TransientIOFailure(str(exc)) from exc
        storage.register_promotion_on_commit(
            db, pending, os.path.join(settings.files_dir, stored), restore_path=restore_path
        )
        clean = storage.strip_image_metadata(data, scan.detected_mime)
        if clean is not data:
            try:
                storage.write_atomic(settings.pending_dir, stored, clean)
            except OSError as exc:
                raise TransientIOFailure(str(exc)) from exc
            data = clean
        return ResolvedFile(
            field_id=spec.id,
            original_filename=original,
            stored_filename=stored,
            size_bytes=len(data),
            mime_type=scan.detected_mime,
            checksum_sha256=storage.calculate_checksum(data),
            source="staged",
            warnings=scan.warnings,
        )

    # ------------------------------------------------------------------
    # Rejection paths
    # ------------------------------------------------------------------

    def _file_failure_audit(
        self,
        db: Session,
        exc: FormGuardError,
        spec: FieldSpec,
        attempt: SubmissionAttempt,
        form_id: str,
    ) -> Callable[[], Any]:
        if isinstance(exc, ThreatDetected):
            return lambda: self.access_logger.log_threat_detected(
                db,
                form_id=form_id,
                field_id=spec.id,
                threats=exc.threats,
                client_ip=attempt.client_ip,
                source="submission",
            )
        return lambda: self.access_logger.log_file_upload(
            db,
            AuditEventType.FILE_RESOLUTION_FAILED,
            form_id=form_id,
            field_id=spec.id,
            client_ip=attempt.client_ip,
            warnings=[type(exc).__name__],
        )

    def _reject_security(
        self,
        db: Session,
        attempt: SubmissionAttempt,
        form_id: str,
        event_type: AuditEventType,
        audits: list[Callable[[], Any]],
    ) -> SubmissionOutcome:
        audits.append(
            lambda: self.access_logger.log_security_rejection(
                db,
                event_type,
                form_id=form_id,
                client_ip=attempt.client_ip,
                user_agent=attempt.user_agent,
            )
        )
        return self._reject(
            db, SecurityRejection(event_type.value), SubmissionState.REJECTED, audits, attempt, form_id
        )

    def _reject(
        self,
        db: Session,
        error: FormGuardError,
        state: SubmissionState,
        audits: list[Callable[[], Any]],
        attempt: SubmissionAttempt,
        form_id: str,
    ) -> SubmissionOutcome:
        # Undo pending file placements before recording why
        db.rollback()
        self.access_logger.log_event(
            db,
            AuditEventType.FORM_SUBMISSION_REJECTED,
            form_id=form_id,
            client_ip=attempt.client_ip,
            details={"reason": type(error).__name__, "fields": sorted(getattr(error, "errors", {}))},
        )
        for audit in audits:
            audit()
        try:
            db.commit()
        except SQLAlchemyError:
            logger.exception(
                "Failed to record rejected submission",
                extra=build_log_context(event="audit_failed", form_id=form_id),
            )
            db.rollback()
        return SubmissionOutcome(accepted=False, state=state, error=error)
