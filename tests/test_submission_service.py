"""End-to-end tests for the submission orchestrator."""

import hashlib
import os
import re
from io import BytesIO

import pytest
from fastapi import UploadFile
from PIL import Image
from starlette.datastructures import Headers

from formguard.core.config import settings
from formguard.core.csrf import DEFAULT_ACTION
from formguard.core.exceptions import SecurityRejection, TransientIOFailure, ValidationFailure
from formguard.db.enums import AuditEventType
from formguard.db.models import AuditEvent, StagedFile, Submission, SubmissionFile
from formguard.services import storage
from formguard.services.submission_service import (
    SubmissionAttempt,
    SubmissionState,
    generate_submission_id,
)


INTAKE_FIELDS = [
    {"id": "full_name", "type": "text", "label": "Full name", "required": True, "maxLength": 100},
    {"id": "email", "type": "email", "label": "Email", "required": True},
    {"id": "aadhar", "type": "aadhar", "label": "Aadhar"},
    {"id": "photo", "type": "photo", "label": "Photo", "required": True},
]


def _make_upload(*, filename: str, content_type: str, data: bytes) -> UploadFile:
    return UploadFile(
        filename=filename,
        file=BytesIO(data),
        headers=Headers({"content-type": content_type}),
    )


@pytest.fixture
def intake_form(make_form):
    return make_form(INTAKE_FIELDS)


@pytest.fixture
def attempt_for(csrf_gate):
    """Build an attempt carrying a fresh CSRF token for session ``sess-1``."""
    def _build(form, values, files=None, client_ip="8.8.8.8", **kwargs) -> SubmissionAttempt:
        return SubmissionAttempt(
            form_id=form.id,
            raw_values=values,
            files=files or {},
            client_ip=client_ip,
            user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
            csrf_token=kwargs.pop("csrf_token", None) or csrf_gate.issue("sess-1", DEFAULT_ACTION),
            session_id=kwargs.pop("session_id", "sess-1"),
        )

    return _build


def _events(db, event_type: AuditEventType) -> list[AuditEvent]:
    return db.query(AuditEvent).filter(AuditEvent.event_type == event_type.value).all()


def _stage(stager, db, png_bytes) -> str:
    upload = _make_upload(filename="me.png", content_type="image/png", data=png_bytes)
    staged = stager.stage(db, upload, len(png_bytes), client_ip="8.8.8.8")
    db.commit()
    return staged.temp_id


def test_submission_id_format():
    assert re.fullmatch(r"SUB_\d{8}_[0-9A-F]{16}", generate_submission_id())


def test_direct_upload_is_accepted_and_promoted(db, orchestrator, intake_form, attempt_for, png_bytes):
    attempt = attempt_for(
        intake_form,
        {"full_name": "Asha <Rao>", "email": "Asha@Gmail.com", "aadhar": "234567890123"},
        files={"photo": _make_upload(filename="me.png", content_type="image/png", data=png_bytes)},
    )
    outcome = orchestrator.submit(db, intake_form, attempt)

    assert outcome.accepted, outcome.errors
    assert outcome.state == SubmissionState.PERSISTED
    assert outcome.message == settings.SUCCESS_MESSAGE

    submission = db.get(Submission, outcome.submission_id)
    assert submission.submission_data["full_name"] == "Asha &lt;Rao&gt;"
    assert submission.submission_data["email"] == "asha@gmail.com"
    assert submission.submission_data["aadhar"] == "2345 6789 0123"
    assert submission.submission_data["photo"]["size"] == len(png_bytes)

    stored = db.query(SubmissionFile).filter_by(submission_id=outcome.submission_id).one()
    assert stored.mime_type == "image/png"
    assert stored.relative_path == f"files/{stored.stored_filename}"
    assert os.path.getsize(os.path.join(settings.files_dir, stored.stored_filename)) == len(png_bytes)
    assert os.listdir(settings.pending_dir) == []
    assert len(_events(db, AuditEventType.FORM_SUBMISSION_ACCEPTED)) == 1


def test_missing_required_photo_is_a_field_error(db, orchestrator, intake_form, attempt_for):
    attempt = attempt_for(intake_form, {"full_name": "Asha", "email": "asha@gmail.com"})
    outcome = orchestrator.submit(db, intake_form, attempt)

    assert not outcome.accepted
    assert isinstance(outcome.error, ValidationFailure)
    assert outcome.errors == {"photo": "Photo is required."}
    assert db.query(Submission).count() == 0
    assert len(_events(db, AuditEventType.FORM_SUBMISSION_REJECTED)) == 1


def test_staged_upload_is_consumed_into_permanent_storage(
    db, orchestrator, stager, intake_form, attempt_for, png_bytes
):
    temp_id = _stage(stager, db, png_bytes)
    attempt = attempt_for(
        intake_form,
        {"full_name": "Asha", "email": "asha@gmail.com", "photo_temp": f"{temp_id}.png"},
    )
    outcome = orchestrator.submit(db, intake_form, attempt)

    assert outcome.accepted, outcome.errors
    stored = db.query(SubmissionFile).filter_by(submission_id=outcome.submission_id).one()
    final_path = os.path.join(settings.files_dir, stored.stored_filename)
    assert os.path.getsize(final_path) == len(png_bytes)
    assert os.listdir(settings.temp_dir) == []
    assert db.get(StagedFile, temp_id) is None


def test_staged_token_cannot_be_reused(db, orchestrator, stager, intake_form, attempt_for, png_bytes):
    temp_id = _stage(stager, db, png_bytes)
    values = {"full_name": "Asha", "email": "asha@gmail.com", "photo_temp_id": temp_id}
    assert orchestrator.submit(db, intake_form, attempt_for(intake_form, dict(values))).accepted

    outcome = orchestrator.submit(db, intake_form, attempt_for(intake_form, dict(values)))
    assert not outcome.accepted
    assert outcome.errors["photo"] == "The uploaded file has expired. Please upload it again."


def test_failed_submission_returns_staged_file(
    db, orchestrator, stager, make_form, attempt_for, png_bytes
):
    form = make_form(
        [
            {"id": "photo", "type": "photo", "required": True},
            {"id": "id_card", "type": "file", "required": True},
        ]
    )
    temp_id = _stage(stager, db, png_bytes)
    attempt = attempt_for(
        form,
        {"photo_temp": temp_id},
        files={
            "id_card": _make_upload(
                filename="card.pdf", content_type="application/pdf", data=b"MZ" + b"\x00" * 64
            )
        },
    )
    outcome = orchestrator.submit(db, form, attempt)

    assert not outcome.accepted
    assert outcome.errors == {"id_card": "File not allowed."}
    # Staged photo went back to temp/ and its row survived the rollback
    assert db.get(StagedFile, temp_id) is not None
    assert os.listdir(settings.temp_dir) == [f"{temp_id}.png"]
    assert os.listdir(settings.pending_dir) == []
    assert os.listdir(settings.files_dir) == []
    threat_events = _events(db, AuditEventType.SECURITY_THREAT_DETECTED)
    assert threat_events[0].details["field_id"] == "id_card"


def test_optional_file_failure_becomes_warning(db, orchestrator, make_form, attempt_for):
    form = make_form(
        [
            {"id": "name", "type": "text", "required": True},
            {"id": "attachment", "type": "file"},
        ]
    )
    attempt = attempt_for(
        form,
        {"name": "Asha", "attachment_temp": "tmp_" + "c" * 24},
    )
    outcome = orchestrator.submit(db, form, attempt)

    assert outcome.accepted
    assert outcome.warnings == ["attachment: The uploaded file has expired. Please upload it again."]
    assert "attachment" not in db.get(Submission, outcome.submission_id).submission_data


def test_oversize_file_uses_field_limit(db, orchestrator, make_form, attempt_for, png_bytes):
    form = make_form([{"id": "photo", "type": "photo", "required": True, "maxSizeMB": 0.00001}])
    attempt = attempt_for(
        form, {}, files={"photo": _make_upload(filename="me.png", content_type="image/png", data=png_bytes)}
    )
    outcome = orchestrator.submit(db, form, attempt)
    assert outcome.errors == {"photo": "File size exceeds 0 MB limit."}


def test_photo_field_rejects_non_images(db, orchestrator, make_form, attempt_for, pdf_bytes):
    form = make_form([{"id": "photo", "type": "photo", "required": True}])
    attempt = attempt_for(
        form, {}, files={"photo": _make_upload(filename="cv.pdf", content_type="application/pdf", data=pdf_bytes)}
    )
    outcome = orchestrator.submit(db, form, attempt)
    assert outcome.errors == {"photo": "File not allowed."}


def test_bad_csrf_token_is_generic_security_rejection(db, orchestrator, intake_form, attempt_for):
    attempt = attempt_for(intake_form, {"full_name": "Asha"}, csrf_token="forged")
    outcome = orchestrator.submit(db, intake_form, attempt)

    assert not outcome.accepted
    assert isinstance(outcome.error, SecurityRejection)
    assert outcome.errors == {}
    assert len(_events(db, AuditEventType.SECURITY_CSRF_FAILED)) == 1


def test_csrf_disabled_skips_token_check(db, orchestrator, make_form, monkeypatch):
    monkeypatch.setattr(settings, "CSRF_ENABLED", False)
    form = make_form([{"id": "name", "type": "text", "required": True}])
    attempt = SubmissionAttempt(form_id=form.id, raw_values={"name": "Asha"}, user_agent="Mozilla/5.0")
    assert orchestrator.submit(db, form, attempt).accepted


def test_rate_limit_blocks_after_max_attempts(db, orchestrator, make_form, attempt_for, monkeypatch):
    monkeypatch.setattr(settings, "SUBMISSION_RATE_LIMIT_MAX", 2)
    form = make_form([{"id": "name", "type": "text", "required": True}])

    for _ in range(2):
        assert orchestrator.submit(db, form, attempt_for(form, {"name": "Asha"})).accepted
    outcome = orchestrator.submit(db, form, attempt_for(form, {"name": "Asha"}))

    assert isinstance(outcome.error, SecurityRejection)
    assert len(_events(db, AuditEventType.SECURITY_RATE_LIMITED)) == 1
    # A different client is unaffected
    assert orchestrator.submit(db, form, attempt_for(form, {"name": "Asha"}, client_ip="1.1.1.1")).accepted


def test_malicious_value_is_audited_without_payload(db, orchestrator, make_form, attempt_for):
    form = make_form([{"id": "bio", "type": "textarea", "required": True}])
    outcome = orchestrator.submit(db, form, attempt_for(form, {"bio": "<script>alert(1)</script>"}))

    assert outcome.errors == {"bio": "Invalid input detected. Please check your entry and try again."}
    events = _events(db, AuditEventType.SECURITY_MALICIOUS_INPUT)
    assert len(events) == 1
    assert events[0].details == {"field_id": "bio", "field_type": "textarea", "reason": "malicious_input"}


def test_persist_failure_rolls_back_files(db, orchestrator, intake_form, attempt_for, png_bytes, monkeypatch):
    from sqlalchemy.exc import OperationalError

    attempt = attempt_for(
        intake_form,
        {"full_name": "Asha", "email": "asha@gmail.com"},
        files={"photo": _make_upload(filename="me.png", content_type="image/png", data=png_bytes)},
    )
    real_commit = db.commit
    calls = {"n": 0}

    def flaky_commit():
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)
    outcome = orchestrator.submit(db, intake_form, attempt)

    assert not outcome.accepted
    assert outcome.state == SubmissionState.PERSIST_FAILED
    assert isinstance(outcome.error, TransientIOFailure)
    assert db.query(Submission).count() == 0
    assert os.listdir(settings.pending_dir) == []
    assert os.listdir(settings.files_dir) == []


def _jpeg_with_exif() -> bytes:
    exif = Image.Exif()
    exif[0x010F] = "SecretCam"  # Make
    exif[0x010E] = "12 Hidden Lane"  # ImageDescription
    buffer = BytesIO()
    Image.new("RGB", (16, 16), (200, 40, 40)).save(buffer, format="JPEG", exif=exif)
    return buffer.getvalue()


def _assert_clean_jpeg(path: str) -> bytes:
    with open(path, "rb") as fh:
        data = fh.read()
    assert b"SecretCam" not in data
    assert b"Hidden Lane" not in data
    with Image.open(BytesIO(data)) as img:
        assert img.format == "JPEG"
        assert len(img.getexif()) == 0
    return data


def test_direct_photo_is_stored_without_exif(db, orchestrator, intake_form, attempt_for):
    jpeg = _jpeg_with_exif()
    attempt = attempt_for(
        intake_form,
        {"full_name": "Asha", "email": "asha@gmail.com"},
        files={"photo": _make_upload(filename="me.jpg", content_type="image/jpeg", data=jpeg)},
    )
    outcome = orchestrator.submit(db, intake_form, attempt)

    assert outcome.accepted, outcome.errors
    stored = db.query(SubmissionFile).filter_by(submission_id=outcome.submission_id).one()
    data = _assert_clean_jpeg(os.path.join(settings.files_dir, stored.stored_filename))
    assert stored.size_bytes == len(data)
    assert stored.checksum_sha256 == hashlib.sha256(data).hexdigest()


def test_staged_photo_is_stored_without_exif(db, orchestrator, stager, intake_form, attempt_for):
    jpeg = _jpeg_with_exif()
    staged = stager.stage(
        db, _make_upload(filename="me.jpg", content_type="image/jpeg", data=jpeg), len(jpeg), client_ip="8.8.8.8"
    )
    db.commit()
    attempt = attempt_for(
        intake_form, {"full_name": "Asha", "email": "asha@gmail.com", "photo_temp": staged.temp_id}
    )
    outcome = orchestrator.submit(db, intake_form, attempt)

    assert outcome.accepted, outcome.errors
    stored = db.query(SubmissionFile).filter_by(submission_id=outcome.submission_id).one()
    data = _assert_clean_jpeg(os.path.join(settings.files_dir, stored.stored_filename))
    assert stored.size_bytes == len(data)
    assert stored.checksum_sha256 == hashlib.sha256(data).hexdigest()


def test_strip_leaves_images_without_metadata_untouched(png_bytes):
    assert storage.strip_image_metadata(png_bytes, "image/png") is png_bytes
    assert storage.strip_image_metadata(b"%PDF-1.4", "application/pdf") == b"%PDF-1.4"
