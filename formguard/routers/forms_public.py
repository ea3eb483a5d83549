"""Public form endpoints for anonymous submitters."""

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile as StarletteUploadFile

from formguard.core.config import settings
from formguard.core.csrf import (
    CSRF_FIELD_NAME,
    DEFAULT_ACTION,
    CsrfGate,
    get_session_id,
    set_session_cookie,
)
from formguard.core.deps import (
    get_access_logger,
    get_csrf_gate,
    get_db,
    get_orchestrator,
    get_rate_limiter,
    get_upload_stager,
)
from formguard.core.exceptions import (
    FileRejected,
    SecurityRejection,
    StagedFileNotFound,
    ThreatDetected,
    TransientIOFailure,
)
from formguard.core.rate_limit import SlidingWindowRateLimiter, build_identifier, limiter
from formguard.core.security import get_client_ip, get_user_agent, sanitize_output
from formguard.db.enums import AuditEventType
from formguard.schemas.forms import (
    CsrfTokenResponse,
    ErrorResponse,
    FormPublicRead,
    FormSchema,
    StagedUploadResponse,
    SubmissionAcceptedResponse,
)
from formguard.services import form_service
from formguard.services.audit_service import AccessLogger
from formguard.services.submission_service import SubmissionAttempt, SubmissionOrchestrator
from formguard.services.upload_stager import PREVIEWABLE_MIME_TYPES, UploadStager
from formguard.utils.file_upload import content_length_exceeds_limit, get_upload_file_size

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/forms/public", tags=["forms-public"])

UPLOAD_RATE_LIMIT_ACTION = "file_upload"
CSRF_HEADER = "X-CSRF-Token"


def _error(status_code: int, message: str, errors: dict[str, str] | None = None) -> JSONResponse:
    body = ErrorResponse(error=message, errors=errors or {})
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _schema_or_none(schema_json: dict | list | None) -> FormSchema | None:
    if not schema_json:
        return None
    try:
        return form_service.parse_schema(schema_json)
    except ValidationError:
        logger.exception("Stored form schema failed to parse")
        return None


def _split_form_data(form_data) -> tuple[dict[str, Any], dict[str, StarletteUploadFile]]:
    """Separate text values from file parts. ``name[]`` keys collapse to ``name``."""
    values: dict[str, Any] = {}
    files: dict[str, StarletteUploadFile] = {}
    for key in set(form_data.keys()):
        name = key[:-2] if key.endswith("[]") else key
        texts: list[str] = []
        for item in form_data.getlist(key):
            if isinstance(item, StarletteUploadFile):
                if item.filename and name not in files:
                    files[name] = item
            else:
                texts.append(item)
        if not texts:
            continue
        values[name] = texts if (len(texts) > 1 or key.endswith("[]")) else texts[0]
    return values, files


@router.get("/csrf-token", response_model=CsrfTokenResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PUBLIC_READ}/minute")
def issue_csrf_token(
    request: Request,
    response: Response,
    action: str = DEFAULT_ACTION,
    gate: CsrfGate = Depends(get_csrf_gate),
):
    session_id = set_session_cookie(response, get_session_id(request))
    token = gate.issue(session_id, action)
    return CsrfTokenResponse(csrf_token=token, field_name=CSRF_FIELD_NAME)


@router.post("/upload", response_model=StagedUploadResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PUBLIC_UPLOADS}/minute")
async def upload_staged_file(
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    stager: UploadStager = Depends(get_upload_stager),
    rate_limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    access_logger: AccessLogger = Depends(get_access_logger),
):
    client_ip = get_client_ip(request)
    max_size = settings.default_max_file_size_bytes
    if content_length_exceeds_limit(request.headers.get("content-length"), max_size_bytes=max_size):
        return _error(413, f"File size exceeds {max_size / (1024 * 1024):.0f} MB limit.")

    if not rate_limiter.check(
        build_identifier(UPLOAD_RATE_LIMIT_ACTION, client_ip),
        settings.UPLOAD_RATE_LIMIT_MAX,
        settings.UPLOAD_RATE_LIMIT_WINDOW_SECONDS,
    ):
        access_logger.log_security_rejection(
            db,
            AuditEventType.SECURITY_RATE_LIMITED,
            form_id=None,
            client_ip=client_ip,
            user_agent=get_user_agent(request),
        )
        db.commit()
        return _error(403, SecurityRejection.public_message)

    size = await get_upload_file_size(file)
    try:
        staged = stager.stage(db, file, size, max_size_bytes=max_size, client_ip=client_ip)
    except ThreatDetected as exc:
        db.rollback()
        access_logger.log_threat_detected(
            db,
            form_id=None,
            field_id=None,
            threats=exc.threats,
            client_ip=client_ip,
            source="upload",
        )
        db.commit()
        return _error(exc.status_code, exc.public_message)
    except FileRejected as exc:
        db.rollback()
        return _error(exc.status_code, exc.public_message)
    except OSError:
        logger.exception("Failed to stage upload")
        db.rollback()
        return _error(TransientIOFailure.status_code, TransientIOFailure.public_message)

    access_logger.log_file_upload(
        db,
        AuditEventType.FILE_STAGED,
        client_ip=client_ip,
        size_bytes=staged.size,
        mime_type=staged.mime,
    )
    db.commit()
    return StagedUploadResponse(**asdict(staged))


@router.get("/upload/{temp_id}/preview")
@limiter.limit(f"{settings.RATE_LIMIT_PUBLIC_READ}/minute")
def preview_staged_file(
    request: Request,
    temp_id: str,
    db: Session = Depends(get_db),
    stager: UploadStager = Depends(get_upload_stager),
    access_logger: AccessLogger = Depends(get_access_logger),
):
    try:
        staged = stager.get(db, temp_id)
    except StagedFileNotFound:
        raise HTTPException(status_code=404, detail="File not found")
    # Only images render inline
    if staged.mime_type not in PREVIEWABLE_MIME_TYPES:
        raise HTTPException(status_code=404, detail="File not found")

    path = stager.temp_path(staged)
    access_logger.log_file_upload(
        db,
        AuditEventType.FILE_PREVIEWED,
        client_ip=get_client_ip(request),
        size_bytes=staged.size_bytes,
        mime_type=staged.mime_type,
    )
    db.commit()
    return FileResponse(
        path,
        media_type=staged.mime_type,
        headers={
            "X-Content-Type-Options": "nosniff",
            "Content-Security-Policy": "default-src 'none'",
            "Cache-Control": "private, no-store",
        },
    )


@router.get("/{share_link}", response_model=FormPublicRead)
@limiter.limit(f"{settings.RATE_LIMIT_PUBLIC_READ}/minute")
def get_public_form(request: Request, share_link: str, db: Session = Depends(get_db)):
    form = form_service.get_form_by_share_link(db, share_link)
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")

    schema = _schema_or_none(form.schema_json)
    if not schema:
        raise HTTPException(status_code=404, detail="Form not found")

    return FormPublicRead(
        id=form.id,
        title=sanitize_output(form.title),
        description=sanitize_output(form.description, allow_html=True) or None,
        fields=schema.fields,
    )


@router.post("/{form_id}/submit", response_model=SubmissionAcceptedResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PUBLIC_FORMS}/minute")
async def submit_public_form(
    form_id: str,
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
):
    form = form_service.get_form(db, form_id)
    if not form:
        return _error(404, "Form not found")
    schema = _schema_or_none(form.schema_json)
    if not schema:
        return _error(404, "Form not found")

    max_total = settings.default_max_file_size_bytes * max(1, len(schema.file_fields))
    if content_length_exceeds_limit(request.headers.get("content-length"), max_size_bytes=max_total):
        return _error(413, "Upload too large.")

    form_data = await request.form()
    try:
        values, files = _split_form_data(form_data)
        csrf_token = values.pop(CSRF_FIELD_NAME, None) or request.headers.get(CSRF_HEADER)
        attempt = SubmissionAttempt(
            form_id=form.id,
            raw_values=values,
            files=files,
            client_ip=get_client_ip(request),
            user_agent=get_user_agent(request),
            csrf_token=csrf_token if isinstance(csrf_token, str) else None,
            session_id=get_session_id(request),
        )
        outcome = orchestrator.submit(db, form, attempt, schema)
    finally:
        await form_data.close()

    if outcome.accepted:
        return SubmissionAcceptedResponse(
            submission_id=outcome.submission_id,
            message=outcome.message,
            warnings=outcome.warnings,
        )
    return _error(outcome.error.status_code, outcome.error.public_message, outcome.errors)
