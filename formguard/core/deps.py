"""FastAPI dependencies for database access and pipeline services."""

from typing import Generator

from sqlalchemy.orm import Session

from formguard.core.config import settings
from formguard.core.csrf import CsrfGate
from formguard.core.rate_limit import SlidingWindowRateLimiter
from formguard.core.state_store import get_state_store
from formguard.db.session import SessionLocal
from formguard.services.audit_service import AccessLogger
from formguard.services.field_validator import FieldValidator
from formguard.services.submission_service import SubmissionOrchestrator
from formguard.services.threat_scanner import ThreatScanner
from formguard.services.upload_stager import UploadStager


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_csrf_gate() -> CsrfGate:
    return CsrfGate(get_state_store(), lifetime_seconds=settings.CSRF_TOKEN_LIFETIME_SECONDS)


def get_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(get_state_store())


def get_access_logger() -> AccessLogger:
    return AccessLogger()


def get_upload_stager() -> UploadStager:
    return UploadStager()


def get_orchestrator() -> SubmissionOrchestrator:
    """Wire the orchestrator from its collaborators."""
    return SubmissionOrchestrator(
        validator=FieldValidator(disposable_domains=settings.disposable_domains_list),
        scanner=ThreatScanner(),
        csrf_gate=get_csrf_gate(),
        rate_limiter=get_rate_limiter(),
        stager=get_upload_stager(),
        access_logger=get_access_logger(),
    )
