"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database per test (real commits, so storage hooks fire)
- Storage rooted under tmp_path
- Pipeline services wired to an in-memory state store and fake clocks
- HTTPX AsyncClient with dependency overrides
"""
import base64
import os
import tempfile
from typing import AsyncGenerator, Generator

# Must be set before formguard modules read settings
os.environ["TESTING"] = "1"
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'formguard-test.db')}"
)
os.environ.setdefault("REDIS_URL", "memory://")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from formguard.core import deps
from formguard.core.config import settings
from formguard.core.csrf import CsrfGate
from formguard.core.rate_limit import SlidingWindowRateLimiter
from formguard.core.state_store import InMemoryStore
from formguard.db import models  # noqa: F401
from formguard.db.base import Base
from formguard.db.models import Form
from formguard.main import app
from formguard.services import form_service
from formguard.services.audit_service import AccessLogger
from formguard.services.field_validator import FieldValidator
from formguard.services.storage import ensure_storage_dirs
from formguard.services.submission_service import SubmissionOrchestrator
from formguard.services.threat_scanner import ThreatScanner
from formguard.services.upload_stager import UploadStager

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

PDF_BYTES = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


class FakeClock:
    """Monotonic test clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Storage and Database
# =============================================================================

@pytest.fixture(autouse=True)
def storage_root(tmp_path, monkeypatch) -> str:
    root = str(tmp_path / "storage")
    monkeypatch.setattr(settings, "STORAGE_ROOT", root)
    ensure_storage_dirs()
    return root


@pytest.fixture(scope="function")
def db(tmp_path) -> Generator[Session, None, None]:
    """
    Session on a throwaway SQLite file.

    Each test gets its own database so app code can commit and roll back freely.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestSession()
    yield session
    session.close()
    engine.dispose()


# =============================================================================
# Pipeline Fixtures
# =============================================================================

@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def csrf_gate(store) -> CsrfGate:
    return CsrfGate(store, lifetime_seconds=3600)


@pytest.fixture
def rate_limiter(store) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(store)


@pytest.fixture
def stager() -> UploadStager:
    return UploadStager()


@pytest.fixture
def access_logger() -> AccessLogger:
    return AccessLogger()


@pytest.fixture
def orchestrator(csrf_gate, rate_limiter, stager, access_logger) -> SubmissionOrchestrator:
    return SubmissionOrchestrator(
        validator=FieldValidator(disposable_domains=settings.disposable_domains_list),
        scanner=ThreatScanner(),
        csrf_gate=csrf_gate,
        rate_limiter=rate_limiter,
        stager=stager,
        access_logger=access_logger,
    )


@pytest.fixture
def make_form(db: Session):
    """Factory creating an active form from a field list."""
    def _make(fields, **kwargs) -> Form:
        form = form_service.create_form(db, title=kwargs.pop("title", "Test Form"), fields=fields, **kwargs)
        db.commit()
        return form

    return _make


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def pdf_bytes() -> bytes:
    return PDF_BYTES


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(
    db: Session,
    csrf_gate: CsrfGate,
    rate_limiter: SlidingWindowRateLimiter,
    orchestrator: SubmissionOrchestrator,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Unauthenticated AsyncClient for the public endpoints.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_csrf_gate] = lambda: csrf_gate
    app.dependency_overrides[deps.get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[deps.get_orchestrator] = lambda: orchestrator

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"},
    ) as c:
        yield c

    app.dependency_overrides.clear()
