"""Pre-submission uploads held in a quarantined temp directory.

A staged file is addressed only by its random ``temp_id``. Lookups take the
basename of whatever the client sends, require the temp-id shape and resolve
the physical path from the database row, never from client input.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import UploadFile
from sqlalchemy.orm import Session

from formguard.core.config import settings
from formguard.core.exceptions import FileRejected, StagedFileNotFound, ThreatDetected
from formguard.db.models import StagedFile
from formguard.services import storage
from formguard.services.threat_scanner import (
    DANGEROUS_EXTENSIONS,
    SNIFF_BYTES,
    file_extension,
    sniff_mime_type,
)

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp_"
TEMP_ID_RE = re.compile(r"^tmp_[0-9a-f]{24}$")
PREVIEWABLE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})


@dataclass(frozen=True)
class StagedUpload:
    temp_id: str
    temp_name: str
    original_name: str
    size: int
    mime: str
    preview_url: str


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{secrets.token_hex(12)}"


def normalize_token(token: str | None) -> str | None:
    """Reduce a client token to a bare temp id, or None if it cannot be one."""
    if not token or not isinstance(token, str):
        return None
    name = os.path.basename(token.strip().replace("\\", "/"))
    temp_id = name.split(".", 1)[0]
    if not TEMP_ID_RE.match(temp_id):
        return None
    return temp_id


def preview_url_for(temp_id: str) -> str:
    return f"/forms/public/upload/{temp_id}/preview"


def _safe_original_name(filename: str | None) -> str:
    name = os.path.basename((filename or "").replace("\\", "/")).replace("\x00", "").strip()
    return name[:255] or "upload"


class UploadStager:
    """Stage, look up, consume and expire pre-submission uploads."""

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=settings.STAGED_FILE_TTL_SECONDS)

    def temp_path(self, staged: StagedFile) -> str:
        return os.path.join(settings.temp_dir, staged.stored_name)

    def stage(
        self,
        db: Session,
        upload: UploadFile,
        size: int,
        max_size_bytes: int | None = None,
        client_ip: str | None = None,
    ) -> StagedUpload:
        """Run the lightweight checks and park the file under ``temp/``.

        The full threat scan runs again when a submission consumes the file.
        """
        max_size = max_size_bytes or settings.default_max_file_size_bytes
        if size <= 0:
            raise FileRejected("empty upload", public_message="The uploaded file is empty.")
        if size > max_size:
            raise FileRejected(
                "size limit",
                public_message=f"File size exceeds {max_size / (1024 * 1024):.0f} MB limit.",
            )

        original_name = _safe_original_name(upload.filename)
        segments = [s.lower() for s in original_name.split(".")[1:]]
        blocked = [s for s in segments if s in DANGEROUS_EXTENSIONS]
        if blocked or not segments:
            raise ThreatDetected(
                [f"blocked_extension:{s}" for s in blocked] or ["missing_extension"]
            )

        ext = re.sub(r"[^a-z0-9]", "", file_extension(original_name))[:10]
        upload.file.seek(0)
        head = upload.file.read(SNIFF_BYTES)
        upload.file.seek(0)
        mime = sniff_mime_type(head)

        temp_id = new_temp_id()
        stored_name = f"{temp_id}.{ext}" if ext else temp_id
        path = storage.write_atomic(settings.temp_dir, stored_name, upload.file)

        staged = StagedFile(
            temp_id=temp_id,
            stored_name=stored_name,
            original_name=original_name,
            mime_type=mime,
            size_bytes=size,
            client_ip=client_ip,
            created_at=self._clock(),
        )
        db.add(staged)
        try:
            db.flush()
        except Exception:
            storage.remove_quietly(path)
            raise

        return StagedUpload(
            temp_id=temp_id,
            temp_name=stored_name,
            original_name=original_name,
            size=size,
            mime=mime,
            preview_url=preview_url_for(temp_id),
        )

    def get(self, db: Session, token: str | None) -> StagedFile:
        """Resolve a client token to a live staged file or raise StagedFileNotFound."""
        temp_id = normalize_token(token)
        if temp_id is None:
            raise StagedFileNotFound("malformed temp token")

        staged = db.get(StagedFile, temp_id)
        if staged is None:
            raise StagedFileNotFound("unknown temp token")
        if self.is_expired(staged):
            raise StagedFileNotFound("expired temp token")
        if not os.path.isfile(self.temp_path(staged)):
            raise StagedFileNotFound("staged file missing on disk")
        return staged

    def is_expired(self, staged: StagedFile, now: datetime | None = None) -> bool:
        now = now or self._clock()
        created_at = staged.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return now - created_at > self.ttl

    def read(self, staged: StagedFile, limit: int) -> bytes:
        return storage.read_bounded(self.temp_path(staged), limit)

    def consume(self, db: Session, staged: StagedFile, destination: str) -> None:
        """Move the staged file to ``destination`` and delete its row.

        Both happen inside the caller's unit of work: the session rollback hook
        moves the file back to ``temp/`` and the row deletion is rolled back
        with it.
        """
        source = self.temp_path(staged)
        storage.move_atomic(source, destination)
        db.delete(staged)

    def purge_expired(self, db: Session, dry_run: bool = False) -> int:
        """Delete expired staged rows and files, plus untracked temp files past the TTL."""
        now = self._clock()
        cutoff = now - self.ttl
        removed = 0

        expired = db.query(StagedFile).filter(StagedFile.created_at < cutoff).all()
        tracked_names = {name for (name,) in db.query(StagedFile.stored_name).all()}
        for staged in expired:
            removed += 1
            if dry_run:
                continue
            storage.remove_quietly(self.temp_path(staged))
            db.delete(staged)

        temp_dir = settings.temp_dir
        if os.path.isdir(temp_dir):
            for entry in os.scandir(temp_dir):
                if not entry.is_file() or entry.name in tracked_names:
                    continue
                modified = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
                if modified >= cutoff:
                    continue
                removed += 1
                if not dry_run:
                    storage.remove_quietly(entry.path)

        if not dry_run:
            db.flush()
        logger.info("Purged %s expired staged files", removed, extra={"dry_run": dry_run})
        return removed
