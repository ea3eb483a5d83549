"""
Storage reconciliation and retention job.

Run periodically (cron or the ``formguard cleanup`` command):
    - purge expired staged uploads from ``temp/``
    - finish promotions whose submission committed but whose file is still in ``pending/``
    - delete orphan files in ``pending/`` or ``files/`` with no committed row
    - prune audit events past the retention window

Usage:
    from formguard.jobs.cleanup import run_cleanup
    report = run_cleanup(db, dry_run=True)
"""

import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from formguard.core.config import settings
from formguard.db.models import SubmissionFile
from formguard.services import storage
from formguard.services.audit_service import AccessLogger
from formguard.services.upload_stager import UploadStager

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    staged_purged: int = 0
    promotions_completed: int = 0
    orphans_removed: int = 0
    audit_events_pruned: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _older_than(path: str, cutoff: datetime) -> bool:
    try:
        modified = datetime.fromtimestamp(os.stat(path).st_mtime, tz=timezone.utc)
    except FileNotFoundError:
        return False
    return modified < cutoff


def _list_files(directory: str) -> list[os.DirEntry]:
    if not os.path.isdir(directory):
        return []
    return [entry for entry in os.scandir(directory) if entry.is_file()]


def reconcile_files(db: Session, now: datetime, dry_run: bool = False) -> tuple[int, int]:
    """Return ``(promotions_completed, orphans_removed)``."""
    grace_cutoff = now - timedelta(seconds=settings.ORPHAN_GRACE_SECONDS)
    known = {name for (name,) in db.query(SubmissionFile.stored_filename).all()}
    promoted = 0
    removed = 0

    for entry in _list_files(settings.pending_dir):
        if entry.name in known:
            final_path = os.path.join(settings.files_dir, entry.name)
            if os.path.exists(final_path):
                continue
            promoted += 1
            if not dry_run:
                storage.move_atomic(entry.path, final_path)
            continue
        # A pending file with no row may belong to an in-flight submission
        if _older_than(entry.path, grace_cutoff):
            removed += 1
            if not dry_run:
                storage.remove_quietly(entry.path)

    for entry in _list_files(settings.files_dir):
        if entry.name in known or not _older_than(entry.path, grace_cutoff):
            continue
        removed += 1
        if not dry_run:
            storage.remove_quietly(entry.path)

    return promoted, removed


def run_cleanup(
    db: Session,
    dry_run: bool = False,
    now: datetime | None = None,
    stager: UploadStager | None = None,
    access_logger: AccessLogger | None = None,
) -> CleanupReport:
    """Run every cleanup step against ``db``. Commits unless ``dry_run``."""
    now = now or datetime.now(timezone.utc)
    stager = stager or UploadStager(clock=lambda: now)
    access_logger = access_logger or AccessLogger(clock=lambda: now)

    report = CleanupReport()
    report.staged_purged = stager.purge_expired(db, dry_run=dry_run)
    report.promotions_completed, report.orphans_removed = reconcile_files(db, now, dry_run)
    report.audit_events_pruned = access_logger.cleanup_logs(
        db, days=settings.AUDIT_RETENTION_DAYS, dry_run=dry_run
    )

    if dry_run:
        db.rollback()
    else:
        db.commit()
    logger.info("Cleanup finished", extra={"dry_run": dry_run, **report.as_dict()})
    return report
