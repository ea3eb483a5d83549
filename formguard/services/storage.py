"""Local file storage for staged, pending and permanent uploads.

Layout under ``STORAGE_ROOT`` (never served directly):

- ``temp/``     staged uploads waiting for a submission
- ``pending/``  files accepted by a submission whose transaction has not committed
- ``files/``    permanent files referenced by ``submission_files`` rows

Every move is an ``os.replace`` inside one root, so a file is never half-visible
at its destination. Promotion from ``pending/`` to ``files/`` is tied to the
SQLAlchemy session: it happens after commit, and rollback undoes the pending
placement (direct uploads are deleted, staged files go back to ``temp/``).
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import BinaryIO

from PIL import Image, ImageOps
from sqlalchemy import event
from sqlalchemy.orm import Session

from formguard.core.config import settings

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_SESSION_OPS_KEY = "formguard_file_ops"
_SESSION_HOOKED_KEY = "formguard_file_hooks"


def ensure_storage_dirs() -> None:
    for path in (settings.temp_dir, settings.pending_dir, settings.files_dir):
        os.makedirs(path, mode=0o750, exist_ok=True)


def generate_stored_filename(submission_id: str, field_id: str, ext: str) -> str:
    """``<submission>_<field>_<time_ns>_<random>.<ext>``; collision-free without locking."""
    name = f"{submission_id}_{field_id}_{time.time_ns()}_{secrets.token_hex(4)}"
    return f"{name}.{ext}" if ext else name


def relative_file_path(stored_filename: str) -> str:
    return f"files/{stored_filename}"


def calculate_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def write_atomic(directory: str, name: str, source: BinaryIO | bytes) -> str:
    """Write bytes or a stream to ``directory/name`` via a temporary part file."""
    os.makedirs(directory, mode=0o750, exist_ok=True)
    final_path = os.path.join(directory, name)
    part_path = os.path.join(directory, f".{name}.{secrets.token_hex(4)}.part")
    try:
        with open(part_path, "wb") as out:
            if isinstance(source, bytes):
                out.write(source)
            else:
                source.seek(0)
                for chunk in iter(lambda: source.read(_CHUNK_SIZE), b""):
                    out.write(chunk)
        os.replace(part_path, final_path)
    except OSError:
        remove_quietly(part_path)
        raise
    return final_path


def move_atomic(src: str, dst: str) -> None:
    os.makedirs(os.path.dirname(dst), mode=0o750, exist_ok=True)
    os.replace(src, dst)


def read_bounded(path: str, limit: int) -> bytes:
    """Read at most ``limit`` bytes. Callers check size before reading."""
    with open(path, "rb") as fh:
        return fh.read(limit)


def remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


# Still-image types re-encoded without metadata before they reach ``files/``
METADATA_STRIP_FORMATS = {"image/jpeg": "JPEG", "image/png": "PNG", "image/webp": "WEBP"}
_METADATA_INFO_KEYS = ("exif", "xmp", "XML:com.adobe.xmp", "comment", "photoshop")


def _has_metadata(img: Image.Image) -> bool:
    if len(img.getexif()) or any(key in img.info for key in _METADATA_INFO_KEYS):
        return True
    # PNG tEXt/iTXt/zTXt chunks
    return bool(getattr(img, "text", None))


def strip_image_metadata(data: bytes, mime_type: str) -> bytes:
    """Re-encode a still image without EXIF/GPS data or text chunks.

    EXIF orientation is applied to the pixels first. Images without metadata,
    other types, animated images and data Pillow cannot decode come back
    unchanged.
    """
    fmt = METADATA_STRIP_FORMATS.get(mime_type)
    if fmt is None:
        return data
    try:
        with Image.open(io.BytesIO(data)) as img:
            if getattr(img, "is_animated", False):
                return data
            img.load()
            if not _has_metadata(img):
                return data
            icc_profile = img.info.get("icc_profile")
            clean = ImageOps.exif_transpose(img)
            # Keep palette transparency; drop everything else carried in info
            clean.info = {k: v for k, v in clean.info.items() if k == "transparency"}
            if fmt == "JPEG" and clean.mode not in ("RGB", "L"):
                clean = clean.convert("RGB")
            options = {"exif": b""}
            if icc_profile:
                options["icc_profile"] = icc_profile
            if fmt in ("JPEG", "WEBP"):
                options["quality"] = 90
            out = io.BytesIO()
            clean.save(out, format=fmt, **options)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning(
            "Image metadata not stripped", extra={"error": type(exc).__name__, "mime_type": mime_type}
        )
        return data
    return out.getvalue()


# =============================================================================
# Session-bound promotion
# =============================================================================

@dataclass
class PendingFileOp:
    pending_path: str
    final_path: str
    # Where the file goes back to on rollback; None means delete it
    restore_path: str | None = None


def _session_ops(db: Session) -> list[PendingFileOp]:
    return db.info.setdefault(_SESSION_OPS_KEY, [])


def _after_commit(session: Session) -> None:
    ops = session.info.pop(_SESSION_OPS_KEY, [])
    for op in ops:
        try:
            move_atomic(op.pending_path, op.final_path)
        except OSError:
            # Row is committed; the reconciliation sweep finishes the move.
            logger.exception("Failed to promote pending file after commit")


def _after_soft_rollback(session: Session, previous_transaction) -> None:
    if getattr(previous_transaction, "nested", False):
        return
    ops = session.info.pop(_SESSION_OPS_KEY, [])
    for op in ops:
        try:
            if op.restore_path:
                move_atomic(op.pending_path, op.restore_path)
            else:
                remove_quietly(op.pending_path)
        except OSError:
            logger.exception("Failed to undo pending file after rollback")


def _install_hooks(db: Session) -> None:
    if db.info.get(_SESSION_HOOKED_KEY):
        return
    event.listen(db, "after_commit", _after_commit)
    event.listen(db, "after_soft_rollback", _after_soft_rollback)
    db.info[_SESSION_HOOKED_KEY] = True


def register_promotion_on_commit(
    db: Session,
    pending_path: str,
    final_path: str,
    restore_path: str | None = None,
) -> None:
    """Promote ``pending_path`` to ``final_path`` when ``db`` commits.

    If the session rolls back instead, the pending file is moved to
    ``restore_path`` or deleted.
    """
    _install_hooks(db)
    _session_ops(db).append(
        PendingFileOp(pending_path=pending_path, final_path=final_path, restore_path=restore_path)
    )
