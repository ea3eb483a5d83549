"""Heuristic, signature-based threat scanner for uploaded files.

``ThreatScanner.scan`` is a pure function of its inputs. Every layer runs and
contributes to the result, so callers (and the audit log) see all findings for
a file, not just the first one. Layers, cheapest first:

1. extension deny-list over every dot-separated segment of the name
2. MIME deny-list on the libmagic-sniffed type (and the client header), plus the field's
   allowed types
3. content patterns in the first 8KB (PHP tags, script blocks, executable
   headers, code-execution calls)
4. magic bytes for known extensions (mismatch is a warning)
5. embedded executables/archives anywhere in the content
6. image decode check for image extensions (failure is a warning)

Size limits are enforced by callers before content is read.
"""

from __future__ import annotations

import io
import mimetypes
import re
from dataclasses import dataclass, field
from typing import Iterable

import magic
from PIL import Image

CONTENT_SCAN_BYTES = 8 * 1024
SNIFF_BYTES = 2048

DANGEROUS_EXTENSIONS = frozenset({
    "php", "phtml", "php3", "php4", "php5", "php7", "phps", "pht", "phar",
    "pl", "py", "cgi", "sh", "bash",
    "jsp", "asp", "aspx",
    "exe", "dll", "com", "bat", "cmd", "scr", "msi", "vbs", "js", "jar",
    "app", "deb", "rpm",
})

DANGEROUS_MIME_TYPES = frozenset({
    "application/x-php",
    "application/x-httpd-php",
    "application/php",
    "text/x-php",
    "application/x-sh",
    "application/x-csh",
    "text/x-shellscript",
    "application/x-executable",
    "application/x-msdownload",
    "application/x-msdos-program",
    "application/x-mach-binary",
    "application/x-dosexec",
    "application/x-pie-executable",
    "application/x-sharedlib",
    "application/x-elf",
})

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_JPEG_SIGNATURE_PREFIX = b"\xff\xd8\xff"
_GIF_SIGNATURES = (b"GIF87a", b"GIF89a")
_PDF_SIGNATURE = b"%PDF"
_ZIP_SIGNATURE_PREFIXES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
_ZIP_LOCAL_HEADER = b"PK\x03\x04"
_ELF_SIGNATURE = b"\x7fELF"
_PE_DOS_STUB = b"This program cannot be run in DOS mode"
_EXECUTABLE_SIGNATURE_PREFIXES = (
    b"MZ",  # Windows PE
    b"\x7fELF",  # Linux ELF
    b"\xfe\xed\xfa\xce",  # Mach-O (32-bit)
    b"\xfe\xed\xfa\xcf",  # Mach-O (64-bit)
    b"\xcf\xfa\xed\xfe",  # Mach-O (reverse endian)
    b"\xce\xfa\xed\xfe",  # Mach-O (32-bit, reverse endian)
)

MAGIC_SIGNATURES: dict[str, tuple[bytes, ...]] = {
    "jpg": (_JPEG_SIGNATURE_PREFIX,),
    "jpeg": (_JPEG_SIGNATURE_PREFIX,),
    "png": (_PNG_SIGNATURE,),
    "gif": _GIF_SIGNATURES,
    "pdf": (_PDF_SIGNATURE,),
    "zip": _ZIP_SIGNATURE_PREFIXES,
}

# Formats that are ZIP containers by definition
ZIP_CONTAINER_EXTENSIONS = frozenset({"zip", "docx", "xlsx", "pptx", "odt", "ods", "odp"})

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "bmp"})

_PHP_TAG_RE = re.compile(rb"<\?(?:php\b|=|\s)", re.IGNORECASE)
_SCRIPT_RE = re.compile(rb"<script\b[^>]*>", re.IGNORECASE)
_CODE_EXECUTION_RE = re.compile(
    rb"\b(eval|exec|system|shell_exec|passthru|base64_decode|file_get_contents|"
    rb"curl_exec|proc_open|popen|assert)\(",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ScanResult:
    safe: bool
    threats: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    detected_mime: str = "application/octet-stream"


def file_extension(filename: str | None) -> str:
    if not filename or "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].strip().lower()


def sniff_mime_type(data: bytes) -> str:
    """MIME type from the leading bytes only; the client's name and header are not consulted."""
    if not data:
        return "application/octet-stream"
    return magic.from_buffer(data[:SNIFF_BYTES], mime=True).lower()


def extension_mime_types(extension: str) -> set[str]:
    """MIME types a configured allow-list extension stands for."""
    ext = extension.strip().lstrip(".").lower()
    types = set()
    guessed, _ = mimetypes.guess_type(f"upload.{ext}")
    if guessed:
        types.add(guessed.lower())
    if ext in ZIP_CONTAINER_EXTENSIONS:
        # Older libmagic builds report OOXML/ODF containers as plain zip
        types.add("application/zip")
    return types


def mime_allowed(content_type: str, allowed: Iterable[str]) -> bool:
    for item in allowed:
        item = item.strip().lower()
        if not item:
            continue
        if item.endswith("/*") and content_type.startswith(item[:-1]):
            return True
        if content_type == item:
            return True
    return False


def _find_embedded_pe(data: bytes) -> bool:
    """Locate an MZ header whose e_lfanew points at a PE signature."""
    pos = data.find(b"MZ")
    while pos != -1:
        header_end = pos + 0x40
        if header_end <= len(data):
            e_lfanew = int.from_bytes(data[pos + 0x3C:header_end], "little")
            if 0x40 <= e_lfanew <= 0x1000:
                start = pos + e_lfanew
                if data[start:start + 4] == b"PE\x00\x00":
                    return True
        pos = data.find(b"MZ", pos + 1)
    return False


class ThreatScanner:
    """Multi-layer inspection of an uploaded byte stream."""

    def __init__(self, content_scan_bytes: int = CONTENT_SCAN_BYTES):
        self.content_scan_bytes = content_scan_bytes

    def scan(
        self,
        data: bytes,
        filename: str | None,
        declared_mime: str | None = None,
        allowed_types: Iterable[str] | None = None,
    ) -> ScanResult:
        threats: list[str] = []
        warnings: list[str] = []
        name = (filename or "").strip()
        ext = file_extension(name)

        if not data:
            threats.append("empty_file")

        threats.extend(self._check_extension(name))

        detected_mime = sniff_mime_type(data)
        threats.extend(self._check_mime(detected_mime, declared_mime, allowed_types))

        threats.extend(self._check_content(data[: self.content_scan_bytes]))

        warnings.extend(self._check_magic_bytes(data, ext))

        threats.extend(self._check_embedded(data, ext))

        image_threats, image_warnings = self._check_image(data, ext)
        threats.extend(image_threats)
        warnings.extend(image_warnings)

        return ScanResult(
            safe=not threats,
            threats=tuple(dict.fromkeys(threats)),
            warnings=tuple(dict.fromkeys(warnings)),
            detected_mime=detected_mime,
        )

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_extension(filename: str) -> list[str]:
        if not filename:
            return ["missing_filename"]
        segments = [s.strip().lower() for s in filename.split(".")[1:]]
        if not segments:
            return ["missing_extension"]
        # "image.jpg.php" and "shell.php.jpg" both fail here
        return [f"blocked_extension:{s}" for s in segments if s in DANGEROUS_EXTENSIONS]

    @staticmethod
    def _check_mime(
        detected_mime: str,
        declared_mime: str | None,
        allowed_types: Iterable[str] | None,
    ) -> list[str]:
        threats: list[str] = []
        if detected_mime in DANGEROUS_MIME_TYPES:
            threats.append(f"blocked_mime:{detected_mime}")

        declared = (declared_mime or "").split(";", 1)[0].strip().lower()
        if declared in DANGEROUS_MIME_TYPES:
            threats.append("blocked_declared_mime")

        allowed = [a for a in (allowed_types or []) if a and a.strip()]
        if allowed:
            # Extension entries are translated to MIME types; the upload's own name never decides
            mime_patterns = [a for a in allowed if "/" in a]
            for entry in allowed:
                if "/" not in entry:
                    mime_patterns.extend(extension_mime_types(entry))
            if not mime_allowed(detected_mime, mime_patterns):
                threats.append("disallowed_type")
        return threats

    @staticmethod
    def _check_content(head: bytes) -> list[str]:
        threats: list[str] = []
        if _PHP_TAG_RE.search(head):
            threats.append("php_tag")
        if _SCRIPT_RE.search(head):
            threats.append("script_block")
        if head.startswith(_EXECUTABLE_SIGNATURE_PREFIXES):
            threats.append("executable_header")
        for match in _CODE_EXECUTION_RE.finditer(head):
            threats.append(f"code_execution:{match.group(1).decode('ascii').lower()}")
        return threats

    @staticmethod
    def _check_magic_bytes(data: bytes, ext: str) -> list[str]:
        signatures = MAGIC_SIGNATURES.get(ext)
        if not signatures or not data:
            return []
        head = data[:16]
        if ext == "pdf":
            head = data[:1024].lstrip(b"\xef\xbb\xbf \t\r\n")
        if head.startswith(signatures):
            return []
        return [f"magic_mismatch:{ext}"]

    @staticmethod
    def _check_embedded(data: bytes, ext: str) -> list[str]:
        threats: list[str] = []
        if data.startswith(b"MZ") or _find_embedded_pe(data) or _PE_DOS_STUB in data:
            threats.append("embedded_executable:pe")
        if _ELF_SIGNATURE in data:
            threats.append("embedded_executable:elf")

        zip_at = data.find(_ZIP_LOCAL_HEADER)
        if zip_at > 0 or (zip_at == 0 and ext not in ZIP_CONTAINER_EXTENSIONS):
            threats.append("embedded_archive")
        return threats

    @staticmethod
    def _check_image(data: bytes, ext: str) -> tuple[list[str], list[str]]:
        if ext not in IMAGE_EXTENSIONS or not data:
            return [], []
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
        except Image.DecompressionBombError:
            return ["decompression_bomb"], []
        except Exception:
            # Pillow raises assorted types on corrupt data
            return [], ["image_decode_failed"]
        return [], []
