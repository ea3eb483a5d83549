"""Error taxonomy for the submission pipeline.

Every error carries a ``public_message`` that is safe to show to the submitter.
Internal specifics (threat names, OS errors) stay on the exception for logging
and are never rendered into responses.
"""

from __future__ import annotations


class FormGuardError(Exception):
    """Base class for pipeline errors."""

    status_code = 400
    public_message = "Your request could not be processed."

    def __init__(self, detail: str | None = None, *, public_message: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail
        if public_message is not None:
            self.public_message = public_message


class SecurityRejection(FormGuardError):
    """CSRF failure or rate limit exceeded. Never says which."""

    status_code = 403
    public_message = "Your request could not be processed. Please refresh the page and try again."


class ValidationFailure(FormGuardError):
    """One or more fields failed validation."""

    status_code = 400
    public_message = "Please correct the errors below and try again."

    def __init__(self, errors: dict[str, str], detail: str | None = None):
        super().__init__(detail)
        self.errors = errors


class ThreatDetected(FormGuardError):
    """An uploaded file failed the threat scanner."""

    status_code = 400
    public_message = "File not allowed."

    def __init__(self, threats: list[str], detail: str | None = None):
        super().__init__(detail or "; ".join(threats))
        self.threats = threats


class TransientIOFailure(FormGuardError):
    """Disk, move or database failure. The caller may retry."""

    status_code = 503
    public_message = "We could not save your submission. Please try again."


class NotFound(FormGuardError):
    status_code = 404
    public_message = "Not found."


class StagedFileNotFound(NotFound):
    """Temp token is missing, malformed, consumed or expired."""

    public_message = "The uploaded file has expired. Please upload it again."


class FileRejected(FormGuardError):
    """Upload refused for policy reasons (size, empty) rather than content."""

    status_code = 400
    public_message = "File not allowed."
