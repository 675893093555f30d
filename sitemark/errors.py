"""
Domain exceptions raised by sitemark services.

Routers translate these into HTTP responses (see main.py exception handlers).
"""

from typing import Any, Dict, Optional


class SitemarkError(Exception):
    """Base error with optional structured details."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AnnotationContextError(SitemarkError):
    """Write attempted without a usable file url, file name or record id."""

    status_code = 400


class RecordNotFoundError(SitemarkError):
    """A file record or stored object does not exist."""

    status_code = 404


class RefCounterExhaustedError(SitemarkError):
    """Optimistic counter transaction kept conflicting until attempts ran out."""


class RefCounterCorruptError(SitemarkError):
    """Stored counter value is unusable."""


class ReportValidationError(SitemarkError):
    """Export input rejected before any rendering work."""

    status_code = 400


class StorageError(SitemarkError):
    """Durable object write/read failed."""


class PublishError(SitemarkError):
    """Export artifact could not be published."""
