from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied, e.g. the caller does not own the chat (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitExceeded(ServiceError):
    """Per-tier daily message ceiling reached (429, typed envelope)."""
    status_code = 429
    error_code = "rate_limited"


class QuotaExceeded(ServiceError):
    """Global daily request ceiling reached.

    Rendered as a plain ``{"message": ...}`` body rather than an envelope.
    """
    status_code = 429
    error_code = "rate_limited"


class AttachmentFetchError(Exception):
    """An attachment could not be downloaded; the attachment is skipped."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"failed to fetch attachment: {reason}")
        self.url = url
        self.reason = reason


class UsagePersistenceError(Exception):
    """Writing a usage row failed; logged and never surfaced."""


class StreamInternalError(Exception):
    """Failure after the stream opened; surfaced as an in-band error event."""

    public_message = "Oops, an error occurred!"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitExceeded",
    "QuotaExceeded",
    "AttachmentFetchError",
    "UsagePersistenceError",
    "StreamInternalError",
]
