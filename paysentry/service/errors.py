from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """A failure the API layer reports to the caller.

    ``status_code`` and ``error_code`` are class-level so handlers can map
    any subclass without a lookup table; ``detail`` is echoed back as the
    envelope's ``details`` and must never carry secrets.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input, rejected before any state changes."""


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate role key, existing membership or a full seat ledger."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Carries ``retry_after`` (seconds) in ``detail`` for the Retry-After header."""

    status_code = 429
    error_code = "rate_limited"


class EnrichmentUnavailable(ServiceError):
    """Geolocation lookup failed; audit records continue without geo."""

    status_code = 503
    error_code = "enrichment_unavailable"
