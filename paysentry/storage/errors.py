from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Uniqueness, reference or seat-capacity rule rejected a write."""


class StoreUnavailable(StorageError):
    """The backing database could not be reached; security checks fail closed."""
