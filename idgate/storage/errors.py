from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ExpiredRecordError(Exception):
    """A record was handed to the store with its expiration already passed."""


class StorageError(Exception):
    """A backing store (key-value or document) failed or timed out.

    Wraps driver exceptions so callers only ever see one infrastructure type.
    The original exception is kept as ``__cause__``.
    """

    def __init__(self, message: str, *, operation: str, backend: str):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.backend = backend


__all__ = ["ConstraintViolation", "ExpiredRecordError", "StorageError"]
