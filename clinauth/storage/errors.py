from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing store could not be reached or rejected the operation.

    Callers must surface this as a service fault, never as an auth decision.
    """

    def __init__(self, message: str, *, backend: str = "unknown", operation: str = ""):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.operation = operation


class StoreTimeout(StoreUnavailable):
    """A store call exceeded its timeout."""


__all__ = ["ConstraintViolation", "StoreUnavailable", "StoreTimeout"]
