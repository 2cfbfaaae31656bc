from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or timed out.

    The only storage failure worth retrying.
    """

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class UnsupportedOperation(Exception):
    """Raised by an adapter for an operation it deliberately does not provide."""

    def __init__(self, operation: str, adapter: str):
        super().__init__(f"{adapter} does not support {operation}")
        self.operation = operation
        self.adapter = adapter


__all__ = ["ConstraintViolation", "StoreUnavailable", "UnsupportedOperation"]
