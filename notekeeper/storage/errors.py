from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for storage-layer failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness or reference constraint is violated."""


class UnknownRecord(StorageError):
    """Raised when a mutation targets a record that does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "UnknownRecord"]
