from __future__ import annotations

from typing import Any, Dict, Optional


class StorageUnavailable(Exception):
    """Raised when the durable backend cannot complete a read or write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StorageUnavailable", "ConstraintViolation"]
