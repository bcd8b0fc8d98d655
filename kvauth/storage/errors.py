from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BackendUnavailable(Exception):
    """The key-value backend could not be reached or rejected a command."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"key-value backend unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {type(cause).__name__}"
        super().__init__(message)


__all__ = ["ConstraintViolation", "BackendUnavailable"]
