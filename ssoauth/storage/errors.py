from __future__ import annotations

from typing import Any, Dict, Optional

# Constraint name a store reports when an email is already registered
ACCOUNT_EMAIL_CONSTRAINT = "account_email_key"


class StorageError(Exception):
    """Raised when a store cannot complete a read or write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message, detail)
        self.constraint = constraint


__all__ = ["ACCOUNT_EMAIL_CONSTRAINT", "StorageError", "ConstraintViolation"]
