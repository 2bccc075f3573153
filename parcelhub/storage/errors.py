from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base for failures raised by the durable user store or the session cache."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness rule (email, normalized email) rejected the write."""


class NotFoundInStore(StorageError):
    """The addressed user row does not exist."""


class StoreUnavailable(StorageError):
    """The backing database or cache could not be reached."""


__all__ = ["StorageError", "ConstraintViolation", "NotFoundInStore", "StoreUnavailable"]
