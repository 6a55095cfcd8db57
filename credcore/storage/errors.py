from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for faults raised by a credential store backend."""


class ConstraintViolation(StorageError):
    """Raised when a uniqueness or FK constraint of the credential store is violated.

    ``field`` names the colliding column (``username``, ``email``,
    ``service_name``, ``api_key_hash``, ``token``) so callers can translate
    the violation into a specific service error.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.field = field or self.detail.get("field")


__all__ = ["StorageError", "ConstraintViolation"]
