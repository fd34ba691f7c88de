from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``detail["field"]`` names the offending column (``email``, ``card_number``,
    ``user_id``) so callers can translate the conflict without parsing text.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeout(Exception):
    """Raised when the backing store does not answer within its time bound."""


__all__ = ["ConstraintViolation", "StoreTimeout"]
