from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated.

    ``detail["fields"]`` names the colliding columns (``email``, ``username``,
    ``provider_id``) so callers can report which identifier is taken.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def fields(self) -> list[str]:
        return list(self.detail.get("fields") or [])


__all__ = ["ConstraintViolation"]
