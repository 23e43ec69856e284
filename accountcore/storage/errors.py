from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated.

    ``detail["field"]`` names the offending column (``email`` or ``phone``).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class NotFound(Exception):
    """Raised when a mutation targets a record that does not exist."""


__all__ = ["ConstraintViolation", "NotFound"]
