from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a user-record uniqueness constraint (email, google id) is violated."""

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
        if field:
            self.detail.setdefault("field", field)
        self.field = field


__all__ = ["ConstraintViolation"]
