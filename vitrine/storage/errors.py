from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique or foreign-key constraint rejected an admin, token, or challenge write."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if field:
            self.detail.setdefault("field", field)


__all__ = ["ConstraintViolation"]
