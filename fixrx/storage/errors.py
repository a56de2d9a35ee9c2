from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique column (email, phone, auth0_id) already holds the value."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = dict(detail or {})
        if field:
            self.detail.setdefault("field", field)


__all__ = ["ConstraintViolation"]
