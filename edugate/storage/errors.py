from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write refused by a unique or foreign-key constraint.

    ``detail`` names the offending column (``{"field": "email"}``) or the
    missing parent row (``{"user_id": ...}``). The API answers 409.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")
