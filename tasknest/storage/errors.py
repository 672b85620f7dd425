from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or ownership constraint rejected a write.

    ``field`` names the offending column when the backend can tell, so the
    service layer can translate e.g. a duplicate ``email`` into a domain error.
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


__all__ = ["ConstraintViolation"]
