from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule rejected a write.

    ``constraint`` names the violated rule (``user_email``,
    ``user_session_active``, ``user_fk``...) so services can translate a lost
    race into the matching response code.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.constraint = constraint
        self.detail = detail or {}


class RecordNotFound(LookupError):
    """A write targeted a row that does not exist."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


__all__ = ["ConstraintViolation", "RecordNotFound"]
