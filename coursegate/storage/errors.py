from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key constraint rejected a write.

    ``constraint`` names the logical constraint (``"email"``,
    ``"oauth_account"``, ``"principal"``) so callers can translate it into
    the matching domain error without parsing driver messages.
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
        self.detail = detail or {}
        self.constraint = constraint


__all__ = ["ConstraintViolation"]
