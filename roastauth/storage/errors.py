from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or reference rule of the user/session store was broken."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class DuplicateProviderLink(ConstraintViolation):
    """A user already has an identity linked for this provider, or the identity
    belongs to somebody else."""


__all__ = ["ConstraintViolation", "DuplicateProviderLink"]
