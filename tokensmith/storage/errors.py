from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A credential-store write broke a uniqueness or ownership rule.

    Raised for a username that is already registered (``{"field": "username"}``),
    a refresh token value that already exists (``{"field": "value"}``), or a
    refresh token whose owning user is missing (``{"user_id": ...}``).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
