from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries the HTTP status_code and a stable error_code so the
    HTTP layer can translate it without inspecting messages:
    - unauthorized (401)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Bad credentials, unusable refresh token or unverifiable access token (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Duplicate username or a repeated in-flight attempt (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class KeyStorageError(ServerError):
    """Signing key storage is unreadable, empty, or key generation failed."""
    error_code = "key_storage_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ConflictError",
    "ServerError",
    "KeyStorageError",
]
