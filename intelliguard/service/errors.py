from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` and the HTTP status a
    binding should answer with. Codes:
    - validation_error (400)
    - invalid_verification_token (400)
    - invalid_credentials, invalid_refresh_token, invalid_access_token (401)
    - account_deleted (403)
    - not_found (404)
    - duplicate_account (409)
    - account_locked (423)
    - configuration_error, server_error (500)
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

    @property
    def retriable(self) -> bool:
        return self.status_code < 500


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown e-mail or wrong password; the two are never told apart."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token unknown, revoked or expired; the three are never told apart."""
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidAccessTokenError(AuthenticationError):
    error_code = "invalid_access_token"

    def __init__(self, message: str = "invalid access token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidVerificationTokenError(ValidationError):
    error_code = "invalid_verification_token"

    def __init__(self, message: str = "invalid verification token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDeletedError(ForbiddenError):
    error_code = "account_deleted"

    def __init__(self, message: str = "account has been deleted", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Lockout window active (423); detail carries the unlock time."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, message: str = "account is locked") -> None:
        super().__init__(message, detail={"locked_until": locked_until.isoformat()})
        self.locked_until = locked_until


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateAccountError(ConflictError):
    error_code = "duplicate_account"

    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Deployment is missing something the service needs; not user-retriable."""
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidRefreshTokenError",
    "InvalidAccessTokenError",
    "InvalidVerificationTokenError",
    "ForbiddenError",
    "AccountDeletedError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "DuplicateAccountError",
    "ServerError",
    "ConfigurationError",
]
