from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for credential-engine failures a caller can act on.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer transport can surface distinct, user-visible
    failure reasons without inspecting messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Presented credential is missing, wrong, or no longer valid (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested principal does not exist (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Principal already exists (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"
    default_message = "Invalid username or password"


class UserNotFound(NotFoundError):
    error_code = "user_not_found"
    default_message = "User not found"


class UsernameExists(ConflictError):
    error_code = "username_exists"
    default_message = "Username already exists"


class EmailExists(ConflictError):
    error_code = "email_exists"
    default_message = "Email already exists"


class ServiceAccountNotFound(NotFoundError):
    error_code = "service_account_not_found"
    default_message = "Service account not found"


class ServiceAccountInactive(AuthenticationError):
    error_code = "service_account_inactive"
    default_message = "Service account is inactive"


class ServiceAccountExists(ConflictError):
    error_code = "service_account_exists"
    default_message = "An active service account with this name already exists"


class InvalidRefreshToken(AuthenticationError):
    error_code = "invalid_refresh_token"
    default_message = "Invalid refresh token"


class RefreshTokenRevoked(AuthenticationError):
    error_code = "refresh_token_revoked"
    default_message = "Refresh token has been revoked"


class RefreshTokenExpired(AuthenticationError):
    error_code = "refresh_token_expired"
    default_message = "Refresh token has expired"


class InvalidApiKey(AuthenticationError):
    error_code = "invalid_api_key"
    default_message = "Invalid API key"


class MalformedToken(AuthenticationError):
    error_code = "malformed_token"
    default_message = "Invalid token"


class TokenExpired(AuthenticationError):
    error_code = "token_expired"
    default_message = "Token has expired"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "InvalidCredentials",
    "UserNotFound",
    "UsernameExists",
    "EmailExists",
    "ServiceAccountNotFound",
    "ServiceAccountInactive",
    "ServiceAccountExists",
    "InvalidRefreshToken",
    "RefreshTokenRevoked",
    "RefreshTokenExpired",
    "InvalidApiKey",
    "MalformedToken",
    "TokenExpired",
]
