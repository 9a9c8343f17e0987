from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a stable ``error_code`` and the HTTP
    ``status_code`` the boundary layer should answer with. Messages are
    safe to show to end users; ``detail`` holds structured extras.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "authentication required"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "access denied"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"
    default_message = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"
    default_message = "too many requests, please try again later"

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 60) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"
    default_message = "internal server error"


# Authentication domain


class InvalidCredentialsError(AuthenticationError):
    # Same code for unknown email and wrong password
    error_code = "INVALID_CREDENTIALS"
    default_message = "invalid email or password"


class UnauthorizedError(AuthenticationError):
    error_code = "UNAUTHORIZED"
    default_message = "authentication required"


class SessionInvalidError(AuthenticationError):
    error_code = "SESSION_INVALID"
    default_message = "session is invalid or has expired"


class EmailAlreadyExistsError(ConflictError):
    error_code = "EMAIL_ALREADY_EXISTS"
    default_message = "an account with this email already exists"


class AccountNotFoundError(NotFoundError):
    error_code = "ACCOUNT_NOT_FOUND"
    default_message = "account not found"


class PasswordResetRequiredError(ForbiddenError):
    error_code = "PASSWORD_RESET_REQUIRED"
    default_message = "a password reset is required before signing in"


class AdminAccountInactiveError(ForbiddenError):
    error_code = "ADMIN_ACCOUNT_INACTIVE"
    default_message = "this staff account has been deactivated"


class InsufficientRoleError(ForbiddenError):
    error_code = "INSUFFICIENT_ROLE"
    default_message = "insufficient role for this action"


class CannotDeactivateSelfError(ValidationError):
    error_code = "CANNOT_DEACTIVATE_SELF"
    default_message = "staff members cannot deactivate their own account"


# Password reset


class TokenInvalidError(ValidationError):
    error_code = "TOKEN_INVALID"
    default_message = "reset token is invalid or has expired"


class PasswordResetMaxAttemptsError(ValidationError):
    error_code = "PASSWORD_RESET_MAX_ATTEMPTS"
    default_message = "too many attempts, please request a new reset link"


class PasswordSameAsOldError(ValidationError):
    error_code = "PASSWORD_SAME_AS_OLD"
    default_message = "new password must be different from the current password"


# OAuth


class OAuthStateInvalidError(ValidationError):
    error_code = "OAUTH_STATE_INVALID"
    default_message = "oauth state is invalid or has expired"


class OAuthProviderError(ValidationError):
    error_code = "OAUTH_PROVIDER_ERROR"
    default_message = "oauth provider request failed"


class OAuthEmailRequiredError(ValidationError):
    error_code = "OAUTH_EMAIL_REQUIRED"
    default_message = "a verified email address is required"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "SessionInvalidError",
    "EmailAlreadyExistsError",
    "AccountNotFoundError",
    "PasswordResetRequiredError",
    "AdminAccountInactiveError",
    "InsufficientRoleError",
    "CannotDeactivateSelfError",
    "TokenInvalidError",
    "PasswordResetMaxAttemptsError",
    "PasswordSameAsOldError",
    "OAuthStateInvalidError",
    "OAuthProviderError",
    "OAuthEmailRequiredError",
]
