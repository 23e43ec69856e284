from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-core exceptions.

    Each subclass carries a transport-neutral ``status_code`` plus a stable
    ``error_code`` so an outer HTTP layer can map failures without parsing
    messages. ``message`` is always safe to show to the caller; internals go
    to the log, never into the message.
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(ValidationError):
    error_code = "weak_password"


class InvalidTokenError(ValidationError):
    """Email-verification or password-reset token is unknown, used or expired."""
    error_code = "invalid_token"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidPasswordError(AuthenticationError):
    error_code = "invalid_password"


class TokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class TokenMalformedError(TokenError):
    error_code = "token_malformed"


class TokenBadSignatureError(TokenMalformedError):
    error_code = "token_bad_signature"


class TokenWrongTypeError(TokenError):
    error_code = "token_wrong_type"


class TokenRevokedError(TokenError):
    error_code = "token_revoked"


class TwoFactorRequiredError(AuthenticationError):
    error_code = "two_factor_required"


class InvalidTwoFactorCodeError(AuthenticationError):
    error_code = "invalid_two_factor_code"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Too many failed attempts; ``retry_after_seconds`` says when to try again."""

    error_code = "account_locked"

    def __init__(self, retry_after_seconds: int, *, message: Optional[str] = None, detail: Optional[dict] = None) -> None:
        super().__init__(
            message or "Account temporarily locked due to too many failed attempts",
            detail={**(detail or {}), "retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"


class ApprovalPendingError(ForbiddenError):
    error_code = "approval_pending"


class ApprovalRejectedError(ForbiddenError):
    error_code = "approval_rejected"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"


class TwoFactorStateError(ConflictError):
    """2FA operation not valid for the account's current enrollment state."""
    error_code = "two_factor_state"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "InvalidTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidPasswordError",
    "TokenError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenBadSignatureError",
    "TokenWrongTypeError",
    "TokenRevokedError",
    "TwoFactorRequiredError",
    "InvalidTwoFactorCodeError",
    "ForbiddenError",
    "AccountLockedError",
    "AccountInactiveError",
    "EmailNotVerifiedError",
    "ApprovalPendingError",
    "ApprovalRejectedError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "TwoFactorStateError",
    "RateLimitedError",
    "ServerError",
]
