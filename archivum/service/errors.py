from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. Messages are fixed, client-safe strings:
    credential, token and 2FA failures never describe which check failed.
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


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidOrExpiredTokenError(ServiceError):
    """Signature failure, expiry, or refresh/reset token miss (401).

    Deliberately undifferentiated so callers cannot probe which one happened.
    """
    status_code = 401
    error_code = "invalid_token"


class InvalidTwoFactorCodeError(ServiceError):
    """Submitted TOTP code did not verify (400)."""
    status_code = 400
    error_code = "invalid_two_factor_code"


class UnauthorizedError(ServiceError):
    """No identity attached to the request (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Wrong token tier or insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class UserNotFoundError(ServiceError):
    """Referenced user does not exist (404)."""
    status_code = 404
    error_code = "not_found"


class DuplicateEmailError(ServiceError):
    """Email already registered (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class EmailDeliveryError(ServiceError):
    """Outbound email could not be delivered (502)."""
    status_code = 502
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "InvalidTwoFactorCodeError",
    "UnauthorizedError",
    "ForbiddenError",
    "UserNotFoundError",
    "DuplicateEmailError",
    "RateLimitedError",
    "EmailDeliveryError",
]
