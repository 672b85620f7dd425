from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - conflict (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None

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
        self.detail = dict(detail or {})
        if self.reason and "reason" not in self.detail:
            self.detail["reason"] = self.reason


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    reason = "invalid_input"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation.

    Reported as 400 so clients treat it like any other rejected input.
    """
    status_code = 400
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DuplicateAccountError(ConflictError):
    reason = "duplicate_account"


class AccountNotFoundError(NotFoundError):
    reason = "account_not_found"


class AlreadyVerifiedError(ValidationError):
    reason = "already_verified"


class WeakPasswordError(ValidationError):
    reason = "weak_password"


class CodeExpiredError(AuthenticationError):
    """The submitted code matched nothing usable because its window closed."""
    reason = "code_expired"


class CodeInvalidError(AuthenticationError):
    reason = "code_invalid"


class UnverifiedAccountError(ForbiddenError):
    """Correct credentials but the email address was never confirmed."""
    reason = "unverified_account"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "DuplicateAccountError",
    "AccountNotFoundError",
    "AlreadyVerifiedError",
    "WeakPasswordError",
    "CodeExpiredError",
    "CodeInvalidError",
    "UnverifiedAccountError",
]
