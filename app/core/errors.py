"""Domain errors raised by the auth services and mapped to HTTP responses in app.api.errors."""

from __future__ import annotations


class AuthError(Exception):
    """Base class: caller-input problems, reported synchronously and never retried."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(AuthError):
    status_code = 400
    error_code = "bad_request"


class ConflictError(AuthError):
    """Duplicate registration (409)."""

    status_code = 409
    error_code = "conflict"


class UnauthorizedError(AuthError):
    """Bad credentials or missing identity (401)."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(AuthError):
    """Disabled (unverified) account (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(AuthError):
    status_code = 404
    error_code = "not_found"


class InvalidTokenError(AuthError):
    """Token does not resolve to any record, or its signature is invalid."""

    error_code = "invalid_token"


class TokenExpiredError(AuthError):
    error_code = "token_expired"


class TokenAlreadyUsedError(AuthError):
    error_code = "token_used"


class TokenRevokedError(TokenAlreadyUsedError):
    error_code = "token_revoked"


class RateLimitExceededError(AuthError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "Too many requests. Kindly try again later.", *, retry_after: int = 1) -> None:
        super().__init__(message)
        self.retry_after = max(1, retry_after)


__all__ = [
    "AuthError",
    "BadRequestError",
    "ConflictError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenAlreadyUsedError",
    "TokenRevokedError",
    "RateLimitExceededError",
]
