"""Map domain errors, rate-limit rejections and unexpected failures to JSON responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.core.errors import AuthError, RateLimitExceededError
from app.core.rate_limit import rate_limit_error

logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str, code: str, headers: dict | None = None, **extra) -> JSONResponse:
    content = {"detail": message, "code": code, **extra}
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def auth_error_response(request: Request, exc: AuthError) -> JSONResponse:
    logger.warning(
        "%s %s -> %s %s: %s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.error_code,
        exc.message,
    )
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    return error_response(exc.status_code, exc.message, exc.error_code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        return auth_error_response(request, exc)

    # Must stay sync: SlowAPIMiddleware swaps coroutine handlers for slowapi's default one
    @app.exception_handler(RateLimitExceeded)
    def handle_rate_limited(request: Request, exc: RateLimitExceeded):
        return auth_error_response(request, rate_limit_error(request, exc))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        extra = {}
        if settings.debug:
            extra["error"] = f"{type(exc).__name__}: {exc}"
        return error_response(500, "Internal server error", "server_error", **extra)
