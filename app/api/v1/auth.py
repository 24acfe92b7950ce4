"""Auth: register, verify email, login, refresh, logout, forgot/reset password."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_notifier
from app.core.errors import AuthError
from app.core.rate_limit import sensitive_limit
from app.db.session import get_db
from app.schemas.auth import (
    AuthResponse,
    ForgotPasswordBody,
    LoginBody,
    LogoutBody,
    MessageResponse,
    RefreshBody,
    RegisterBody,
    ResetPasswordBody,
    ResetTokenValidation,
    VerificationResult,
)
from app.services import auth_service
from app.services.notifications import NotificationDispatcher

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/register",
    response_model=AuthResponse,
    summary="Register a new user (disabled until the email is verified)",
    responses={
        400: {"description": "Email and password required"},
        409: {"description": "Email already registered"},
    },
)
async def register(
    session: Annotated[AsyncSession, Depends(get_db)],
    notifier: Annotated[NotificationDispatcher, Depends(get_notifier)],
    body: RegisterBody,
) -> AuthResponse:
    return await auth_service.register(session, body, notifier)


@router.get(
    "/verify",
    response_model=VerificationResult,
    summary="Verify email address with the token from the verification link",
    responses={400: {"description": "Invalid or expired verification token"}},
)
async def verify_email(
    session: Annotated[AsyncSession, Depends(get_db)],
    token: Annotated[str, Query()],
) -> VerificationResult:
    return await auth_service.verify_email(session, token)


@router.post(
    "/login",
    response_model=AuthResponse,
    summary="Login with email and password",
    responses={
        401: {"description": "Invalid email or password"},
        403: {"description": "Email not verified"},
        429: {"description": "Too many requests"},
    },
)
@sensitive_limit
async def login(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
    body: LoginBody,
) -> AuthResponse:
    return await auth_service.login(session, body)


@router.post(
    "/refresh",
    response_model=AuthResponse,
    summary="Exchange refresh token for new access and refresh tokens",
    responses={
        401: {"description": "Refresh token required, invalid, expired or revoked"},
        429: {"description": "Too many requests"},
    },
)
@sensitive_limit
async def refresh_tokens(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
    body: RefreshBody,
) -> AuthResponse:
    """Exchange refresh_token for new access_token and refresh_token (rotation)."""
    return await auth_service.refresh(session, body.refresh_token)


@router.post("/logout", response_model=MessageResponse, summary="Revoke a refresh token")
async def logout(
    session: Annotated[AsyncSession, Depends(get_db)],
    body: LogoutBody,
) -> MessageResponse:
    await auth_service.logout(session, body.refresh_token)
    return MessageResponse(message="Logged out successfully")


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    summary="Email a password reset link",
    responses={
        404: {"description": "No account with this email"},
        429: {"description": "Too many requests"},
    },
)
@sensitive_limit
async def forgot_password(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
    notifier: Annotated[NotificationDispatcher, Depends(get_notifier)],
    body: ForgotPasswordBody,
) -> MessageResponse:
    await auth_service.forgot_password(session, body.email, notifier)
    return MessageResponse(message="Password reset link has been sent to your email")


@router.get(
    "/reset-password/validate",
    response_model=ResetTokenValidation,
    summary="Check a reset token without using it",
    responses={400: {"description": "Token invalid, used or expired", "model": ResetTokenValidation}},
)
async def validate_reset_token(
    session: Annotated[AsyncSession, Depends(get_db)],
    token: Annotated[str, Query()],
):
    try:
        valid = await auth_service.validate_reset_token(session, token)
    except AuthError as e:
        return JSONResponse(
            status_code=e.status_code,
            content=ResetTokenValidation(valid=False, message=e.message).model_dump(),
        )
    return ResetTokenValidation(valid=valid, message="Token is valid")


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    summary="Set a new password using a reset token",
    responses={400: {"description": "Token invalid, used or expired"}},
)
async def reset_password(
    session: Annotated[AsyncSession, Depends(get_db)],
    body: ResetPasswordBody,
) -> MessageResponse:
    await auth_service.reset_password(session, body.token, body.new_password)
    return MessageResponse(message="Password reset successful")
