"""
Account security flows: registration, email verification, login, refresh rotation,
logout and password reset.

Each mutating flow commits once, before it returns, so it either applies all of
its writes or none and a failed commit reaches the caller as an error. Refresh
rotation (revoke old, issue new) therefore commits atomically. Notifications
are submitted only after the commit that persisted their token.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.auth import create_access_token, hash_password, verify_password
from app.core.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    TokenAlreadyUsedError,
    UnauthorizedError,
)
from app.models.user import User
from app.schemas.auth import (
    PENDING_VERIFICATION,
    AuthResponse,
    LoginBody,
    RegisterBody,
    UserOut,
    VerificationResult,
)
from app.services import token_ledger
from app.services.notifications import (
    NotificationDispatcher,
    render_password_reset_email,
    render_verification_email,
)
from app.services.token_ledger import EMAIL_VERIFICATION, PASSWORD_RESET, REFRESH

logger = logging.getLogger(__name__)

AUTH_EVENTS = Counter("auth_events_total", "Auth flow outcomes", ["event"])

DEFAULT_ROLE = "USER"
INVALID_CREDENTIALS = "Invalid email or password"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def access_token_expires_in() -> int:
    return settings.access_token_expire_minutes * 60


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    r = await session.execute(select(User).where(User.email == normalize_email(email)))
    return r.scalar_one_or_none()


def _user_out(user: User) -> UserOut:
    return UserOut(id=user.id, email=user.email, username=user.username)


async def _issue_session_tokens(session: AsyncSession, user: User) -> AuthResponse:
    """Fresh access token plus a stored refresh token for user."""
    access = create_access_token(user.email, {"uid": user.id, "role": user.role})
    refresh = await token_ledger.issue_token(
        session, REFRESH, user, timedelta(days=settings.refresh_token_expire_days)
    )
    return AuthResponse(
        access_token=access,
        refresh_token=refresh,
        expires_in=access_token_expires_in(),
        user=_user_out(user),
    )


async def register(
    session: AsyncSession,
    body: RegisterBody,
    notifier: NotificationDispatcher,
) -> AuthResponse:
    email = normalize_email(body.email)
    password = body.password or ""
    if not email or not password:
        raise BadRequestError("Email and password required")
    if await get_user_by_email(session, email) is not None:
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        username=(body.username or "").strip() or None,
        password_hash=hash_password(password),
        role=DEFAULT_ROLE,
        enabled=False,
    )
    session.add(user)
    try:
        await session.flush()
    except IntegrityError as e:
        logger.warning("Register IntegrityError: %s", e)
        raise ConflictError("Email already registered") from e

    token = await token_ledger.issue_token(
        session,
        EMAIL_VERIFICATION,
        user,
        timedelta(hours=settings.email_verification_expire_hours),
    )
    await session.commit()
    notifier.submit(render_verification_email(user.email, token))
    AUTH_EVENTS.labels(event="register").inc()
    logger.info("Registered user_id=%s (pending verification)", user.id)
    return AuthResponse(
        access_token=PENDING_VERIFICATION,
        refresh_token=None,
        user=_user_out(user),
        message="Registration successful. Please verify your email",
    )


async def verify_email(session: AsyncSession, token: str) -> VerificationResult:
    """Enable the account behind token. A token that was already used answers already_verified=True."""
    record = await token_ledger.find_token(session, EMAIL_VERIFICATION, (token or "").strip())
    if record is None:
        raise InvalidTokenError(EMAIL_VERIFICATION.invalid_message)
    user = await session.get(User, record.user_id)
    if user is None:
        raise InvalidTokenError(EMAIL_VERIFICATION.invalid_message)

    already_verified = VerificationResult(
        success=True,
        already_verified=True,
        email=user.email,
        message="Email already verified. You can now log in.",
    )
    if token_ledger.is_spent(EMAIL_VERIFICATION, record):
        return already_verified
    token_ledger.check_token(EMAIL_VERIFICATION, record)
    try:
        await token_ledger.mark_spent(session, EMAIL_VERIFICATION, record)
    except TokenAlreadyUsedError:
        # A concurrent click consumed it first
        return already_verified

    user.enabled = True
    await session.commit()
    AUTH_EVENTS.labels(event="verify_email").inc()
    logger.info("Email verified for user_id=%s", user.id)
    return VerificationResult(
        success=True,
        already_verified=False,
        email=user.email,
        message="Email has been successfully verified! You can now log in.",
    )


async def login(session: AsyncSession, body: LoginBody) -> AuthResponse:
    email = normalize_email(body.email)
    password = body.password or ""
    if not email or not password:
        raise UnauthorizedError("Email and password required")
    user = await get_user_by_email(session, email)
    if user is None or not verify_password(password, user.password_hash):
        AUTH_EVENTS.labels(event="login_failed").inc()
        raise UnauthorizedError(INVALID_CREDENTIALS)
    if not user.enabled:
        AUTH_EVENTS.labels(event="login_disabled").inc()
        raise ForbiddenError("Account is not verified. Please verify your email")

    if settings.revoke_sessions_on_login:
        revoked = await token_ledger.revoke_all_refresh_tokens(session, user.id)
        if revoked:
            logger.info("Login revoked %s earlier refresh token(s) for user_id=%s", revoked, user.id)
    response = await _issue_session_tokens(session, user)
    await session.commit()
    AUTH_EVENTS.labels(event="login").inc()
    return response


async def refresh(session: AsyncSession, refresh_token: str) -> AuthResponse:
    """Exchange a refresh token for a new pair; the presented token is revoked (rotation)."""
    token = (refresh_token or "").strip()
    if not token:
        raise InvalidTokenError("Refresh token required", status_code=401)
    record = await token_ledger.consume_token(session, REFRESH, token, status_code=401)
    user = await session.get(User, record.user_id)
    if user is None:
        raise InvalidTokenError("User not found", status_code=401)
    response = await _issue_session_tokens(session, user)
    await session.commit()
    AUTH_EVENTS.labels(event="refresh").inc()
    return response


async def logout(session: AsyncSession, refresh_token: str | None) -> None:
    """Revoke the refresh token if it exists. Unknown tokens are ignored."""
    found = await token_ledger.revoke_token(session, (refresh_token or "").strip())
    await session.commit()
    AUTH_EVENTS.labels(event="logout").inc()
    if not found:
        logger.debug("Logout with unknown refresh token")


async def forgot_password(
    session: AsyncSession,
    email: str,
    notifier: NotificationDispatcher,
) -> None:
    user = await get_user_by_email(session, email)
    if user is None:
        raise NotFoundError("No account registered with this email")
    # issue_token replaces any outstanding reset token of this user
    token = await token_ledger.issue_token(
        session,
        PASSWORD_RESET,
        user,
        timedelta(minutes=settings.password_reset_expire_minutes),
    )
    await session.commit()
    notifier.submit(render_password_reset_email(user.email, token))
    AUTH_EVENTS.labels(event="forgot_password").inc()
    logger.info("Password reset requested for user_id=%s", user.id)


async def validate_reset_token(session: AsyncSession, token: str) -> bool:
    """Read-only check used by the reset form; does not consume the token."""
    record = await token_ledger.find_token(session, PASSWORD_RESET, (token or "").strip())
    if record is None:
        raise InvalidTokenError("Invalid reset token")
    token_ledger.check_token(PASSWORD_RESET, record)
    return True


async def reset_password(session: AsyncSession, token: str, new_password: str) -> None:
    if not new_password:
        raise BadRequestError("New password required")
    record = await token_ledger.consume_token(session, PASSWORD_RESET, (token or "").strip())
    user = await session.get(User, record.user_id)
    if user is None:
        raise InvalidTokenError(PASSWORD_RESET.invalid_message)
    user.password_hash = hash_password(new_password)
    await session.commit()
    AUTH_EVENTS.labels(event="reset_password").inc()
    logger.info("Password reset for user_id=%s", user.id)
