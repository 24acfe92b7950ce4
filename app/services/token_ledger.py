"""
Persistent opaque tokens: refresh, email verification and password reset.

Only the SHA-256 digest of a token is stored. Every kind has a single-use flag
(refresh: revoked, verification/reset: used); consuming flips it with a
conditional UPDATE so at most one concurrent consumer succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.core.auth import generate_opaque_token, hash_token
from app.core.errors import (
    InvalidTokenError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenRevokedError,
)
from app.db.base import Base
from app.models.email_verification_token import EmailVerificationToken
from app.models.password_reset_token import PasswordResetToken
from app.models.refresh_token import RefreshToken
from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenKind:
    name: str
    model: type[Base]
    flag: str
    # Issuing deletes the user's previous token of this kind
    single_outstanding: bool
    spent_error: type[TokenAlreadyUsedError]
    invalid_message: str
    expired_message: str
    spent_message: str


REFRESH = TokenKind(
    name="refresh",
    model=RefreshToken,
    flag="revoked",
    single_outstanding=False,
    spent_error=TokenRevokedError,
    invalid_message="Invalid refresh token",
    expired_message="Refresh token expired",
    spent_message="Refresh token revoked",
)
EMAIL_VERIFICATION = TokenKind(
    name="email_verification",
    model=EmailVerificationToken,
    flag="used",
    single_outstanding=True,
    spent_error=TokenAlreadyUsedError,
    invalid_message="Invalid verification token",
    expired_message="Verification link has expired. Request a new one",
    spent_message="Email already verified",
)
PASSWORD_RESET = TokenKind(
    name="password_reset",
    model=PasswordResetToken,
    flag="used",
    single_outstanding=True,
    spent_error=TokenAlreadyUsedError,
    invalid_message="Invalid or expired reset token",
    expired_message="Reset token has expired",
    spent_message="Reset token has already been used",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; stored values are always UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def is_expired(record, now: datetime | None = None) -> bool:
    return as_utc(record.expires_at) <= (now or utcnow())


def is_spent(kind: TokenKind, record) -> bool:
    return bool(getattr(record, kind.flag))


async def issue_token(session: AsyncSession, kind: TokenKind, user: User, ttl: timedelta) -> str:
    """Persist a new token for user; return the plain value (only the hash is stored)."""
    model = kind.model
    if kind.single_outstanding:
        await session.execute(delete(model).where(model.user_id == user.id))
    plain = generate_opaque_token()
    session.add(
        model(
            user_id=user.id,
            token_hash=hash_token(plain),
            expires_at=utcnow() + ttl,
        )
    )
    await session.flush()
    logger.debug("Issued %s token for user_id=%s", kind.name, user.id)
    return plain


async def find_token(session: AsyncSession, kind: TokenKind, plain: str | None):
    if not plain:
        return None
    model = kind.model
    r = await session.execute(select(model).where(model.token_hash == hash_token(plain)))
    return r.scalar_one_or_none()


def check_token(kind: TokenKind, record, *, status_code: int | None = None) -> None:
    """Raise if record is spent (checked first) or expired."""
    if is_spent(kind, record):
        raise kind.spent_error(kind.spent_message, status_code=status_code)
    if is_expired(record):
        raise TokenExpiredError(kind.expired_message, status_code=status_code)


async def consume_token(
    session: AsyncSession,
    kind: TokenKind,
    plain: str | None,
    *,
    status_code: int | None = None,
):
    """Mark the token spent and return its record.

    Raises InvalidTokenError (absent), the kind's spent error (already used or
    revoked, including losing a concurrent race) or TokenExpiredError.
    """
    record = await find_token(session, kind, plain)
    if record is None:
        raise InvalidTokenError(kind.invalid_message, status_code=status_code)
    check_token(kind, record, status_code=status_code)
    await mark_spent(session, kind, record, status_code=status_code)
    return record


async def mark_spent(
    session: AsyncSession,
    kind: TokenKind,
    record,
    *,
    status_code: int | None = None,
) -> None:
    """Atomically flip the single-use flag; raise the spent error if another consumer got there first."""
    model = kind.model
    flag_column = getattr(model, kind.flag)
    result = await session.execute(
        update(model)
        .where(model.id == record.id, flag_column.is_(False))
        .values({kind.flag: True})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise kind.spent_error(kind.spent_message, status_code=status_code)
    set_committed_value(record, kind.flag, True)


async def revoke_token(session: AsyncSession, plain: str | None) -> bool:
    """Revoke a refresh token. Returns False when no such token exists."""
    if not plain:
        return False
    result = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.token_hash == hash_token(plain))
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def revoke_all_refresh_tokens(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def purge_expired_tokens(session: AsyncSession, now: datetime | None = None) -> int:
    """Delete expired refresh and password reset records.

    Verification records are kept: an old link must still answer "already verified".
    """
    now = now or utcnow()
    removed = 0
    for model in (RefreshToken, PasswordResetToken):
        result = await session.execute(
            delete(model).where(model.expires_at < now).execution_options(synchronize_session=False)
        )
        removed += result.rowcount
    return removed
