"""FastAPI dependencies: caller identity from the bearer token, notifier."""

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import is_token_valid_for, verify_access_token
from app.core.errors import AuthError, ForbiddenError, UnauthorizedError
from app.db.session import get_db
from app.models.user import User
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """What authorization needs to know about the caller; not the persisted User."""

    id: int
    email: str
    role: str
    enabled: bool


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        return None
    return auth_header[len(BEARER_PREFIX):].strip() or None


async def resolve_identity(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> AuthenticatedIdentity | None:
    """Authenticate the request from its bearer token; None means anonymous.

    Missing or malformed headers, bad or expired tokens and unknown subjects are
    all anonymous: rejecting is left to the route's authorization.
    """
    token = bearer_token(request)
    if token is None:
        return None
    try:
        email = verify_access_token(token)
    except AuthError as e:
        logger.debug("Ignoring bearer token: %s", e.message)
        return None
    r = await session.execute(select(User).where(User.email == email))
    user = r.scalar_one_or_none()
    if user is None or not is_token_valid_for(token, user.email):
        return None
    identity = AuthenticatedIdentity(id=user.id, email=user.email, role=user.role, enabled=user.enabled)
    request.state.identity = identity
    return identity


async def get_current_identity(
    identity: Annotated[AuthenticatedIdentity | None, Depends(resolve_identity)],
) -> AuthenticatedIdentity:
    if identity is None:
        raise UnauthorizedError("Not authenticated")
    if not identity.enabled:
        raise ForbiddenError("Account is disabled")
    return identity


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifications
