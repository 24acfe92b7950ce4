"""User endpoints for the authenticated caller."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import AuthenticatedIdentity, get_current_identity
from app.core.errors import UnauthorizedError
from app.db.session import get_db
from app.models.user import User
from app.schemas.auth import ProfileOut

router = APIRouter(prefix="/users", tags=["users"])


@router.get(
    "/me",
    response_model=ProfileOut,
    summary="Profile of the current authenticated user",
    responses={
        401: {"description": "Not authenticated or invalid token"},
        403: {"description": "Account disabled"},
    },
)
async def get_profile(
    session: Annotated[AsyncSession, Depends(get_db)],
    identity: Annotated[AuthenticatedIdentity, Depends(get_current_identity)],
) -> ProfileOut:
    user = await session.get(User, identity.id)
    if user is None:
        raise UnauthorizedError("User not found")
    return ProfileOut(
        id=user.id,
        username=user.username,
        email=user.email,
        enabled=user.enabled,
        role=user.role,
    )
