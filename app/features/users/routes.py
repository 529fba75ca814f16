"""
User feature routes.

Outside their own profile, users only see people they share an active
organization with, unless they hold the SYSTEM view_all_users permission.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, exists, or_
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.schemas import UserResponse, UserPublic, UserSummary, UserUpdate
from app.features.users.dependencies import get_current_user
from app.features.permissions.models import OrganizationRole
from app.features.permissions.dependencies import (
    PermissionContext,
    has_permission,
    require_system_permission,
    active_assignment_clause,
    create_audit_log,
)
from app.utils import get_logger, utcnow


log = get_logger(__name__)
router = APIRouter(tags=["users"])


def _shares_organization_with(viewer_id: str):
    """SQL condition: the User row holds an active role in one of the viewer's organizations."""
    now = utcnow()
    theirs = aliased(OrganizationRole)
    mine = aliased(OrganizationRole)
    return exists(
        select(theirs.id)
        .join(mine, mine.organization_id == theirs.organization_id)
        .where(
            theirs.user_id == User.id,
            mine.user_id == viewer_id,
            active_assignment_clause(now, theirs),
            active_assignment_clause(now, mine),
        )
    )


async def _can_view_all_users(db: AsyncSession, user: User) -> bool:
    return await has_permission(db, user.id, "view_all_users", PermissionContext.system())


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.patch("/me", response_model=UserResponse)
async def update_current_user_profile(
    update_data: UserUpdate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Update current user's profile. Send avatar_url as null to clear it."""
    changes = update_data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(user, field, value)

    await db.commit()
    await db.refresh(user)
    return user


@router.get("/{user_id}", response_model=UserPublic)
async def get_user_by_id(
    user_id: str,
    viewer: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Get a public user profile.

    Users outside the caller's organizations are reported as not found
    rather than forbidden, so IDs cannot be probed.
    """
    stmt = select(User).where(User.id == user_id)
    if user_id != viewer.id and not await _can_view_all_users(db, viewer):
        stmt = stmt.where(_shares_organization_with(viewer.id))

    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return user


@router.get("/", response_model=list[UserSummary])
async def list_users(
    viewer: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50,
    include_inactive: bool = False
):
    """
    List users visible to the caller, ordered by name.

    include_inactive only takes effect for holders of view_all_users.
    """
    sees_everyone = await _can_view_all_users(db, viewer)

    stmt = select(User)
    if sees_everyone:
        if not include_inactive:
            stmt = stmt.where(User.is_active.is_(True))
    else:
        stmt = stmt.where(
            User.is_active.is_(True),
            or_(User.id == viewer.id, _shares_organization_with(viewer.id)),
        )

    result = await db.execute(
        stmt.order_by(User.name, User.id).offset(skip).limit(min(limit, 200))
    )
    return result.scalars().all()


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: str,
    request: Request,
    admin: Annotated[User, Depends(require_system_permission("manage_all_users"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Deactivate a user account. Requires SYSTEM manage_all_users."""
    user = await db.get(User, user_id)

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot deactivate your own account"
        )

    user.is_active = False
    create_audit_log(
        db, request, admin.id,
        action="deactivate",
        resource_type="user",
        resource_id=user.id,
        details={"email": user.email},
    )
    await db.commit()
    log.info("User %s deactivated by %s", user.id, admin.id)

    return {"message": "User deactivated successfully"}
