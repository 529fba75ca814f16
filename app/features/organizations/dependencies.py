"""
Organization-related dependency injection functions.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.dependencies import get_current_user
from app.features.organizations.models import Organization
from app.features.permissions.models import OrganizationRole
from app.features.permissions.dependencies import (
    active_assignment_clause,
    validate_user_organization_access,
)
from app.utils import utcnow


async def get_organization_by_id(
    organization_id: str,
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Organization:
    """
    Organization from the organization_id path parameter.

    Raises:
        HTTPException: 404 if organization not found
    """
    organization = await db.get(Organization, organization_id)
    if organization is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found"
        )
    return organization


async def get_current_organization(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Organization:
    """
    The organization the user is currently working in.

    Raises:
        HTTPException: 400 if none is selected or it has been deactivated,
            403 if the user no longer holds an active role there
    """
    organization = user.current_organization
    if user.current_organization_id is None or organization is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No current organization set. Please switch to an organization first."
        )
    if not organization.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current organization is deactivated"
        )
    if not await validate_user_organization_access(db, user.id, organization.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are no longer a member of your current organization"
        )
    return organization


async def count_members(db: AsyncSession, organization_id: str) -> int:
    """Number of distinct users with an active assignment in the organization."""
    result = await db.execute(
        select(func.count(func.distinct(OrganizationRole.user_id))).where(
            OrganizationRole.organization_id == organization_id,
            active_assignment_clause(utcnow()),
        )
    )
    return result.scalar_one()
