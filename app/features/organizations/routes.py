"""
Organization feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.dependencies import get_current_user
from app.features.organizations.models import Organization
from app.features.organizations.schemas import (
    OrganizationCreate,
    OrganizationUpdate,
    OrganizationResponse,
    UserOrganizationRole,
    SwitchOrganizationRequest,
    SwitchOrganizationResponse,
    HeldRole,
    UserRoleOverview,
)
from app.features.organizations.dependencies import (
    get_organization_by_id,
    get_current_organization,
    count_members,
)
from app.features.permissions.models import OrganizationRole, Role
from app.features.permissions.dependencies import (
    require_permission,
    require_system_permission,
    assign_role_to_user,
    validate_user_organization_access,
    active_assignment_clause,
    create_audit_log,
)
from app.utils import get_logger, utcnow


log = get_logger(__name__)
router = APIRouter(tags=["organizations"])

OWNER_ROLE_ID = "owner"


async def _organization_response(db: AsyncSession, organization: Organization) -> OrganizationResponse:
    response = OrganizationResponse.model_validate(organization)
    response.member_count = await count_members(db, organization.id)
    return response


# Organization CRUD endpoints
@router.post("/", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
async def create_organization(
    org_data: OrganizationCreate,
    request: Request,
    user: Annotated[User, Depends(require_system_permission("create_organization"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Create a new organization.

    The creator becomes its owner (primary assignment) and, if they have no
    current organization yet, switches to it.
    """
    new_org = Organization(**org_data.model_dump())
    db.add(new_org)
    await db.flush()

    await assign_role_to_user(
        db,
        user_id=user.id,
        organization_id=new_org.id,
        role_id=OWNER_ROLE_ID,
        assigned_by_id=user.id,
        is_primary=True,
    )

    if user.current_organization_id is None:
        user.current_organization_id = new_org.id

    create_audit_log(
        db, request, user.id,
        action="create",
        resource_type="organization",
        resource_id=new_org.id,
        organization_id=new_org.id,
        details={"name": new_org.name, "category": new_org.category.value},
    )
    await db.commit()
    await db.refresh(new_org)

    log.info("Organization %s created by %s", new_org.id, user.id)
    return await _organization_response(db, new_org)


@router.get("/my", response_model=list[UserOrganizationRole])
async def get_my_organizations(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get all organizations where the current user holds an active role."""
    now = utcnow()
    result = await db.execute(
        select(OrganizationRole, Organization)
        .join(Organization, Organization.id == OrganizationRole.organization_id)
        .where(
            and_(
                OrganizationRole.user_id == user.id,
                active_assignment_clause(now),
                Organization.is_active.is_(True),
            )
        )
        .order_by(Organization.name, OrganizationRole.assigned_at)
    )

    memberships: dict[str, UserOrganizationRole] = {}
    for assignment, organization in result.all():
        membership = memberships.get(organization.id)
        if membership is None:
            membership = UserOrganizationRole(
                organization_id=organization.id,
                organization_name=organization.name,
                category=organization.category,
                roles=[],
                is_primary=False,
                is_current=organization.id == user.current_organization_id,
            )
            memberships[organization.id] = membership
        membership.roles.append(assignment.role_id)
        membership.is_primary = membership.is_primary or assignment.is_primary

    return list(memberships.values())


@router.get("/my-roles", response_model=UserRoleOverview)
async def get_my_roles(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    organization_id: str | None = None
):
    """
    The caller's highest, lowest and primary role across their active
    organizations, or within one organization when organization_id is given.
    """
    stmt = (
        select(OrganizationRole, Role, Organization)
        .join(Role, Role.id == OrganizationRole.role_id)
        .join(Organization, Organization.id == OrganizationRole.organization_id)
        .where(
            OrganizationRole.user_id == user.id,
            active_assignment_clause(utcnow()),
            Organization.is_active.is_(True),
        )
        .order_by(Role.hierarchy_level, Organization.name, OrganizationRole.assigned_at)
    )
    if organization_id:
        stmt = stmt.where(OrganizationRole.organization_id == organization_id)

    result = await db.execute(stmt)
    held = [
        HeldRole(
            role_id=role.id,
            role_name=role.display_name_for(organization.category),
            hierarchy_level=role.hierarchy_level,
            organization_id=organization.id,
            organization_name=organization.name,
            is_primary=assignment.is_primary,
        )
        for assignment, role, organization in result.all()
    ]
    if not held:
        return UserRoleOverview()

    highest = held[0]
    lowest = next(r for r in held if r.hierarchy_level == held[-1].hierarchy_level)
    primary = next((r for r in held if r.is_primary), highest)
    return UserRoleOverview(highest=highest, lowest=lowest, primary=primary, roles=held)


@router.get("/current", response_model=OrganizationResponse)
async def get_current_organization_endpoint(
    organization: Annotated[Organization, Depends(get_current_organization)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get user's current active organization."""
    return await _organization_response(db, organization)


@router.post("/switch", response_model=SwitchOrganizationResponse)
async def switch_organization(
    switch_data: SwitchOrganizationRequest,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Make another of the user's organizations the current one."""
    organization = await get_organization_by_id(switch_data.organization_id, db)
    if not organization.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization is deactivated"
        )
    if not await validate_user_organization_access(db, user.id, switch_data.organization_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a member of this organization"
        )

    user.current_organization_id = organization.id
    await db.commit()
    log.info("User %s switched to organization %s", user.id, organization.id)

    return SwitchOrganizationResponse(
        message="Organization switched successfully",
        current_organization_id=organization.id,
        current_organization_name=organization.name,
    )


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    _user: Annotated[User, Depends(require_permission("view_organization"))],
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get organization by ID. Requires view_organization in it."""
    return await _organization_response(db, organization)


@router.patch("/{organization_id}", response_model=OrganizationResponse)
async def update_organization(
    update_data: OrganizationUpdate,
    request: Request,
    user: Annotated[User, Depends(require_permission("edit_organization"))],
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Update organization information. Requires edit_organization in it."""
    # Update only provided fields
    update_dict = update_data.model_dump(exclude_unset=True)
    for field, value in update_dict.items():
        setattr(organization, field, value)

    create_audit_log(
        db, request, user.id,
        action="update",
        resource_type="organization",
        resource_id=organization.id,
        organization_id=organization.id,
        details=update_data.model_dump(exclude_unset=True, mode="json"),
    )
    await db.commit()
    await db.refresh(organization)

    return await _organization_response(db, organization)
