"""
Permission management API routes.

Provides endpoints for managing permissions, roles, implications, direct
grants and organization role assignments, plus permission checks and the
audit trail.
"""
import secrets
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy import select, delete, and_, or_, insert, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core import config
from app.core.database.engine import get_db
from app.core.limiter import limiter
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.organizations.models import Organization, OrganizationCategory
from app.features.permissions.models import (
    ContextType,
    Permission,
    Role,
    PermissionImplication,
    UserCustomPermission,
    OrganizationRole,
    AuditLog,
    role_permissions,
)
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    ImpliedPermissionsResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleWithPermissions,
    RoleHierarchyResponse,
    ImplicationCreate,
    ImplicationResponse,
    AssignPermissionToRole,
    AssignRoleToUser,
    RoleAssignmentResponse,
    CustomPermissionGrant,
    CustomPermissionRevoke,
    CustomPermissionResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    UserPermissionsResponse,
    SuperAdminCreate,
    SuperAdminResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import (
    PermissionContext,
    resolve_permission,
    has_permission,
    require_permission,
    require_system_permission,
    get_user_permissions as resolve_user_permissions,
    get_user_roles_for_organization,
    get_implied_permissions,
    get_role_hierarchy,
    would_create_implication_cycle,
    would_create_role_cycle,
    grant_custom_permission,
    revoke_custom_permission,
    assign_role_to_user,
    create_audit_log,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def _get_permission_or_404(db: AsyncSession, permission_id: str) -> Permission:
    stmt = select(Permission).where(Permission.id == permission_id)
    result = await db.execute(stmt)
    permission = result.scalars().first()

    if not permission:
        raise HTTPException(status_code=404, detail="Permission not found")

    return permission


async def _get_role_or_404(db: AsyncSession, role_id: str) -> Role:
    stmt = select(Role).where(Role.id == role_id)
    result = await db.execute(stmt)
    role = result.scalars().first()

    if not role:
        raise HTTPException(status_code=404, detail="Role not found")

    return role


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalars().first()

    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    return user


async def _paginate_for_category(db: AsyncSession, stmt, organization_category, skip: int, limit: int) -> list:
    """
    Run a catalog query, keeping rows that apply to organization_category.

    Category membership lives in a JSON list, which SQLite and PostgreSQL
    query differently, so it is filtered here before paging.
    """
    if organization_category is None:
        result = await db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all())

    result = await db.execute(stmt)
    rows = [row for row in result.scalars().all() if row.applies_to_category(organization_category)]
    return rows[skip:skip + limit]


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """Create a new permission. Requires SYSTEM manage_permissions."""
    if await db.get(Permission, permission.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Permission with this ID already exists"
        )

    try:
        db_permission = Permission(**permission.model_dump())
        db.add(db_permission)
        create_audit_log(
            db, request, current_user.id,
            action="create",
            resource_type="permission",
            resource_id=permission.id,
            details=permission.model_dump(mode="json"),
        )
        await db.commit()
        await db.refresh(db_permission)
        return db_permission
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Permission with this ID already exists"
        )


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    skip: int = 0,
    limit: int = 100,
    category: Optional[str] = None,
    context_type: Optional[ContextType] = None,
    organization_category: Optional[OrganizationCategory] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    List permissions with optional filtering.

    organization_category keeps permissions available to that kind of
    organization, including those available to every category.
    """
    stmt = select(Permission)

    if category:
        stmt = stmt.where(Permission.category == category.lower())
    if context_type:
        stmt = stmt.where(Permission.context_type == context_type)

    stmt = stmt.order_by(Permission.category, Permission.id)
    return await _paginate_for_category(db, stmt, organization_category, skip, limit)


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific permission by ID."""
    return await _get_permission_or_404(db, permission_id)


@router.get("/permissions/{permission_id}/implied", response_model=ImpliedPermissionsResponse)
async def get_permission_implications(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get every permission granted transitively by holding this one."""
    await _get_permission_or_404(db, permission_id)
    return ImpliedPermissionsResponse(
        permission_id=permission_id,
        implied_permissions=await get_implied_permissions(db, permission_id)
    )


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """Update a permission. Requires SYSTEM manage_permissions."""
    db_permission = await _get_permission_or_404(db, permission_id)

    update_data = permission_update.model_dump(exclude_unset=True)
    if "category" in update_data and update_data["category"]:
        update_data["category"] = update_data["category"].lower()
    for key, value in update_data.items():
        setattr(db_permission, key, value)

    create_audit_log(
        db, request, current_user.id,
        action="update",
        resource_type="permission",
        resource_id=permission_id,
        details=update_data,
    )
    await db.commit()
    await db.refresh(db_permission)

    return db_permission


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """
    Delete a permission. Requires SYSTEM manage_permissions.

    Refused while any role, direct grant or implication still references it.
    """
    db_permission = await _get_permission_or_404(db, permission_id)

    references = [
        select(role_permissions.c.role_id).where(role_permissions.c.permission_id == permission_id),
        select(UserCustomPermission.id).where(UserCustomPermission.permission_id == permission_id),
        select(PermissionImplication.parent_permission_id).where(
            or_(
                PermissionImplication.parent_permission_id == permission_id,
                PermissionImplication.child_permission_id == permission_id,
            )
        ),
    ]
    for stmt in references:
        result = await db.execute(stmt.limit(1))
        if result.first() is not None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Permission is still referenced by roles, grants or implications"
            )

    permission_name = db_permission.name
    await db.delete(db_permission)
    create_audit_log(
        db, request, current_user.id,
        action="delete",
        resource_type="permission",
        resource_id=permission_id,
        details={"name": permission_name},
    )
    await db.commit()

    return None


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_roles"))
):
    """Create a new custom role. Requires SYSTEM manage_roles."""
    if await db.get(Role, role.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this ID already exists"
        )

    if role.base_role_id is not None:
        if role.base_role_id == role.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="A role cannot inherit from itself"
            )
        if await db.get(Role, role.base_role_id) is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Base role not found"
            )

    permissions: List[Permission] = []
    if role.permission_ids:
        result = await db.execute(select(Permission).where(Permission.id.in_(role.permission_ids)))
        permissions = list(result.scalars().all())
        missing = sorted(set(role.permission_ids) - {p.id for p in permissions})
        if missing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown permissions: {', '.join(missing)}"
            )

    try:
        db_role = Role(
            **role.model_dump(exclude={"permission_ids"}),
            is_system=False,
            is_custom=True,
        )
        db_role.permissions = permissions
        db.add(db_role)
        create_audit_log(
            db, request, current_user.id,
            action="create",
            resource_type="role",
            resource_id=role.id,
            details=role.model_dump(mode="json"),
        )
        await db.commit()
        await db.refresh(db_role)
        return db_role
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this ID already exists"
        )


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    skip: int = 0,
    limit: int = 100,
    context_type: Optional[ContextType] = None,
    organization_category: Optional[OrganizationCategory] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    List roles ordered by authority (lowest hierarchy level first).

    organization_category keeps roles assignable in that kind of organization.
    """
    stmt = select(Role)

    if context_type:
        stmt = stmt.where(Role.context_type == context_type)

    stmt = stmt.order_by(Role.hierarchy_level, Role.id)
    return await _paginate_for_category(db, stmt, organization_category, skip, limit)


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific role with its direct permissions."""
    return await _get_role_or_404(db, role_id)


@router.get("/roles/{role_id}/hierarchy", response_model=RoleHierarchyResponse)
async def get_role_inheritance_chain(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get the role followed by the roles it inherits from, nearest first."""
    chain = await get_role_hierarchy(db, role_id)
    if not chain:
        raise HTTPException(status_code=404, detail="Role not found")

    return RoleHierarchyResponse(
        role_id=role_id,
        chain=[RoleResponse.model_validate(r) for r in chain]
    )


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_roles"))
):
    """Update a role. Requires SYSTEM manage_roles."""
    db_role = await _get_role_or_404(db, role_id)

    update_data = role_update.model_dump(exclude_unset=True)

    base_role_id = update_data.get("base_role_id")
    if base_role_id is not None:
        if await db.get(Role, base_role_id) is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Base role not found"
            )
        if await would_create_role_cycle(db, role_id, base_role_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Role inheritance would create a cycle"
            )

    for key, value in update_data.items():
        setattr(db_role, key, value)

    create_audit_log(
        db, request, current_user.id,
        action="update",
        resource_type="role",
        resource_id=role_id,
        details=update_data,
    )
    await db.commit()
    await db.refresh(db_role)

    return db_role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_roles"))
):
    """
    Delete a role. Requires SYSTEM manage_roles.

    Refused while another role inherits from it or a user actively holds it.
    Inactive assignments of the role are removed with it.
    """
    db_role = await _get_role_or_404(db, role_id)

    result = await db.execute(select(Role.id).where(Role.base_role_id == role_id).limit(1))
    if result.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Role is the base role of another role"
        )

    result = await db.execute(
        select(OrganizationRole.id)
        .where(and_(OrganizationRole.role_id == role_id, OrganizationRole.is_active.is_(True)))
        .limit(1)
    )
    if result.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Role is still assigned to users"
        )

    role_name = db_role.name
    await db.execute(delete(OrganizationRole).where(OrganizationRole.role_id == role_id))
    await db.delete(db_role)
    create_audit_log(
        db, request, current_user.id,
        action="delete",
        resource_type="role",
        resource_id=role_id,
        details={"name": role_name},
    )
    await db.commit()

    return None


@router.post("/roles/{role_id}/permissions", status_code=status.HTTP_200_OK)
async def assign_permission_to_role(
    role_id: str,
    assignment: AssignPermissionToRole,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_roles"))
):
    """Assign a permission to a role. Requires SYSTEM manage_roles."""
    role = await _get_role_or_404(db, role_id)
    permission = await _get_permission_or_404(db, assignment.permission_id)

    # Check if already assigned
    check_stmt = select(role_permissions).where(
        and_(
            role_permissions.c.role_id == role_id,
            role_permissions.c.permission_id == assignment.permission_id
        )
    )
    check_result = await db.execute(check_stmt)
    if check_result.first():
        return {"message": f"Permission '{permission.id}' already assigned to role '{role.id}'"}

    await db.execute(insert(role_permissions).values(role_id=role_id, permission_id=assignment.permission_id))
    create_audit_log(
        db, request, current_user.id,
        action="assign_permission",
        resource_type="role",
        resource_id=role_id,
        details={"permission_id": assignment.permission_id},
    )
    await db.commit()

    return {"message": f"Permission '{permission.id}' assigned to role '{role.id}'"}


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_permission_from_role(
    role_id: str,
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_roles"))
):
    """Remove a permission from a role. Requires SYSTEM manage_roles."""
    check_stmt = select(role_permissions).where(
        and_(
            role_permissions.c.role_id == role_id,
            role_permissions.c.permission_id == permission_id
        )
    )
    check_result = await db.execute(check_stmt)
    if not check_result.first():
        raise HTTPException(status_code=404, detail="Permission assignment not found")

    await db.execute(
        delete(role_permissions).where(
            and_(
                role_permissions.c.role_id == role_id,
                role_permissions.c.permission_id == permission_id
            )
        )
    )
    create_audit_log(
        db, request, current_user.id,
        action="remove_permission",
        resource_type="role",
        resource_id=role_id,
        details={"permission_id": permission_id},
    )
    await db.commit()

    return None


# ============================================================================
# Implication Routes
# ============================================================================

@router.post("/implications", response_model=ImplicationResponse, status_code=status.HTTP_201_CREATED)
async def create_implication(
    implication: ImplicationCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """
    Make one permission imply another. Requires SYSTEM manage_permissions.

    Rejects self-implication and any edge that would close a cycle.
    """
    parent_id = implication.parent_permission_id
    child_id = implication.child_permission_id

    if parent_id == child_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A permission cannot imply itself"
        )

    await _get_permission_or_404(db, parent_id)
    await _get_permission_or_404(db, child_id)

    if await db.get(PermissionImplication, (parent_id, child_id)) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Implication already exists"
        )

    if await would_create_implication_cycle(db, parent_id, child_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Implication would create a cycle"
        )

    db_implication = PermissionImplication(parent_permission_id=parent_id, child_permission_id=child_id)
    db.add(db_implication)
    create_audit_log(
        db, request, current_user.id,
        action="create",
        resource_type="implication",
        resource_id=parent_id,
        details={"parent_permission_id": parent_id, "child_permission_id": child_id},
    )
    await db.commit()
    await db.refresh(db_implication)

    return db_implication


@router.get("/implications", response_model=List[ImplicationResponse])
async def list_implications(
    permission_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List implication edges, optionally only those touching one permission."""
    stmt = select(PermissionImplication)

    if permission_id:
        stmt = stmt.where(
            or_(
                PermissionImplication.parent_permission_id == permission_id,
                PermissionImplication.child_permission_id == permission_id,
            )
        )

    stmt = stmt.order_by(PermissionImplication.parent_permission_id, PermissionImplication.child_permission_id)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.delete("/implications/{parent_permission_id}/{child_permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_implication(
    parent_permission_id: str,
    child_permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """Remove an implication edge. Requires SYSTEM manage_permissions."""
    db_implication = await db.get(PermissionImplication, (parent_permission_id, child_permission_id))
    if db_implication is None:
        raise HTTPException(status_code=404, detail="Implication not found")

    await db.delete(db_implication)
    create_audit_log(
        db, request, current_user.id,
        action="delete",
        resource_type="implication",
        resource_id=parent_permission_id,
        details={"parent_permission_id": parent_permission_id, "child_permission_id": child_permission_id},
    )
    await db.commit()

    return None


# ============================================================================
# Custom Permission Routes
# ============================================================================

@router.post("/custom-permissions", response_model=CustomPermissionResponse, status_code=status.HTTP_201_CREATED)
async def grant_permission_to_user(
    grant: CustomPermissionGrant,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """
    Grant a permission directly to a user. Requires SYSTEM manage_permissions.

    The grant's context must match the permission's context. ORGANIZATION
    grants must name the organization they apply to.
    """
    permission = await _get_permission_or_404(db, grant.permission_id)
    await _get_user_or_404(db, grant.user_id)

    if permission.context_type != grant.context_type:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Permission '{permission.id}' is a {permission.context_type.value} permission"
        )

    if grant.context_type == ContextType.ORGANIZATION:
        if not grant.organization_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="organization_id is required for ORGANIZATION grants"
            )
        if await db.get(Organization, grant.organization_id) is None:
            raise HTTPException(status_code=404, detail="Organization not found")
        context = PermissionContext.organization(grant.organization_id)
    else:
        context = PermissionContext.system()

    db_grant = await grant_custom_permission(
        db,
        user_id=grant.user_id,
        permission_id=grant.permission_id,
        context=context,
        granted_by_id=current_user.id,
        expires_at=grant.expires_at,
    )
    create_audit_log(
        db, request, current_user.id,
        action="grant_permission",
        resource_type="user",
        resource_id=grant.user_id,
        organization_id=grant.organization_id,
        details=grant.model_dump(mode="json"),
    )
    await db.commit()
    await db.refresh(db_grant)

    return db_grant


@router.delete("/custom-permissions", status_code=status.HTTP_200_OK)
async def revoke_permission_from_user(
    revoke: CustomPermissionRevoke,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """Revoke a direct grant. Requires SYSTEM manage_permissions."""
    context = PermissionContext(revoke.context_type, revoke.organization_id)
    revoked = await revoke_custom_permission(db, revoke.user_id, revoke.permission_id, context)

    if revoked == 0:
        raise HTTPException(status_code=404, detail="Custom permission not found")

    create_audit_log(
        db, request, current_user.id,
        action="revoke_permission",
        resource_type="user",
        resource_id=revoke.user_id,
        organization_id=revoke.organization_id,
        details=revoke.model_dump(mode="json"),
    )
    await db.commit()

    return {"message": "Custom permission revoked", "revoked": revoked}


@router.get("/users/{user_id}/custom-permissions", response_model=List[CustomPermissionResponse])
async def list_user_custom_permissions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """List a user's direct grants, expired ones included. Requires SYSTEM manage_permissions."""
    await _get_user_or_404(db, user_id)

    stmt = (
        select(UserCustomPermission)
        .where(UserCustomPermission.user_id == user_id)
        .order_by(UserCustomPermission.granted_at)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


# ============================================================================
# Organization Role Assignment Routes
# ============================================================================

@router.get("/organizations/{organization_id}/role-assignments", response_model=List[RoleAssignmentResponse])
async def list_role_assignments(
    organization_id: str,
    include_inactive: bool = False,
    user_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("view_staff"))
):
    """List role assignments in an organization. Requires view_staff."""
    stmt = select(OrganizationRole).where(OrganizationRole.organization_id == organization_id)

    if not include_inactive:
        stmt = stmt.where(OrganizationRole.is_active.is_(True))
    if user_id:
        stmt = stmt.where(OrganizationRole.user_id == user_id)

    stmt = stmt.order_by(OrganizationRole.assigned_at)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post(
    "/organizations/{organization_id}/role-assignments",
    response_model=RoleAssignmentResponse,
    status_code=status.HTTP_201_CREATED
)
async def assign_role(
    organization_id: str,
    assignment: AssignRoleToUser,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("edit_staff_role"))
):
    """
    Assign a role to a user in an organization. Requires edit_staff_role.

    Only ORGANIZATION roles whose organization_categories include the
    organization's category can be assigned.
    """
    await _get_user_or_404(db, assignment.user_id)
    role = await _get_role_or_404(db, assignment.role_id)

    if role.context_type != ContextType.ORGANIZATION:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only ORGANIZATION roles can be assigned within an organization"
        )

    organization = await db.get(Organization, organization_id)
    if organization is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    if not role.applies_to_category(organization.category):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Role {role.id} is not available for {organization.category.value} organizations"
        )

    db_assignment = await assign_role_to_user(
        db,
        user_id=assignment.user_id,
        organization_id=organization_id,
        role_id=assignment.role_id,
        assigned_by_id=current_user.id,
        is_primary=assignment.is_primary,
        active_from=assignment.active_from,
        active_to=assignment.active_to,
    )
    create_audit_log(
        db, request, current_user.id,
        action="assign_role",
        resource_type="user",
        resource_id=assignment.user_id,
        organization_id=organization_id,
        details=assignment.model_dump(mode="json"),
    )
    await db.commit()
    await db.refresh(db_assignment)

    return db_assignment


@router.delete(
    "/organizations/{organization_id}/role-assignments/{assignment_id}",
    status_code=status.HTTP_204_NO_CONTENT
)
async def deactivate_role_assignment(
    organization_id: str,
    assignment_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("edit_staff_role"))
):
    """Deactivate a role assignment. Requires edit_staff_role."""
    stmt = select(OrganizationRole).where(
        and_(
            OrganizationRole.id == assignment_id,
            OrganizationRole.organization_id == organization_id,
        )
    )
    result = await db.execute(stmt)
    db_assignment = result.scalars().first()

    if not db_assignment:
        raise HTTPException(status_code=404, detail="Role assignment not found")

    db_assignment.is_active = False
    db_assignment.is_primary = False
    create_audit_log(
        db, request, current_user.id,
        action="remove_role",
        resource_type="user",
        resource_id=db_assignment.user_id,
        organization_id=organization_id,
        details={"assignment_id": assignment_id, "role_id": db_assignment.role_id},
    )
    await db.commit()

    return None


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
@limiter.limit(config.CHECK_RATE_LIMIT)
async def check_permission(
    check_request: PermissionCheckRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Check if the current user has a specific permission."""
    if check_request.context_type == ContextType.SYSTEM:
        context = PermissionContext.system()
    else:
        org_id = check_request.organization_id or current_user.current_organization_id
        if not org_id:
            return PermissionCheckResponse(has_permission=False, reason="No organization context")
        context = PermissionContext.organization(org_id)

    decision = await resolve_permission(db, current_user.id, check_request.permission_id, context)

    return PermissionCheckResponse(
        has_permission=decision.granted,
        source=decision.source,
        reason=f"Granted via {decision.source} ({decision.via})" if decision.granted else "Permission denied"
    )


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    organization_id: Optional[str] = None,
    context_type: ContextType = ContextType.ORGANIZATION,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Get every permission a user holds in a context.

    Users may view their own permissions. Viewing someone else's needs
    view_staff in the organization, or SYSTEM manage_permissions for the
    SYSTEM context.
    """
    if context_type == ContextType.SYSTEM:
        if user_id != current_user.id and not await has_permission(
            db, current_user.id, "manage_permissions", PermissionContext.system()
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized to view other users' permissions"
            )
        await _get_user_or_404(db, user_id)
        return UserPermissionsResponse(
            user_id=user_id,
            context_type=context_type,
            permissions=await resolve_user_permissions(db, user_id, PermissionContext.system()),
        )

    org_id = organization_id or (current_user.current_organization_id if user_id == current_user.id else None)
    if not org_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization ID required"
        )

    context = PermissionContext.organization(org_id)
    if user_id != current_user.id and not await has_permission(db, current_user.id, "view_staff", context):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view other users' permissions"
        )

    await _get_user_or_404(db, user_id)

    return UserPermissionsResponse(
        user_id=user_id,
        context_type=context_type,
        organization_id=org_id,
        roles=await get_user_roles_for_organization(db, user_id, org_id),
        permissions=await resolve_user_permissions(db, user_id, context),
    )


# ============================================================================
# Super Admin Bootstrap
# ============================================================================

@router.post("/super-admins", response_model=SuperAdminResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def create_super_admin(
    payload: SuperAdminCreate,
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Grant every SYSTEM permission to an existing user.

    Authorized by the SUPER_ADMIN_SECRET setting rather than a token, so the
    first administrator can be created on a fresh deployment.
    """
    if not config.SUPER_ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin bootstrap is disabled"
        )
    if not secrets.compare_digest(payload.system_secret, config.SUPER_ADMIN_SECRET):
        log.warning("Rejected super admin bootstrap for %s", payload.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid system secret"
        )

    result = await db.execute(select(User).where(User.email == payload.email))
    user = result.scalars().first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    result = await db.execute(
        select(Permission.id).where(Permission.context_type == ContextType.SYSTEM).order_by(Permission.id)
    )
    permission_ids = list(result.scalars().all())
    if not permission_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No SYSTEM permissions exist; seed the permission catalog first"
        )

    for permission_id in permission_ids:
        await grant_custom_permission(db, user.id, permission_id, PermissionContext.system())

    create_audit_log(
        db, request, None,
        action="create_super_admin",
        resource_type="user",
        resource_id=user.id,
        details={"permissions": permission_ids},
    )
    await db.commit()
    log.info("User %s promoted to super admin", user.id)

    return SuperAdminResponse(user_id=user.id, granted_permissions=permission_ids)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_permission("manage_permissions"))
):
    """List audit logs with optional filtering. Requires SYSTEM manage_permissions."""
    stmt = select(AuditLog)

    if organization_id:
        stmt = stmt.where(AuditLog.organization_id == organization_id)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
