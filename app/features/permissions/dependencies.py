"""
Permission resolution, store helpers and route dependencies for RBAC.

Implements:
- Permission resolution (custom grants > role permissions > implications > role inheritance)
- Effective permission sets and organization access checks
- Writes to the authorization store (grants, role assignments) with cycle checks
- FastAPI dependencies for route protection
- Audit logging helpers
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy import select, delete, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.models import (
    ContextType,
    Role,
    PermissionImplication,
    UserCustomPermission,
    OrganizationRole,
    AuditLog,
    role_permissions,
)
from app.utils import get_logger, utcnow


log = get_logger(__name__)


@dataclass(frozen=True)
class PermissionContext:
    """Where a permission is being checked: system-wide or inside one organization."""
    context_type: ContextType
    organization_id: Optional[str] = None

    @classmethod
    def system(cls) -> "PermissionContext":
        return cls(ContextType.SYSTEM)

    @classmethod
    def organization(cls, organization_id: Optional[str]) -> "PermissionContext":
        return cls(ContextType.ORGANIZATION, organization_id)


@dataclass(frozen=True)
class PermissionDecision:
    """
    Outcome of a permission check.

    source is "custom", "role", "implication" or "inheritance"; via names the
    grant, role or parent permission that decided it.
    """
    granted: bool
    source: Optional[str] = None
    via: Optional[str] = None


DENIED = PermissionDecision(granted=False)


# ============================================================================
# Store Lookups
# ============================================================================

def _custom_grant_conditions(user_id: str, context: PermissionContext, now: datetime) -> list:
    conditions = [
        UserCustomPermission.user_id == user_id,
        UserCustomPermission.context_type == context.context_type,
        or_(
            UserCustomPermission.expires_at.is_(None),
            UserCustomPermission.expires_at > now,
        ),
    ]
    if context.context_type == ContextType.ORGANIZATION:
        # Without an organization only unscoped organization grants apply
        if context.organization_id:
            conditions.append(UserCustomPermission.context_id == context.organization_id)
        else:
            conditions.append(UserCustomPermission.context_id.is_(None))
    return conditions


async def has_custom_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    context: PermissionContext
) -> bool:
    """True if an unexpired direct grant of the permission matches the context."""
    stmt = (
        select(UserCustomPermission.id)
        .where(
            and_(
                UserCustomPermission.permission_id == permission_id,
                *_custom_grant_conditions(user_id, context, utcnow()),
            )
        )
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def get_custom_permission_ids(
    db: AsyncSession,
    user_id: str,
    context: PermissionContext
) -> set[str]:
    """Permission IDs granted directly to the user in the context."""
    stmt = select(UserCustomPermission.permission_id).where(
        and_(*_custom_grant_conditions(user_id, context, utcnow()))
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())


def active_assignment_clause(now: datetime, assignment=OrganizationRole):
    """
    SQL condition for assignments that are switched on and inside their
    active window. Pass an alias as assignment when joining the table to itself.
    """
    return and_(
        assignment.is_active.is_(True),
        or_(assignment.active_from.is_(None), assignment.active_from <= now),
        or_(assignment.active_to.is_(None), assignment.active_to >= now),
    )


async def get_user_roles_for_organization(
    db: AsyncSession,
    user_id: str,
    organization_id: str
) -> List[str]:
    """
    Role IDs of the user's active assignments in an organization.

    An assignment is active when is_active is set and the current time falls
    inside its optional active_from / active_to window.
    """
    now = utcnow()
    stmt = (
        select(OrganizationRole.role_id)
        .where(
            and_(
                OrganizationRole.user_id == user_id,
                OrganizationRole.organization_id == organization_id,
                active_assignment_clause(now),
            )
        )
        .order_by(OrganizationRole.assigned_at)
    )
    result = await db.execute(stmt)
    return list(dict.fromkeys(result.scalars().all()))


async def validate_user_organization_access(
    db: AsyncSession,
    user_id: str,
    organization_id: str
) -> bool:
    """True if the user holds at least one active role in the organization."""
    roles = await get_user_roles_for_organization(db, user_id, organization_id)
    return len(roles) > 0


async def _find_granting_role(
    db: AsyncSession,
    role_ids: Iterable[str],
    permission_id: str
) -> Optional[str]:
    role_ids = list(role_ids)
    if not role_ids:
        return None
    stmt = (
        select(role_permissions.c.role_id)
        .where(
            and_(
                role_permissions.c.role_id.in_(role_ids),
                role_permissions.c.permission_id == permission_id,
            )
        )
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def get_base_role_id(db: AsyncSession, role_id: str) -> Optional[str]:
    result = await db.execute(select(Role.base_role_id).where(Role.id == role_id))
    return result.scalar_one_or_none()


async def get_role_ancestor_ids(db: AsyncSession, role_id: str) -> List[str]:
    """
    IDs along the base-role chain of a role, nearest first, excluding the role.

    Stops at the first role already seen, so a cyclic chain terminates.
    """
    ancestors: List[str] = []
    seen = {role_id}
    current = await get_base_role_id(db, role_id)
    while current is not None:
        if current in seen:
            log.warning("Role inheritance cycle detected at %r (from %r)", current, role_id)
            break
        seen.add(current)
        ancestors.append(current)
        current = await get_base_role_id(db, current)
    return ancestors


async def check_role_hierarchy(
    db: AsyncSession,
    role_id: str,
    permission_id: str
) -> Optional[str]:
    """Return the nearest ancestor of role_id whose direct permissions include permission_id."""
    for ancestor_id in await get_role_ancestor_ids(db, role_id):
        if await _find_granting_role(db, [ancestor_id], permission_id):
            return ancestor_id
    return None


async def get_role_hierarchy(db: AsyncSession, role_id: str) -> List[Role]:
    """The role followed by its base roles, nearest first. Empty if the role does not exist."""
    role = await db.get(Role, role_id)
    if role is None:
        return []
    chain = [role]
    for ancestor_id in await get_role_ancestor_ids(db, role_id):
        ancestor = await db.get(Role, ancestor_id)
        if ancestor is None:
            break
        chain.append(ancestor)
    return chain


async def get_parent_permission_ids(db: AsyncSession, permission_id: str) -> List[str]:
    """Permissions that directly imply permission_id."""
    stmt = (
        select(PermissionImplication.parent_permission_id)
        .where(PermissionImplication.child_permission_id == permission_id)
        .order_by(PermissionImplication.parent_permission_id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def expand_implied_permissions(db: AsyncSession, permission_ids: Iterable[str]) -> set[str]:
    """Transitive closure of permission_ids over implication edges (parent -> child), excluding the inputs."""
    start = set(permission_ids)
    implied: set[str] = set()
    frontier = set(start)
    while frontier:
        stmt = select(PermissionImplication.child_permission_id).where(
            PermissionImplication.parent_permission_id.in_(frontier)
        )
        result = await db.execute(stmt)
        children = set(result.scalars().all())
        frontier = children - implied - start
        implied |= frontier
    return implied


async def get_implied_permissions(db: AsyncSession, permission_id: str) -> List[str]:
    """All permissions granted transitively by holding permission_id."""
    return sorted(await expand_implied_permissions(db, [permission_id]))


# ============================================================================
# Permission Resolution
# ============================================================================

async def _resolve(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    context: PermissionContext,
    role_ids: Optional[List[str]],
    visited: set[str]
) -> PermissionDecision:
    if permission_id in visited:
        return DENIED
    visited.add(permission_id)

    # 1. Direct custom grant
    if await has_custom_permission(db, user_id, permission_id, context):
        return PermissionDecision(True, "custom", permission_id)

    # 2. SYSTEM context only honours custom grants
    if context.context_type == ContextType.SYSTEM:
        return DENIED

    if not context.organization_id:
        log.debug("No organization ID provided for organization context check")
        return DENIED

    if role_ids is None:
        role_ids = await get_user_roles_for_organization(db, user_id, context.organization_id)

    # 3. Role permissions
    granting_role = await _find_granting_role(db, role_ids, permission_id)
    if granting_role:
        return PermissionDecision(True, "role", granting_role)

    # 4. Implications: holding any parent grants the child
    for parent_id in await get_parent_permission_ids(db, permission_id):
        decision = await _resolve(db, user_id, parent_id, context, role_ids, visited)
        if decision.granted:
            return PermissionDecision(True, "implication", parent_id)

    # 5. Inherited through base roles
    for role_id in role_ids:
        ancestor_id = await check_role_hierarchy(db, role_id, permission_id)
        if ancestor_id:
            return PermissionDecision(True, "inheritance", ancestor_id)

    return DENIED


async def resolve_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    context: PermissionContext
) -> PermissionDecision:
    """
    Decide whether a user holds a permission in a context.

    Resolution order (first match wins):
    1. Direct custom grant for the context that has not expired
    2. SYSTEM context stops here
    3. A permission of one of the user's active roles in the organization
    4. A parent permission that implies this one (resolved recursively)
    5. A permission of an ancestor along a role's base-role chain

    Implication and inheritance walks carry visited sets, so cyclic data
    resolves to "not granted" instead of recursing forever.
    """
    decision = await _resolve(db, user_id, permission_id, context, None, set())
    log.debug(
        "Permission %s for user %s in %s:%s -> %s",
        permission_id, user_id, context.context_type.value, context.organization_id, decision
    )
    return decision


async def has_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    context: PermissionContext
) -> bool:
    """Check if a user has a specific permission in a given context."""
    decision = await resolve_permission(db, user_id, permission_id, context)
    return decision.granted


async def get_user_permissions(
    db: AsyncSession,
    user_id: str,
    context: PermissionContext
) -> List[str]:
    """
    Every permission the user holds in a context.

    Includes:
    1. Direct custom grants
    2. Permissions of the user's roles in the organization
    3. Permissions inherited through base roles
    4. Everything implied by the above

    SYSTEM context returns custom grants only, matching resolve_permission.
    """
    held = await get_custom_permission_ids(db, user_id, context)

    if context.context_type == ContextType.SYSTEM or not context.organization_id:
        return sorted(held)

    role_ids = await get_user_roles_for_organization(db, user_id, context.organization_id)
    all_role_ids = list(role_ids)
    for role_id in role_ids:
        all_role_ids.extend(await get_role_ancestor_ids(db, role_id))

    if all_role_ids:
        stmt = select(role_permissions.c.permission_id).where(
            role_permissions.c.role_id.in_(set(all_role_ids))
        )
        result = await db.execute(stmt)
        held |= set(result.scalars().all())

    held |= await expand_implied_permissions(db, held)
    return sorted(held)


# ============================================================================
# Store Writes
# ============================================================================

async def would_create_implication_cycle(db: AsyncSession, parent_id: str, child_id: str) -> bool:
    """True if adding parent -> child would close a loop in the implication graph."""
    if parent_id == child_id:
        return True
    return parent_id in await expand_implied_permissions(db, [child_id])


async def would_create_role_cycle(db: AsyncSession, role_id: str, base_role_id: Optional[str]) -> bool:
    """True if making base_role_id the base of role_id would close a loop."""
    if base_role_id is None:
        return False
    if base_role_id == role_id:
        return True
    return role_id in await get_role_ancestor_ids(db, base_role_id)


async def grant_custom_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    context: PermissionContext,
    granted_by_id: Optional[str] = None,
    expires_at: Optional[datetime] = None
) -> UserCustomPermission:
    """
    Grant a permission directly to a user.

    Granting again in the same context refreshes the existing grant's
    grantor, grant time and expiry.
    """
    context_id = context.organization_id if context.context_type == ContextType.ORGANIZATION else None
    stmt = select(UserCustomPermission).where(
        and_(
            UserCustomPermission.user_id == user_id,
            UserCustomPermission.permission_id == permission_id,
            UserCustomPermission.context_type == context.context_type,
            UserCustomPermission.context_id.is_(None) if context_id is None
            else UserCustomPermission.context_id == context_id,
        )
    )
    result = await db.execute(stmt)
    grant = result.scalars().first()

    if grant is None:
        grant = UserCustomPermission(
            user_id=user_id,
            permission_id=permission_id,
            context_type=context.context_type,
            context_id=context_id,
        )
        db.add(grant)

    grant.granted_by_id = granted_by_id
    grant.granted_at = utcnow()
    grant.expires_at = expires_at
    await db.flush()
    return grant


async def revoke_custom_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    context: PermissionContext
) -> int:
    """Revoke matching custom grants. Returns the number removed."""
    conditions = [
        UserCustomPermission.user_id == user_id,
        UserCustomPermission.permission_id == permission_id,
        UserCustomPermission.context_type == context.context_type,
    ]
    if context.organization_id:
        conditions.append(UserCustomPermission.context_id == context.organization_id)

    result = await db.execute(delete(UserCustomPermission).where(and_(*conditions)))
    return result.rowcount or 0


async def assign_role_to_user(
    db: AsyncSession,
    user_id: str,
    organization_id: str,
    role_id: str,
    assigned_by_id: Optional[str] = None,
    is_primary: bool = False,
    active_from: Optional[datetime] = None,
    active_to: Optional[datetime] = None
) -> OrganizationRole:
    """
    Assign a role to a user within an organization.

    Marking the assignment primary clears any other primary assignment the
    user has in that organization. Assigning a role the user already holds
    reactivates and updates the existing assignment.
    """
    if is_primary:
        await db.execute(
            update(OrganizationRole)
            .where(
                and_(
                    OrganizationRole.user_id == user_id,
                    OrganizationRole.organization_id == organization_id,
                    OrganizationRole.role_id != role_id,
                    OrganizationRole.is_primary.is_(True),
                )
            )
            .values(is_primary=False)
        )

    stmt = select(OrganizationRole).where(
        and_(
            OrganizationRole.user_id == user_id,
            OrganizationRole.organization_id == organization_id,
            OrganizationRole.role_id == role_id,
        )
    )
    result = await db.execute(stmt)
    assignment = result.scalars().first()

    if assignment is None:
        assignment = OrganizationRole(
            user_id=user_id,
            organization_id=organization_id,
            role_id=role_id,
        )
        db.add(assignment)

    assignment.is_primary = is_primary
    assignment.is_active = True
    assignment.active_from = active_from
    assignment.active_to = active_to
    assignment.assigned_by_id = assigned_by_id
    assignment.assigned_at = utcnow()
    await db.flush()
    return assignment


# ============================================================================
# FastAPI Dependencies
# ============================================================================

async def resolve_organization_id(request: Request, db: AsyncSession, user: User) -> Optional[str]:
    """
    Organization a request acts on.

    Checked in order: organization_id path parameter, organization_id query
    parameter, X-Organization-ID header, the user's current organization,
    then the organization of the user's primary active assignment.
    """
    organization_id = (
        request.path_params.get("organization_id")
        or request.query_params.get("organization_id")
        or request.headers.get("x-organization-id")
    )
    if organization_id:
        return organization_id

    if user.current_organization_id:
        return user.current_organization_id

    stmt = (
        select(OrganizationRole.organization_id)
        .where(
            and_(
                OrganizationRole.user_id == user.id,
                OrganizationRole.is_primary.is_(True),
                active_assignment_clause(utcnow()),
            )
        )
        .order_by(OrganizationRole.assigned_at)
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def _require_organization_access(request: Request, db: AsyncSession, user: User) -> str:
    organization_id = await resolve_organization_id(request, db, user)
    if not organization_id:
        log.warning("No organization context found for user %s", user.id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organization context found"
        )

    if not await validate_user_organization_access(db, user.id, organization_id):
        log.warning("User %s not authorized for organization %s", user.id, organization_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User not authorized for this organization"
        )

    request.state.organization_id = organization_id
    return organization_id


def require_permission(permission_id: str):
    """
    FastAPI dependency to require an organization-level permission.

    Usage:
        @router.post("/{organization_id}/staff")
        async def add_staff(
            user: User = Depends(require_permission("edit_staff_role"))
        ):
            # User holds edit_staff_role in organization_id
            pass

    Returns:
        Dependency function that returns the current user if they have permission

    Raises:
        HTTPException: 403 if there is no accessible organization or the permission is missing
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        organization_id = await _require_organization_access(request, db, current_user)

        if not await has_permission(db, current_user.id, permission_id, PermissionContext.organization(organization_id)):
            log.warning("User %s missing permission %s in %s", current_user.id, permission_id, organization_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required permission: {permission_id}"
            )

        return current_user

    return permission_dependency


def require_any_permission(permission_ids: List[str]):
    """
    FastAPI dependency to require ANY of the specified organization-level permissions.

    Usage:
        @router.get("/{organization_id}/timesheets")
        async def list_timesheets(
            user: User = Depends(require_any_permission(["view_timesheets", "approve_timesheets"]))
        ):
            pass
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        organization_id = await _require_organization_access(request, db, current_user)
        context = PermissionContext.organization(organization_id)

        for permission_id in permission_ids:
            if await has_permission(db, current_user.id, permission_id, context):
                return current_user

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User does not have any of the required permissions"
        )

    return permission_dependency


def require_system_permission(permission_id: str):
    """
    FastAPI dependency to require a SYSTEM-level permission.

    SYSTEM permissions are only ever held through direct custom grants.
    """
    async def permission_dependency(
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        if not await has_permission(db, current_user.id, permission_id, PermissionContext.system()):
            log.warning("User %s missing system permission %s", current_user.id, permission_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required system permission: {permission_id}"
            )
        return current_user

    return permission_dependency


# ============================================================================
# Audit Logging
# ============================================================================

def _user_agent(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    user_agent = request.headers.get("user-agent")
    if user_agent is None:
        return None
    # Column is String(255); PostgreSQL rejects longer values
    return user_agent[:AuditLog.__table__.c.user_agent.type.length]


def create_audit_log(
    db: AsyncSession,
    request: Optional[Request],
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Add an audit log entry to the session.

    The entry is written with the caller's commit, so it is only persisted
    if the change it describes is.

    Args:
        db: Database session
        request: Incoming request, for client IP and user agent
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "delete", "assign_role")
        resource_type: Type of resource (e.g., "role", "permission", "user")
        resource_id: ID of the resource
        organization_id: Organization context
        details: Additional details
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        organization_id=organization_id,
        details=details,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=_user_agent(request),
    )
    db.add(audit_log)

    log.info(
        "Audit: user=%s action=%s resource=%s:%s org=%s",
        user_id, action, resource_type, resource_id, organization_id
    )
    return audit_log
