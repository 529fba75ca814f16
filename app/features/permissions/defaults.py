"""
Built-in permission catalog, roles and implications.

seed_defaults() writes them to the store and is safe to run repeatedly:
existing rows are updated in place and missing links are added.
"""
from typing import Dict, List, Tuple
from sqlalchemy import select, insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import (
    ContextType,
    Permission,
    Role,
    PermissionImplication,
    role_permissions,
)
from app.utils import get_logger


log = get_logger(__name__)

SYSTEM = ContextType.SYSTEM
ORGANIZATION = ContextType.ORGANIZATION


# (id, name, category, context, description)
DEFAULT_PERMISSIONS: List[Tuple[str, str, str, ContextType, str]] = [
    # System administration
    ("manage_system", "Manage system", "system", SYSTEM, "Full control over the platform"),
    ("create_system_admin", "Create system admin", "system", SYSTEM, "Promote users to system administrators"),
    ("manage_permissions", "Manage permissions", "system", SYSTEM, "Create, edit and grant permissions"),
    ("manage_roles", "Manage roles", "system", SYSTEM, "Create and edit roles and their permissions"),
    ("get_permissions", "Get permissions", "system", SYSTEM, "Read any user's permissions"),
    ("add_permission", "Add permission", "system", SYSTEM, "Grant permissions directly to users"),
    ("remove_permission", "Remove permission", "system", SYSTEM, "Revoke permissions granted to users"),
    ("view_all_organizations", "View all organizations", "system", SYSTEM, "See every organization"),
    ("manage_all_organizations", "Manage all organizations", "system", SYSTEM, "Edit any organization"),
    ("create_organization", "Create organization", "system", SYSTEM, "Register new organizations"),
    ("delete_organization", "Delete organization", "system", SYSTEM, "Remove organizations"),
    ("view_all_users", "View all users", "system", SYSTEM, "See every user account"),
    ("manage_all_users", "Manage all users", "system", SYSTEM, "Edit or deactivate any user account"),

    # Organization
    ("view_organization", "View organization", "organization", ORGANIZATION, "View organization details"),
    ("edit_organization", "Edit organization", "organization", ORGANIZATION, "Edit organization details"),

    # Staff
    ("view_staff", "View staff", "staff", ORGANIZATION, "View staff and their roles"),
    ("edit_staff_role", "Edit staff role", "staff", ORGANIZATION, "Assign and remove staff roles"),
    ("invite_staff", "Invite staff", "staff", ORGANIZATION, "Invite people to join the organization"),

    # Scheduling
    ("view_schedules", "View schedules", "scheduling", ORGANIZATION, "View rotas and schedules"),
    ("edit_schedules", "Edit schedules", "scheduling", ORGANIZATION, "Edit rotas and schedules"),
    ("view_shift", "View shift", "scheduling", ORGANIZATION, "View shift details"),
    ("create_shift", "Create shift", "scheduling", ORGANIZATION, "Create shifts"),
    ("update_shift", "Update shift", "scheduling", ORGANIZATION, "Update shifts"),
    ("delete_shift", "Delete shift", "scheduling", ORGANIZATION, "Delete shifts"),
    ("assign_users", "Assign users", "scheduling", ORGANIZATION, "Assign staff to shifts"),

    # Timesheets
    ("view_timesheets", "View timesheets", "timesheets", ORGANIZATION, "View timesheets"),
    ("create_timesheets", "Create timesheets", "timesheets", ORGANIZATION, "Submit timesheets"),
    ("edit_timesheets", "Edit timesheets", "timesheets", ORGANIZATION, "Edit timesheets"),
    ("approve_timesheets", "Approve timesheets", "timesheets", ORGANIZATION, "Approve submitted timesheets"),
    ("reject_timesheets", "Reject timesheets", "timesheets", ORGANIZATION, "Reject submitted timesheets"),

    # Leave
    ("view_leave_requests", "View leave requests", "leave", ORGANIZATION, "View leave requests"),
    ("create_leave_request", "Create leave request", "leave", ORGANIZATION, "Request leave"),
    ("manage_leave_requests", "Manage leave requests", "leave", ORGANIZATION, "Approve or deny leave requests"),
    ("view_leave_balance", "View leave balance", "leave", ORGANIZATION, "View own leave balance"),
    ("view_all_leave_balances", "View all leave balances", "leave", ORGANIZATION, "View every staff leave balance"),
    ("view_leave_policy", "View leave policy", "leave", ORGANIZATION, "View the leave policy"),
    ("manage_leave_policy", "Manage leave policy", "leave", ORGANIZATION, "Edit the leave policy"),

    # Finance
    ("view_invoices", "View invoices", "finance", ORGANIZATION, "View invoices"),
    ("edit_invoices", "Edit invoices", "finance", ORGANIZATION, "Create and edit invoices"),
    ("view_payments", "View payments", "finance", ORGANIZATION, "View payments"),
    ("edit_payments", "Edit payments", "finance", ORGANIZATION, "Record and edit payments"),
    ("view_payroll", "View payroll", "finance", ORGANIZATION, "View payroll"),
    ("process_payroll", "Process payroll", "finance", ORGANIZATION, "Run payroll"),

    # Settings
    ("view_settings", "View settings", "settings", ORGANIZATION, "View organization settings"),
    ("edit_settings", "Edit settings", "settings", ORGANIZATION, "Edit organization settings"),

    # Reports
    ("view_reports", "View reports", "reports", ORGANIZATION, "View reports"),
    ("create_reports", "Create reports", "reports", ORGANIZATION, "Create reports"),
    ("edit_reports", "Edit reports", "reports", ORGANIZATION, "Edit reports"),
    ("delete_reports", "Delete reports", "reports", ORGANIZATION, "Delete reports"),
    ("view_dashboard", "View dashboard", "reports", ORGANIZATION, "View the organization dashboard"),
    ("view_audit_logs", "View audit logs", "reports", ORGANIZATION, "View the organization audit trail"),
]


# (parent, child): holding parent grants child
DEFAULT_IMPLICATIONS: List[Tuple[str, str]] = [
    ("manage_system", "manage_permissions"),
    ("manage_system", "manage_roles"),
    ("manage_system", "view_all_organizations"),
    ("manage_system", "manage_all_organizations"),
    ("manage_system", "view_all_users"),
    ("manage_system", "manage_all_users"),
    ("manage_system", "create_system_admin"),
    ("manage_all_organizations", "view_all_organizations"),
    ("manage_all_organizations", "create_organization"),
    ("manage_all_organizations", "delete_organization"),
    ("manage_all_users", "view_all_users"),
    ("manage_permissions", "add_permission"),
    ("manage_permissions", "remove_permission"),
    ("manage_permissions", "get_permissions"),
    ("edit_organization", "view_organization"),
    ("edit_staff_role", "view_staff"),
    ("invite_staff", "view_staff"),
    ("edit_schedules", "view_schedules"),
    ("create_shift", "view_shift"),
    ("update_shift", "view_shift"),
    ("delete_shift", "view_shift"),
    ("view_schedules", "view_shift"),
    ("edit_timesheets", "view_timesheets"),
    ("approve_timesheets", "view_timesheets"),
    ("reject_timesheets", "view_timesheets"),
    ("manage_leave_requests", "view_leave_requests"),
    ("view_all_leave_balances", "view_leave_balance"),
    ("manage_leave_policy", "view_leave_policy"),
    ("edit_invoices", "view_invoices"),
    ("edit_payments", "view_payments"),
    ("process_payroll", "view_payroll"),
    ("edit_settings", "view_settings"),
    ("create_reports", "view_reports"),
    ("edit_reports", "view_reports"),
    ("delete_reports", "view_reports"),
]


ALL_ORGANIZATION = "ALL_ORGANIZATION"

DEFAULT_ROLES: Dict[str, dict] = {
    "system_admin": {
        "name": "System Admin",
        "description": "Platform administrator; holds SYSTEM permissions through direct grants",
        "context_type": SYSTEM,
        "hierarchy_level": 0,
        "permissions": [],
    },
    "owner": {
        "name": "Owner",
        "description": "Organization owner with full control",
        "hierarchy_level": 1,
        "permissions": ALL_ORGANIZATION,
    },
    "admin": {
        "name": "Admin",
        "description": "Organization administrator",
        "hierarchy_level": 2,
        "permissions": ALL_ORGANIZATION,
    },
    "manager": {
        "name": "Manager",
        "description": "Runs day to day operations and approves staff work",
        "hierarchy_level": 3,
        "base_role_id": "staff",
        "permissions": [
            "view_organization", "edit_staff_role", "invite_staff",
            "edit_schedules", "create_shift", "update_shift", "delete_shift", "assign_users",
            "approve_timesheets", "reject_timesheets",
            "manage_leave_requests", "view_all_leave_balances",
            "view_reports", "create_reports", "view_dashboard",
        ],
    },
    "hr_manager": {
        "name": "HR Manager",
        "description": "Manages staff records and leave",
        "hierarchy_level": 3,
        "base_role_id": "staff",
        "permissions": [
            "view_organization", "edit_staff_role", "invite_staff",
            "manage_leave_requests", "view_all_leave_balances", "manage_leave_policy",
            "view_payroll", "view_reports",
        ],
    },
    "accountant": {
        "name": "Accountant",
        "description": "Handles invoices, payments and payroll",
        "hierarchy_level": 3,
        "base_role_id": "staff",
        "permissions": [
            "view_organization", "view_timesheets",
            "edit_invoices", "edit_payments", "process_payroll",
            "view_reports", "create_reports",
        ],
    },
    "nurse": {
        "name": "Nurse",
        "description": "Registered nurse",
        "hierarchy_level": 3,
        "base_role_id": "senior_carer",
        "permissions": ["edit_timesheets"],
    },
    "admin_staff": {
        "name": "Admin Staff",
        "description": "Office staff supporting scheduling",
        "hierarchy_level": 4,
        "base_role_id": "staff",
        "permissions": ["view_staff", "edit_schedules", "create_shift", "update_shift", "view_timesheets"],
    },
    "senior_carer": {
        "name": "Senior Carer",
        "description": "Experienced carer who leads shifts",
        "hierarchy_level": 4,
        "base_role_id": "carer",
        "permissions": ["view_staff", "assign_users", "view_timesheets"],
    },
    "carer": {
        "name": "Carer",
        "description": "Care worker",
        "hierarchy_level": 5,
        "base_role_id": "staff",
        "permissions": ["view_schedules"],
    },
    "staff": {
        "name": "Staff",
        "description": "Baseline access for every member of an organization",
        "hierarchy_level": 6,
        "permissions": [
            "view_shift", "create_timesheets",
            "create_leave_request", "view_leave_balance", "view_leave_policy",
        ],
    },
}


async def seed_permissions(db: AsyncSession) -> int:
    """Create or update the default permissions. Returns how many were created."""
    created = 0
    for perm_id, name, category, context_type, description in DEFAULT_PERMISSIONS:
        permission = await db.get(Permission, perm_id)
        if permission is None:
            permission = Permission(id=perm_id)
            db.add(permission)
            created += 1
        permission.name = name
        permission.category = category
        permission.context_type = context_type
        permission.description = description
        permission.is_system = True

    await db.flush()
    log.info("Seeded permissions: %d created, %d total", created, len(DEFAULT_PERMISSIONS))
    return created


async def seed_implications(db: AsyncSession) -> int:
    """Add missing default implication edges. Returns how many were added."""
    created = 0
    for parent_id, child_id in DEFAULT_IMPLICATIONS:
        if await db.get(PermissionImplication, (parent_id, child_id)) is None:
            db.add(PermissionImplication(parent_permission_id=parent_id, child_permission_id=child_id))
            created += 1

    await db.flush()
    log.info("Seeded implications: %d created", created)
    return created


async def seed_roles(db: AsyncSession) -> int:
    """
    Create or update the default roles and add their missing permissions.

    Base roles are linked after every role exists so declaration order does
    not matter.
    """
    created = 0
    for role_id, spec in DEFAULT_ROLES.items():
        role = await db.get(Role, role_id)
        if role is None:
            role = Role(id=role_id)
            db.add(role)
            created += 1
        role.name = spec["name"]
        role.description = spec["description"]
        role.context_type = spec.get("context_type", ORGANIZATION)
        role.hierarchy_level = spec["hierarchy_level"]
        role.is_system = True
        role.is_custom = False

    await db.flush()

    for role_id, spec in DEFAULT_ROLES.items():
        role = await db.get(Role, role_id)
        role.base_role_id = spec.get("base_role_id")

        if spec["permissions"] == ALL_ORGANIZATION:
            permission_ids = [p[0] for p in DEFAULT_PERMISSIONS if p[3] == ORGANIZATION]
        else:
            permission_ids = spec["permissions"]

        result = await db.execute(
            select(role_permissions.c.permission_id).where(role_permissions.c.role_id == role_id)
        )
        existing = set(result.scalars().all())
        missing = [p for p in permission_ids if p not in existing]
        if missing:
            await db.execute(
                insert(role_permissions),
                [{"role_id": role_id, "permission_id": p} for p in missing]
            )

    await db.flush()
    log.info("Seeded roles: %d created, %d total", created, len(DEFAULT_ROLES))
    return created


async def seed_defaults(db: AsyncSession) -> None:
    """Seed permissions, implications and roles, then commit."""
    await seed_permissions(db)
    await seed_implications(db)
    await seed_roles(db)
    await db.commit()
