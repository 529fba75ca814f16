"""
Permission, Role and assignment models for organization-scoped RBAC.

This module implements the authorization store:
- Permissions and roles keyed by stable string IDs (e.g. "view_staff", "carer")
- Role-permission links and single-parent role inheritance (base roles)
- Permission implications (holding a parent permission implies the child)
- Direct user grants that bypass roles, optionally expiring
- Role assignments of users within organizations
"""
from datetime import datetime
import enum
from typing import Any, Dict
from sqlalchemy import (
    String,
    ForeignKey,
    Table,
    Column,
    JSON,
    Text,
    DateTime,
    Boolean,
    Integer,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin
from app.utils import generate_ulid, utcnow


class ContextType(str, enum.Enum):
    """Scope a permission, role or grant applies to."""
    SYSTEM = "SYSTEM"
    ORGANIZATION = "ORGANIZATION"


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(64), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(64), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# Wildcard entry in organization_categories: available to every category
ALL_CATEGORIES = "*"


def _all_categories() -> list[str]:
    return [ALL_CATEGORIES]


# ============================================================================
# Core Models
# ============================================================================

class OrganizationCategoryScoped:
    """
    Mixin for catalog entries that only apply to some kinds of organization.

    organization_categories lists OrganizationCategory values, or "*" for all.
    display_names optionally renames the entry per category, e.g. a "carer"
    role shown as "Care Assistant" in agencies.
    """
    organization_categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=_all_categories)
    display_names: Mapped[Dict[str, str] | None] = mapped_column(JSON, nullable=True)

    def applies_to_category(self, category) -> bool:
        value = getattr(category, "value", category)
        categories = self.organization_categories or [ALL_CATEGORIES]
        return ALL_CATEGORIES in categories or value in categories

    def display_name_for(self, category) -> str:
        value = getattr(category, "value", category)
        return (self.display_names or {}).get(value) or self.name


class Permission(Base, TimestampMixin, OrganizationCategoryScoped):
    """
    Permission model naming a single capability.

    IDs are stable snake_case strings so route guards can reference them
    directly, e.g. require_permission("approve_timesheets").
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    context_type: Mapped[ContextType] = mapped_column(
        SQLEnum(ContextType),
        nullable=False,
        default=ContextType.ORGANIZATION,
        index=True
    )
    is_system: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Permission(id={self.id!r}, context={self.context_type})>"


class Role(Base, TimestampMixin, OrganizationCategoryScoped):
    """
    Role model grouping permissions.

    A role may name a base role; it then inherits every permission of the
    base role and, transitively, of the base role's ancestors.
    Lower hierarchy_level means more authority (owner=1, staff=6).
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    context_type: Mapped[ContextType] = mapped_column(
        SQLEnum(ContextType),
        nullable=False,
        default=ContextType.ORGANIZATION,
        index=True
    )
    base_role_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    hierarchy_level: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id!r}, base={self.base_role_id!r}, level={self.hierarchy_level})>"


class PermissionImplication(Base, TimestampMixin):
    """Edge of the implication graph: holding parent grants child."""
    __tablename__ = "permission_implications"

    parent_permission_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        primary_key=True
    )
    child_permission_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        primary_key=True,
        index=True
    )

    def __repr__(self) -> str:
        return f"<PermissionImplication({self.parent_permission_id!r} -> {self.child_permission_id!r})>"


class UserCustomPermission(Base, TimestampMixin):
    """
    Permission granted directly to a user, bypassing roles.

    SYSTEM grants have no context_id. ORGANIZATION grants carry the
    organization ID in context_id. A grant with expires_at in the past
    is ignored by the resolver.
    """
    __tablename__ = "user_custom_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", "context_type", "context_id", name="uq_user_custom_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    context_type: Mapped[ContextType] = mapped_column(SQLEnum(ContextType), nullable=False)
    context_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    granted_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<UserCustomPermission(user_id={self.user_id}, permission={self.permission_id!r}, "
            f"context={self.context_type}:{self.context_id})>"
        )


class OrganizationRole(Base, TimestampMixin):
    """
    Assignment of a role to a user within one organization.

    A user may hold several roles in one organization and roles across many
    organizations. At most one assignment per (user, organization) is primary.
    """
    __tablename__ = "organization_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", "role_id", name="uq_organization_role"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    active_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    active_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<OrganizationRole(user_id={self.user_id}, org_id={self.organization_id}, "
            f"role={self.role_id!r}, active={self.is_active})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking permission-related actions.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Context
    organization_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
