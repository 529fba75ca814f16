"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, implications, custom
grants, role assignments, permission checks and audit logs.
"""
import re
from datetime import datetime
from typing import Annotated, Dict, Any, List, Optional
from pydantic import AfterValidator, BaseModel, Field, ConfigDict, EmailStr, field_validator, model_validator

from app.features.organizations.models import OrganizationCategory
from app.features.permissions.models import ALL_CATEGORIES, ContextType
from app.utils import as_utc


_IDENTIFIER = re.compile(r"^[a-z][a-z0-9_]*$")


def _validate_identifier(v: str, kind: str) -> str:
    if not _IDENTIFIER.match(v):
        raise ValueError(f"{kind} ID must be snake_case: lowercase letters, digits and underscores")
    return v


_CATEGORY_VALUES = {c.value for c in OrganizationCategory}


def _validate_categories(v: List[str]) -> List[str]:
    if not v:
        raise ValueError('organization_categories cannot be empty; use ["*"] for every category')
    unknown = sorted(set(v) - _CATEGORY_VALUES - {ALL_CATEGORIES})
    if unknown:
        raise ValueError(f"Unknown organization categories: {', '.join(unknown)}")
    return list(dict.fromkeys(v))


def _validate_display_names(v: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if v is None:
        return v
    unknown = sorted(set(v) - _CATEGORY_VALUES)
    if unknown:
        raise ValueError(f"display_names keys must be organization categories, got: {', '.join(unknown)}")
    return v


OrganizationCategories = Annotated[List[str], AfterValidator(_validate_categories)]
DisplayNames = Annotated[Optional[Dict[str, str]], AfterValidator(_validate_display_names)]


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Human readable permission name")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")
    category: str = Field(..., min_length=1, max_length=50, description="Grouping (e.g., 'staff', 'timesheets')")
    context_type: ContextType = Field(ContextType.ORGANIZATION, description="SYSTEM or ORGANIZATION")
    organization_categories: OrganizationCategories = Field(
        default_factory=lambda: [ALL_CATEGORIES],
        description='Organization categories the permission applies to; ["*"] for all'
    )
    display_names: DisplayNames = Field(None, description="Per-category display names")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""
    id: str = Field(..., min_length=1, max_length=64, description="Stable permission ID (e.g., 'view_staff')")
    is_system: bool = Field(False, description="Part of the built-in catalog")

    @field_validator('id')
    @classmethod
    def id_snake_case(cls, v: str) -> str:
        """Validate permission ID format."""
        return _validate_identifier(v, "Permission")

    @field_validator('category')
    @classmethod
    def category_lowercase(cls, v: str) -> str:
        """Ensure category is lowercase."""
        return v.lower()


class PermissionUpdate(BaseModel):
    """Schema for updating a permission. description and display_names may be cleared with null."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    organization_categories: Optional[OrganizationCategories] = None
    display_names: DisplayNames = None

    @field_validator('name', 'category', 'organization_categories', mode='before')
    @classmethod
    def not_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v.strip() if isinstance(v, str) else v


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ImpliedPermissionsResponse(BaseModel):
    """Permissions granted transitively by holding one permission."""
    permission_id: str
    implied_permissions: List[str]


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Human readable role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    context_type: ContextType = Field(ContextType.ORGANIZATION, description="SYSTEM or ORGANIZATION")
    base_role_id: Optional[str] = Field(None, description="Role this one inherits permissions from")
    hierarchy_level: int = Field(..., ge=0, le=100, description="Lower means more authority")
    organization_categories: OrganizationCategories = Field(
        default_factory=lambda: [ALL_CATEGORIES],
        description='Organization categories the role can be assigned in; ["*"] for all'
    )
    display_names: DisplayNames = Field(None, description="Per-category display names")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    id: str = Field(..., min_length=1, max_length=64, description="Stable role ID (e.g., 'senior_carer')")
    permission_ids: List[str] = Field(default_factory=list, description="Permissions granted directly to the role")

    @field_validator('id')
    @classmethod
    def id_snake_case(cls, v: str) -> str:
        """Validate role ID format."""
        return _validate_identifier(v, "Role")


class RoleUpdate(BaseModel):
    """Schema for updating a role. Send base_role_id as null to detach it."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    base_role_id: Optional[str] = None
    hierarchy_level: Optional[int] = Field(None, ge=0, le=100)
    organization_categories: Optional[OrganizationCategories] = None
    display_names: DisplayNames = None

    @field_validator('name', 'hierarchy_level', 'organization_categories', mode='before')
    @classmethod
    def not_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v.strip() if isinstance(v, str) else v


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    is_system: bool
    is_custom: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with its direct permissions."""
    permissions: List[PermissionResponse] = []

    model_config = ConfigDict(from_attributes=True)


class RoleHierarchyResponse(BaseModel):
    """A role and its base-role ancestors, nearest first."""
    role_id: str
    chain: List[RoleResponse]


# ============================================================================
# Implication Schemas
# ============================================================================

class ImplicationCreate(BaseModel):
    """Schema for adding a permission implication."""
    parent_permission_id: str = Field(..., description="Holding this permission...")
    child_permission_id: str = Field(..., description="...grants this one")


class ImplicationResponse(BaseModel):
    """Schema for implication response."""
    parent_permission_id: str
    child_permission_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignPermissionToRole(BaseModel):
    """Schema for assigning a permission to a role."""
    permission_id: str = Field(..., description="Permission ID")


class AssignRoleToUser(BaseModel):
    """Schema for assigning a role to a user in an organization."""
    user_id: str = Field(..., description="User ID")
    role_id: str = Field(..., description="Role ID")
    is_primary: bool = Field(False, description="Make this the user's primary role in the organization")
    active_from: Optional[datetime] = Field(None, description="Assignment starts being effective at")
    active_to: Optional[datetime] = Field(None, description="Assignment stops being effective after")

    @field_validator('active_from', 'active_to')
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode='after')
    def window_ordered(self) -> "AssignRoleToUser":
        if self.active_from and self.active_to and self.active_to <= self.active_from:
            raise ValueError("active_to must be after active_from")
        return self


class RoleAssignmentResponse(BaseModel):
    """Schema for a role assignment."""
    id: str
    user_id: str
    organization_id: str
    role_id: str
    is_primary: bool
    is_active: bool
    active_from: Optional[datetime]
    active_to: Optional[datetime]
    assigned_by_id: Optional[str]
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CustomPermissionGrant(BaseModel):
    """Schema for granting a permission directly to a user."""
    user_id: str = Field(..., description="User ID")
    permission_id: str = Field(..., description="Permission ID")
    context_type: ContextType = Field(ContextType.ORGANIZATION, description="SYSTEM or ORGANIZATION")
    organization_id: Optional[str] = Field(None, description="Organization ID (ORGANIZATION grants only)")
    expires_at: Optional[datetime] = Field(None, description="Grant stops applying at this time")

    @field_validator('expires_at')
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode='after')
    def system_grants_unscoped(self) -> "CustomPermissionGrant":
        if self.context_type == ContextType.SYSTEM and self.organization_id:
            raise ValueError("SYSTEM grants cannot be scoped to an organization")
        return self


class CustomPermissionRevoke(BaseModel):
    """Schema for revoking a direct permission grant."""
    user_id: str = Field(..., description="User ID")
    permission_id: str = Field(..., description="Permission ID")
    context_type: ContextType = Field(ContextType.ORGANIZATION, description="SYSTEM or ORGANIZATION")
    organization_id: Optional[str] = Field(None, description="Organization ID (ORGANIZATION grants only)")


class CustomPermissionResponse(BaseModel):
    """Schema for a direct permission grant."""
    id: str
    user_id: str
    permission_id: str
    context_type: ContextType
    context_id: Optional[str]
    granted_by_id: Optional[str]
    granted_at: datetime
    expires_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if the caller has a permission."""
    permission_id: str = Field(..., description="Permission ID")
    context_type: ContextType = Field(ContextType.ORGANIZATION, description="SYSTEM or ORGANIZATION")
    organization_id: Optional[str] = Field(None, description="Organization ID (uses current if not provided)")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    source: Optional[str] = Field(None, description="custom, role, implication or inheritance")
    reason: Optional[str] = None


# ============================================================================
# User Permissions Response
# ============================================================================

class UserPermissionsResponse(BaseModel):
    """Schema for getting all permissions a user has in a context."""
    user_id: str
    context_type: ContextType
    organization_id: Optional[str] = None
    roles: List[str] = []
    permissions: List[str] = []


# ============================================================================
# Super Admin Bootstrap
# ============================================================================

class SuperAdminCreate(BaseModel):
    """Schema for promoting an existing user to super admin."""
    email: EmailStr
    system_secret: str = Field(..., min_length=1)


class SuperAdminResponse(BaseModel):
    user_id: str
    granted_permissions: List[str]


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    organization_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
