"""
Pydantic schemas for organization-related requests and responses.
"""
import re
from datetime import datetime
from typing import Annotated
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, EmailStr, field_validator

from app.features.organizations.models import OrganizationCategory


_PHONE = re.compile(r"^\+?[0-9][0-9 ()-]{5,18}$")


def _check_phone(v: str | None) -> str | None:
    if v is None:
        return v
    v = v.strip()
    if not _PHONE.match(v):
        raise ValueError("phone may only contain digits, spaces, brackets, dashes and a leading +")
    return v


PhoneNumber = Annotated[str | None, AfterValidator(_check_phone)]


class OrganizationCreate(BaseModel):
    """A new care home or agency."""
    name: str = Field(..., min_length=1, max_length=255)
    category: OrganizationCategory = Field(..., description="care_home or agency")
    phone: PhoneNumber = None
    email: EmailStr | None = None

    @field_validator('name', mode='before')
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class OrganizationUpdate(BaseModel):
    """
    Partial update. The category is fixed at creation; deactivating an
    organization hides it from members' organization lists.
    """
    name: str | None = Field(None, min_length=1, max_length=255)
    phone: PhoneNumber = None
    email: EmailStr | None = None
    is_active: bool | None = None

    @field_validator('name', 'is_active', mode='before')
    @classmethod
    def not_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v.strip() if isinstance(v, str) else v


class OrganizationPublic(BaseModel):
    """What a user's profile shows about their current organization."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    category: OrganizationCategory


class OrganizationResponse(OrganizationPublic):
    phone: str | None = None
    email: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    member_count: int | None = Field(None, description="Number of users with an active role in this organization")


class UserOrganizationRole(BaseModel):
    """One of the user's organizations with the roles held there."""
    organization_id: str
    organization_name: str
    category: OrganizationCategory
    roles: list[str]
    is_primary: bool
    is_current: bool


class SwitchOrganizationRequest(BaseModel):
    organization_id: str = Field(..., description="ID of the organization to switch to")


class SwitchOrganizationResponse(BaseModel):
    message: str
    current_organization_id: str
    current_organization_name: str


class HeldRole(BaseModel):
    """An active role assignment, named as the organization's category displays it."""
    role_id: str
    role_name: str
    hierarchy_level: int
    organization_id: str
    organization_name: str
    is_primary: bool


class UserRoleOverview(BaseModel):
    """
    The user's roles ranked by authority.

    highest has the lowest hierarchy_level. primary is the primary
    assignment, or highest when no assignment is marked primary.
    """
    highest: HeldRole | None = None
    lowest: HeldRole | None = None
    primary: HeldRole | None = None
    roles: list[HeldRole] = []
