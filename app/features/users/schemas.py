"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.features.organizations.schemas import OrganizationPublic


class UserUpdate(BaseModel):
    """
    Profile fields a user may change about themselves.

    Omitted fields are left alone; avatar_url may be sent as null to clear it.
    """
    name: str | None = Field(None, min_length=1, max_length=255)
    avatar_url: str | None = Field(None, max_length=500)

    @field_validator('name', mode='before')
    @classmethod
    def name_not_null(cls, v):
        if v is None:
            raise ValueError("name cannot be cleared")
        return v.strip() if isinstance(v, str) else v

    @field_validator('avatar_url')
    @classmethod
    def avatar_is_web_url(cls, v):
        if v is not None and not v.startswith(("https://", "http://")):
            raise ValueError("avatar_url must be an http(s) URL")
        return v


class UserPublic(BaseModel):
    """What any colleague may see about a user."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    avatar_url: str | None = None


class UserSummary(UserPublic):
    """List entry; adds contact and account state."""
    email: EmailStr
    is_active: bool


class UserResponse(UserSummary):
    """The caller's own profile."""
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    current_organization_id: str | None = None
    current_organization: OrganizationPublic | None = None
