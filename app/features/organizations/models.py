"""
Organization models.

Organizations are the tenants of the system: care homes and staffing agencies.
Users join organizations through role assignments (see OrganizationRole) and
have a current active organization.
"""
from sqlalchemy import String, Boolean, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
import enum

from app.core.database.base import Base, TimestampMixin
from app.utils import generate_ulid


class OrganizationCategory(str, enum.Enum):
    """Kind of tenant."""
    CARE_HOME = "care_home"
    AGENCY = "agency"


class Organization(Base, TimestampMixin):
    """
    Organization model representing a care home or staffing agency.
    """
    __tablename__ = "organizations"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    category: Mapped[OrganizationCategory] = mapped_column(
        SQLEnum(OrganizationCategory),
        nullable=False,
        index=True
    )

    # Optional organization details
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name!r}, category={self.category})>"
