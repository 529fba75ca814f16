"""
Shared fixtures: a throwaway SQLite database per test, an HTTP client bound
to the app with get_db overridden, and factories for users, organizations
and the authorization store.
"""
from datetime import datetime
from typing import Optional

import jwt
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.main import app
from app.core.database.base import Base
from app.core.database.engine import get_db, enable_sqlite_foreign_keys
from app.core.limiter import limiter
from app.features.users.models import User
from app.features.organizations.models import Organization, OrganizationCategory
from app.features.permissions.models import (
    ContextType,
    Permission,
    Role,
    PermissionImplication,
    UserCustomPermission,
    OrganizationRole,
    role_permissions,
)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User, organization_id: Optional[str] = None) -> dict:
    """Bearer header with an Appwrite-shaped JWT for a user that already exists locally."""
    token = jwt.encode({"userId": user.appwrite_id}, "test-secret", algorithm="HS256")
    headers = {"Authorization": f"Bearer {token}"}
    if organization_id:
        headers["X-Organization-ID"] = organization_id
    return headers


class StoreFactory:
    """Creates rows directly in the database; every call commits."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._users = 0

    async def user(self, name: str = "Ada Carer", email: Optional[str] = None, **kwargs) -> User:
        self._users += 1
        user = User(
            appwrite_id=f"appwrite-{self._users}",
            email=email or f"user{self._users}@carehome.co.uk",
            name=name,
            **kwargs
        )
        self.db.add(user)
        await self.db.commit()
        return user

    async def organization(self, name: str = "Rose Court", category=OrganizationCategory.CARE_HOME) -> Organization:
        organization = Organization(name=name, category=category)
        self.db.add(organization)
        await self.db.commit()
        return organization

    async def permission(self, permission_id: str, context_type=ContextType.ORGANIZATION) -> Permission:
        permission = Permission(
            id=permission_id,
            name=permission_id.replace("_", " ").title(),
            category="test",
            context_type=context_type,
        )
        self.db.add(permission)
        await self.db.commit()
        return permission

    async def role(
        self,
        role_id: str,
        permissions: tuple = (),
        base_role_id: Optional[str] = None,
        hierarchy_level: int = 5,
        context_type=ContextType.ORGANIZATION
    ) -> Role:
        role = Role(
            id=role_id,
            name=role_id.title(),
            base_role_id=base_role_id,
            hierarchy_level=hierarchy_level,
            context_type=context_type,
        )
        self.db.add(role)
        await self.db.flush()
        if permissions:
            await self.db.execute(
                insert(role_permissions),
                [{"role_id": role_id, "permission_id": p} for p in permissions]
            )
        await self.db.commit()
        return role

    async def implication(self, parent_id: str, child_id: str) -> None:
        self.db.add(PermissionImplication(parent_permission_id=parent_id, child_permission_id=child_id))
        await self.db.commit()

    async def assign(
        self,
        user: User,
        organization: Organization,
        role_id: str,
        is_primary: bool = False,
        is_active: bool = True,
        active_from: Optional[datetime] = None,
        active_to: Optional[datetime] = None
    ) -> OrganizationRole:
        assignment = OrganizationRole(
            user_id=user.id,
            organization_id=organization.id,
            role_id=role_id,
            is_primary=is_primary,
            is_active=is_active,
            active_from=active_from,
            active_to=active_to,
        )
        self.db.add(assignment)
        await self.db.commit()
        return assignment

    async def grant(
        self,
        user: User,
        permission_id: str,
        organization: Optional[Organization] = None,
        context_type=ContextType.ORGANIZATION,
        expires_at: Optional[datetime] = None
    ) -> UserCustomPermission:
        grant = UserCustomPermission(
            user_id=user.id,
            permission_id=permission_id,
            context_type=context_type,
            context_id=organization.id if organization else None,
            expires_at=expires_at,
        )
        self.db.add(grant)
        await self.db.commit()
        return grant


@pytest.fixture
def factory(db):
    return StoreFactory(db)


@pytest.fixture
def headers_for():
    return auth_headers
