"""
Seed script to populate the default permission catalog and roles.

Run this script after database initialization to create:
- Default SYSTEM and ORGANIZATION permissions
- Permission implications
- Default roles with their base roles and permissions

Optionally promotes an existing user to super admin by granting every
SYSTEM permission directly.

Usage:
    uv run python -m scripts.seed_permissions
    uv run python -m scripts.seed_permissions --super-admin-email admin@carehome.co.uk
"""
import argparse
import asyncio
from sqlalchemy import select

from app.core.database.engine import get_db, init_db
from app.features.users.models import User
from app.features.permissions.models import ContextType, Permission
from app.features.permissions.defaults import DEFAULT_ROLES, seed_defaults
from app.features.permissions.dependencies import PermissionContext, grant_custom_permission
from app.utils import get_logger


log = get_logger(__name__)


async def promote_super_admin(db, email: str) -> None:
    """Grant every SYSTEM permission to the user with this e-mail."""
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalars().first()
    if user is None:
        raise SystemExit(f"No user with e-mail {email}; sign in once so the account exists")

    result = await db.execute(select(Permission.id).where(Permission.context_type == ContextType.SYSTEM))
    for permission_id in result.scalars().all():
        await grant_custom_permission(db, user.id, permission_id, PermissionContext.system())

    await db.commit()
    log.info("Granted all SYSTEM permissions to %s (%s)", email, user.id)


async def main(super_admin_email: str | None = None):
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            await seed_defaults(db)

            log.info("Permission seeding completed successfully!")
            log.info("Default roles:")
            for role_id, role_config in DEFAULT_ROLES.items():
                log.info("  - %s: %s", role_id, role_config["description"])

            if super_admin_email:
                await promote_super_admin(db, super_admin_email)

        except Exception as e:
            log.error("Error seeding permissions: %s", e, exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed default permissions and roles")
    parser.add_argument("--super-admin-email", help="Grant every SYSTEM permission to this existing user")
    args = parser.parse_args()
    asyncio.run(main(args.super_admin_email))
