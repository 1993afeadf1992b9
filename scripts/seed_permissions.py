"""
Seed script to populate default permissions, job levels and roles.

Run this script after database initialization to create:
- The system permission catalog
- Default job levels
- Default system roles and their permissions

Pass a username and email to also create a super administrator:

Usage:
    python -m scripts.seed_permissions
    python -m scripts.seed_permissions admin admin@example.com
"""
import asyncio
import sys
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.permissions.defaults import DEFAULT_ROLES, seed_defaults
from app.features.permissions.models import Role
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


async def seed_admin(db: AsyncSession, username: str, email: str) -> User:
    """Create a super administrator unless the username is taken."""
    result = await db.execute(select(User).where(User.username == username))
    existing = result.scalars().first()
    if existing:
        log.info(f"User '{username}' already exists, skipping")
        return existing

    result = await db.execute(select(Role).where(Role.code == "super_admin"))
    role = result.scalars().one()

    admin = User(username=username, email=email, name="Administrator", roles=[role])
    db.add(admin)
    await db.commit()
    await db.refresh(admin)
    log.info(f"Created super administrator '{username}' ({admin.id})")
    return admin


async def main(argv: list[str]):
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            counts = await seed_defaults(db)
            if len(argv) >= 2:
                await seed_admin(db, argv[0], argv[1])

            log.info(f"Permission seeding completed successfully: {counts}")
            log.info("Default roles:")
            for role_code, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {role_code}: {role_config['description']}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
