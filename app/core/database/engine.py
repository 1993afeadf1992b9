"""
Async engine, session factory and schema bootstrap for the directory store.

SQLite through aiosqlite by default; any async SQLAlchemy URL in
DATABASE_URL works without code changes.
"""
from collections.abc import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core import config
from app.utils import get_logger

log = get_logger(__name__)

_is_sqlite = config.SQLALCHEMY_DATABASE_URL.startswith("sqlite")

engine = create_async_engine(
    config.SQLALCHEMY_DATABASE_URL,
    # A pooled aiosqlite connection cannot be shared across event loops
    poolclass=NullPool if _is_sqlite else None,
    echo=config.SQL_ECHO,
    future=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; rolled back if the handler raises."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """Create every directory table that does not exist yet."""
    from app.core.database.base import Base

    # Registers each model on Base.metadata
    from app.features.users.models import User  # noqa: F401
    from app.features.departments.models import Department  # noqa: F401
    from app.features.groups.models import Group  # noqa: F401
    from app.features.job_levels.models import JobLevel  # noqa: F401
    from app.features.permissions.models import Permission, Role, AuditLog  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info(f"Directory schema ready ({len(Base.metadata.tables)} tables)")
