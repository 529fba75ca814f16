"""
Async engine, session factory and the get_db dependency.

SQLite (aiosqlite) is the default store; point DATABASE_URL at
postgresql+asyncpg://... and install the postgres extra to switch.
"""
from collections.abc import AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)

_is_sqlite = config.SQLALCHEMY_DATABASE_URL.startswith("sqlite")


def enable_sqlite_foreign_keys(async_engine: AsyncEngine) -> None:
    """
    Turn on foreign key enforcement for every new SQLite connection.

    SQLite ignores ON DELETE rules unless the pragma is set per connection;
    role assignments and custom grants rely on them cascading.
    """
    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    config.SQLALCHEMY_DATABASE_URL,
    # SQLite connections are cheap and must not be shared across tasks
    poolclass=NullPool if _is_sqlite else None,
    echo=config.LOG_LEVEL == "DEBUG",
)
if _is_sqlite:
    enable_sqlite_foreign_keys(engine)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session. Commits when the route returns normally and
    rolls back if it raises, so audit entries added by a route are
    persisted together with the change they describe.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create any missing tables. Existing tables are left untouched."""
    from app.core.database.base import Base

    # Register every mapped class on Base.metadata
    import app.features.users.models  # noqa: F401
    import app.features.organizations.models  # noqa: F401
    import app.features.permissions.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("Database schema ready (%s tables)", len(Base.metadata.tables))
