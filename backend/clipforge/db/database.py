"""Database connection and session management."""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from clipforge.config import settings

# Base class for models
Base = declarative_base()


def create_engine_for(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with SQLite foreign keys and busy timeout enabled."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = 30

    new_engine = create_async_engine(
        database_url,
        echo=echo,
        future=True,
        connect_args=connect_args,
    )

    if database_url.startswith("sqlite"):
        # Required for CASCADE deletes to work properly
        @event.listens_for(new_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Enable foreign keys for SQLite connections."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def create_session_maker(db_engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to an engine."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Create async engine
engine = create_engine_for(settings.database_url, echo=settings.debug)

# Session factory
async_session_maker = create_session_maker(engine)


async def get_db() -> AsyncSession:
    """Dependency to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(db_engine: AsyncEngine = None):
    """Initialize database tables."""
    # Import models so they register on Base.metadata
    import clipforge.models  # noqa: F401

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(db_engine: AsyncEngine = None):
    """Close database connections."""
    await (db_engine or engine).dispose()
