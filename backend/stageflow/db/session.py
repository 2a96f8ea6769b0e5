from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession

from stageflow.core.config import settings


def create_engine(database_uri: str = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.
    SQLite connections get foreign key enforcement switched on.
    """
    uri = database_uri or settings.DATABASE_URI
    engine = create_async_engine(
        uri,
        pool_pre_ping=True,
        echo=settings.SQL_ECHO,
    )

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

    return engine


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine()

# Create async session factory
SessionLocal = create_session_factory(engine)


async def get_db():
    """
    Dependency function to get a DB session.
    Yields a session that is rolled back if the request fails.
    """
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
