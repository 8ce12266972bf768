"""
exam_backend/database.py
Persistence gateway: one async engine per process, a session dependency
and a parameterized raw query primitive.
"""
import logging
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import text

from exam_backend import config
from exam_backend.orm.base import Base
import exam_backend.orm  # registers every model on Base.metadata

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")


def build_engine(url: str, echo: bool = False):
    """Create an async engine with pool settings suited to the dialect."""
    if "sqlite" in url.lower():
        if ":memory:" in url:
            # StaticPool is picked by the dialect; pool sizing does not apply
            return create_async_engine(url, echo=echo, future=True)
        return create_async_engine(
            url,
            echo=echo,
            future=True,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            connect_args={
                "timeout": 30.0,   # SQLite busy timeout in seconds
            }
        )
    return create_async_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
    )


engine = build_engine(DATABASE_URL, echo=config.SQL_ECHO)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db():
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def execute_query(
    db: AsyncSession,
    sql: str,
    params: Optional[Dict[str, Any]] = None
) -> List[Dict[str, Any]]:
    """
    Run a parameterized SQL statement and return rows as dictionaries.

    Values are always bound through ``params``; never format them into ``sql``.
    Statements that return no rows yield an empty list.
    """
    result = await db.execute(text(sql), params or {})
    if not result.returns_rows:
        return []
    return [dict(row) for row in result.mappings().all()]


async def init_db():
    """Create all tables that do not exist yet."""
    logger.info("Initializing database...")
    try:
        logger.info(f"Database dialect: {engine.url.get_backend_name()}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialization complete")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise


async def close_db():
    """Close database connection"""
    await engine.dispose()
    logger.info("Database connection closed")
