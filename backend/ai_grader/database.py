"""Async SQLAlchemy engine and session factory.

Usage in routes:
    from ai_grader.database import get_db

    @router.get("/items")
    async def list_items(db: AsyncSession = Depends(get_db)):
        result = await db.execute(select(Item))
        return result.scalars().all()

Services take an ``async_sessionmaker`` so tests can point them at their own engine.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ai_grader.config import settings


def build_engine(url: str) -> AsyncEngine:
    """Create an engine with pool settings suited to the backend."""
    if url.startswith("sqlite"):
        # SQLite serializes writers itself; a fresh connection per session
        # keeps aiosqlite connections off foreign event loops.
        return create_async_engine(
            url, echo=False, poolclass=NullPool, connect_args={"timeout": 30},
        )
    return create_async_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)

async_session = build_session_factory(engine)


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
