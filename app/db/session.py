from collections.abc import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from app.config import settings
from app.db.base import Base

# SQLite connections must not outlive the event loop that opened them
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **({"poolclass": NullPool} if settings.is_sqlite else {}),
)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    import app.models  # noqa: F401 - register all tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session.

    Flows commit explicitly before returning, so a failed commit surfaces as an
    error response. Anything left uncommitted is discarded when the session closes.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
