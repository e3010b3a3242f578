from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from far_audit.core.config import settings
from far_audit.db.base import Base

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.APP_ENV == "development",
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def init_models(bind: AsyncEngine = engine) -> None:
    """Create any missing tables. Called once from the app lifespan."""
    import far_audit.models  # noqa: F401  registers the mappers on Base.metadata

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


