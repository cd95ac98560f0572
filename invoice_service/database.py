from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import settings


def build_engine(database_url: str, echo: bool = False):
    """Create an async engine; pool sizing only applies to server databases."""
    engine_kwargs = {"echo": echo, "future": True}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_size=20,
            max_overflow=30,
        )
    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Create async engine
engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# Create async session maker
AsyncSessionLocal = build_session_factory(engine)

# Base class for models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used for every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def init_models(bind=engine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# Dependency to get database session
async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
