from core.config import settings
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


class Base(DeclarativeBase):
    pass


def async_database_url(database_url: str) -> str:
    """Points plain postgres/sqlite URLs at their async drivers."""
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        return database_url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def build_engine(database_url: str) -> AsyncEngine:
    url = async_database_url(database_url)
    scheme, _, location = url.partition("://")
    if scheme.startswith("sqlite") and location.lstrip("/") in ("", ":memory:"):
        # In-memory SQLite lives inside one connection, so every session shares it.
        return create_async_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(url, pool_pre_ping=True)


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine: AsyncEngine = build_engine(settings.DATABASE_URL)

AsyncSessionLocal = session_factory(engine)


async def init_orm(target: AsyncEngine | None = None) -> None:
    import models  # noqa: F401  registers tables on Base.metadata

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
