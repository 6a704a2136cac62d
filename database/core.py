from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool, StaticPool

from config import Config


class Base(DeclarativeBase):
    pass


def create_engine(config: Config) -> AsyncEngine:
    """Build the async engine for the configured database.

    The engine is owned by whoever creates it (the application lifespan,
    a script, a test fixture) and is never stored at module level.
    """
    engine_kwargs = {
        # echo only in debug mode
        "echo": config.DEBUG,
    }
    url = config.DATABASE_URL

    # SQLite does not take the PostgreSQL pool settings
    if config.IS_SQLITE:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        # An in-memory database lives as long as its single connection
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs.update(
            {
                "pool_pre_ping": True,
                "pool_size": config.DB_POOL_SIZE,
                "max_overflow": config.DB_MAX_OVERFLOW,
                "pool_recycle": 3600,
            }
        )

    return create_async_engine(url, **engine_kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )

