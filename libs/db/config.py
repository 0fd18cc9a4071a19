from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libs.common.config import Settings, get_settings


def engine_options(settings: Settings) -> dict:
    """Keyword arguments for `create_async_engine` for the configured backend.

    SQLite (local runs, tests) takes no pool sizing and needs a busy timeout
    so concurrent reservations wait for the write lock instead of failing.
    """
    options = {
        "echo": settings.ENVIRONMENT == "local" and settings.LOG_LEVEL == "DEBUG",
        "pool_pre_ping": True,
    }
    if make_url(settings.DATABASE_URL).get_backend_name() == "sqlite":
        options["connect_args"] = {"timeout": 30}
        return options

    options.update(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )
    return options


settings = get_settings()

engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings))

AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)
