import asyncio
from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from wishkeep.core.config import Settings, settings


def is_sqlite_url(url: str) -> bool:
    return "sqlite" in url.lower()


def is_postgres_url(url: str) -> bool:
    return "postgresql" in url.lower()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, app_settings: Settings | None = None) -> AsyncEngine:
    app_settings = app_settings or settings
    if is_postgres_url(url):
        return create_async_engine(
            url,
            echo=False,
            future=True,
            pool_pre_ping=True,
            pool_size=app_settings.db_pool_size,
            max_overflow=app_settings.db_max_overflow,
            pool_recycle=app_settings.db_pool_recycle,
            pool_timeout=app_settings.db_pool_timeout,
        )
    if is_sqlite_url(url):
        # Concurrent writers wait on the file lock instead of failing with "database is locked".
        sqlite_engine = create_async_engine(
            url,
            echo=False,
            future=True,
            connect_args={"timeout": 30},
        )
        event.listen(sqlite_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine
    return create_async_engine(url, echo=False, future=True, pool_pre_ping=True)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, expire_on_commit=False, autoflush=False)


engine = build_engine(settings.database_url)


class Base(DeclarativeBase):
    pass


async_session_factory = build_session_factory(engine)

# Engines (by id) whose tables already exist.
_schema_ready: set[int] = set()
_schema_lock = asyncio.Lock()


async def create_schema(bind: AsyncEngine) -> None:
    from wishkeep.models import models as _models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ensure_schema_ready(bind: AsyncEngine | None = None) -> None:
    """Create DB tables once for environments where startup hooks are skipped."""
    bind = bind or engine
    if id(bind) in _schema_ready:
        return

    async with _schema_lock:
        if id(bind) in _schema_ready:
            return
        await create_schema(bind)
        _schema_ready.add(id(bind))


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session bound to the engine ``create_app`` built for this app's settings."""
    await ensure_schema_ready(request.app.state.engine)
    async with request.app.state.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
