"""Async SQLAlchemy engine, session factory and declarative base."""
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from ipam.config import settings

Base = declarative_base()


def make_engine(url: str, **kwargs):
    engine = create_async_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        # SQLite ignores ON DELETE CASCADE unless asked per connection
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_fks(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return engine


def make_session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = make_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind=None):
    """Create any missing tables."""
    from ipam import models  # noqa: F401 - registers tables with Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
