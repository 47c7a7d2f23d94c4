"""
FoundMatch — database engine and sessions

The engine is built lazily from settings.  On Cloud Run it connects through
the Cloud SQL Python Connector with IAM auth; everywhere else it uses
``DATABASE_URL`` directly.  Pool tuning is applied only to PostgreSQL so the
same code path serves the SQLite test store.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy import JSON, Text
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from foundmatch.config import Settings, get_settings

logger = structlog.get_logger("foundmatch.database")


class Base(DeclarativeBase):
    """Declarative base for cases, photos, matches and feedback."""


# Portable JSON column: JSONB on PostgreSQL, JSON elsewhere.
JSONB = JSON().with_variant(PG_JSONB(astext_type=Text()), "postgresql")

POSTGRES_POOL: dict[str, Any] = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def normalise_url(url: str) -> str:
    """Route bare ``postgresql://`` URLs through asyncpg."""
    scheme, sep, rest = url.partition("://")
    if scheme in ("postgres", "postgresql"):
        return f"postgresql+asyncpg{sep}{rest}"
    return url


def _uses_cloud_sql(settings: Settings) -> bool:
    return bool(settings.CLOUD_SQL_USE_UNIX_SOCKET and settings.CLOUD_SQL_INSTANCE_CONNECTION)


def _cloud_sql_creator(settings: Settings):
    from google.cloud.sql.connector import Connector

    connector = Connector()

    async def connect():
        return await connector.connect_async(
            settings.CLOUD_SQL_INSTANCE_CONNECTION,
            "asyncpg",
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            db=settings.DB_NAME,
            enable_iam_auth=True,
        )

    return connect


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    settings = get_settings()
    echo = settings.LOG_LEVEL.upper() == "DEBUG"

    if _uses_cloud_sql(settings):
        engine = create_async_engine(
            "postgresql+asyncpg://",
            async_creator=_cloud_sql_creator(settings),
            echo=echo,
            **POSTGRES_POOL,
        )
        logger.info(
            "database_engine_created",
            strategy="cloud_sql_connector",
            instance=settings.CLOUD_SQL_INSTANCE_CONNECTION,
        )
        return engine

    url = normalise_url(settings.DATABASE_URL)
    pool = POSTGRES_POOL if url.startswith("postgresql") else {}
    engine = create_async_engine(url, echo=echo, **pool)
    logger.info("database_engine_created", strategy="database_url", dialect=engine.dialect.name)
    return engine


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(), class_=AsyncSession, expire_on_commit=False)


def async_session_factory() -> AsyncSession:
    """Open a session on the shared engine; use it as an async context manager."""
    return get_session_factory()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: committed on success, rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
