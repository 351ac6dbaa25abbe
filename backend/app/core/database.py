"""
Connection to the reading store (PostgreSQL through SQLAlchemy asyncio + asyncpg).

The service only reads ``rain_readings`` and, on the maintenance route,
deletes corrupted rows, so one engine with default pooling and a
session per request is all it keeps.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base of the reading store tables."""


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Request-scoped session.

    Committed when the route returns (the purge route deletes rows),
    rolled back when it raises.
    """
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def create_reading_tables() -> None:
    """Create ``rain_readings`` and its indexes if missing."""
    from backend.app.stations.models import RainReading

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=[RainReading.__table__])
    logger.info("Reading store schema ready (%s)", RainReading.__tablename__)


async def dispose_engine() -> None:
    await engine.dispose()
    logger.info("Reading store connections closed")
