"""Engine and session factory construction."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config.model import RuntimeConfig
from .models import Base

logger = logging.getLogger("fleetbridge.store")


def create_engine(config: RuntimeConfig) -> AsyncEngine:
    return create_async_engine(
        config.database_url,
        echo=config.debug_logging,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create missing tables; existing tables are left untouched."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger schema ensured on %s", engine.url.render_as_string(hide_password=True))
