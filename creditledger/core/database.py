# creditledger/core/database.py
"""Async engine and session factory shared by the ledger store and the API."""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from creditledger.core.config import get_database_url


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # aiosqlite drives the connection from its own thread
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


DATABASE_URL = get_database_url()
engine = create_async_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))

# Ledger rows are read back after commit (results, audit), so keep them loaded
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


class Base(DeclarativeBase):
    pass


async def init_models() -> None:
    """Create all ledger tables if they do not exist yet."""
    import creditledger.models  # noqa: F401  registers tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_models() -> None:
    import creditledger.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
