# apps/api/creativewriter/db/session.py
"""
Database session management for CreativeWriter.
Async SQLAlchemy engine, session factory, and FastAPI dependency.
The engine is created lazily from settings on first use so importing the
package never opens connections.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from creativewriter.core.config import get_settings
from creativewriter.db.models import Base
from creativewriter.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


# ────────────────────────────────────────────────
# Engine (created once, on first use)
# ────────────────────────────────────────────────
def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.DATABASE_URL
        options = {"echo": settings.is_dev, "future": True}
        if url.startswith("postgresql"):
            options.update(
                pool_pre_ping=True,     # Detect & replace stale connections
                pool_size=10,
                max_overflow=5,
                pool_timeout=30,
                pool_recycle=600,
            )
        _engine = create_async_engine(url, **options)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            expire_on_commit=False,       # Objects stay usable after commit
            class_=AsyncSession,
        )
    return _session_factory


# ────────────────────────────────────────────────
# FastAPI Dependency: per-request async session
# ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields a new async session per request.
    Commits on success, rolls back on error, closes always.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ────────────────────────────────────────────────
# Startup: verify connection, optional schema + catalog seed
# ────────────────────────────────────────────────
async def init_db() -> None:
    settings = get_settings()
    engine = get_engine()
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if settings.DB_CREATE_TABLES:
                await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database connection verified",
            extra={"dialect": engine.dialect.name},
        )
    except Exception as e:
        logger.critical("Database connection failed on startup", exc_info=True)
        raise RuntimeError("Database unavailable") from e

    if settings.SEED_DEFAULT_PLANS:
        async with get_session_factory()() as session:
            created = await PlanCatalog(session).seed_defaults()
            await session.commit()
        if created:
            logger.info(f"Seeded {created} default plans")


# ────────────────────────────────────────────────
# Lifespan context manager (use in main.py)
# ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app):
    """FastAPI lifespan handler: initialize & dispose database connections."""
    await init_db()

    yield

    global _engine, _session_factory
    try:
        if _engine is not None:
            await _engine.dispose()
            logger.info("Database engine disposed on shutdown")
    except Exception as dispose_exc:
        logger.warning("Error during DB shutdown", exc_info=dispose_exc)
    finally:
        _engine = None
        _session_factory = None
