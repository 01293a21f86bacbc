"""
PokeLedger — Application Entrypoint

Initializes the async SQLAlchemy engine, configures structlog, and starts the
sync scheduler.

Run via:
    python -m src.main
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.config import SyncJob, settings
from src.pipeline.scheduler import run_scheduler


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    # stdlib logging for third-party libraries (httpx, sqlalchemy)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


async def create_db_engine(
    database_url: str | None = None,
) -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    Uses asyncpg for Postgres; any other async URL (e.g. sqlite+aiosqlite)
    is created without pool sizing.

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)
    url = database_url or settings.DATABASE_URL
    logger.info("database_engine_initializing", dialect=url.split(":", 1)[0])

    engine_kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if url.startswith("postgresql"):
        engine_kwargs.update(pool_size=5, max_overflow=10)
    engine = create_async_engine(url, **engine_kwargs)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


# ---------------------------------------------------------------------------
# Startup Checks
# ---------------------------------------------------------------------------


def warn_missing_credentials() -> list[str]:
    """Log which jobs or surfaces will refuse to run; returns the missing setting names."""
    logger = structlog.get_logger(__name__)
    missing = []
    if not settings.JUSTTCG_API_KEY:
        missing.append("JUSTTCG_API_KEY")
        logger.warning("config_justtcg_api_key_missing", disables=SyncJob.JUSTTCG_PRICE_SYNC.value)
    if not settings.CRON_SECRET:
        missing.append("CRON_SECRET")
        logger.warning("config_cron_secret_missing", disables="sync_trigger")
    return missing


async def check_database(engine: Any, session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Run SELECT 1; disposes the engine and re-raises when the database is unreachable."""
    logger = structlog.get_logger(__name__)
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e), error_type=type(e).__name__)
        await engine.dispose()
        raise
    logger.info("database_health_check_passed")


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def main() -> None:
    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)
    logger.info("pokeledger_startup_begin", version="0.1.0")

    warn_missing_credentials()
    engine, session_factory = await create_db_engine()
    await check_database(engine, session_factory)

    try:
        await run_scheduler(engine, session_factory)
    finally:
        await engine.dispose()
        logger.info("pokeledger_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
