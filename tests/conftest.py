"""
PokeLedger — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory SQLite database built from the declarative models
- SqlStore over that database
- Catalog seeding helper
- Fast retry policy (no real waits)
- JustTCG payload builders
"""

from __future__ import annotations

from typing import Any, AsyncGenerator, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.models.base import Base
from src.pipeline.http import RetryPolicy
from src.pipeline.store import SqlStore


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps one connection, so every session sees the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> SqlStore:
    return SqlStore(session_factory)


@pytest.fixture
def seed_printings(store: SqlStore) -> Callable[..., Any]:
    """
    Insert card_printings rows with catalog defaults filled in.

    Usage:
        await seed_printings({"id": "p1", "canonical_slug": "...", ...})
    """

    async def _seed(*rows: dict[str, Any]) -> None:
        defaults = {
            "finish": "NON_HOLO",
            "edition": "UNLIMITED",
            "stamp": None,
            "rarity": None,
            "language": "EN",
            "source": "pokemontcg",
        }
        await store.insert("card_printings", [{**defaults, **row} for row in rows])

    return _seed


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    """Three attempts, tiny deterministic backoff."""
    return RetryPolicy(
        max_attempts=3,
        backoff_base=0.001,
        backoff_max=0.001,
        jitter_max=0.0,
        retry_after_cap=0.001,
    )


# ---------------------------------------------------------------------------
# JustTCG payload builders
# ---------------------------------------------------------------------------


@pytest.fixture
def justtcg_variant() -> Callable[..., dict[str, Any]]:
    def _variant(variant_id: str = "v1", **overrides: Any) -> dict[str, Any]:
        payload = {
            "id": variant_id,
            "condition": "Near Mint",
            "printing": "Normal",
            "language": "English",
            "price": 4.50,
            "lastUpdated": 1_767_225_600,
            "trendSlope7d": 0.12,
            "covPrice30d": 0.08,
            "priceRelativeTo30dRange": 0.25,
            "priceChangesCount30d": 6,
            "priceHistory": [
                {"p": 4.10, "t": 1_766_620_800},
                {"p": 4.50, "t": 1_767_225_600},
            ],
        }
        payload.update(overrides)
        return payload

    return _variant


@pytest.fixture
def justtcg_card() -> Callable[..., dict[str, Any]]:
    def _card(card_id: str, number: str, variants: list[dict[str, Any]], **overrides: Any) -> dict[str, Any]:
        payload = {
            "id": card_id,
            "name": f"Card {number}",
            "number": number,
            "set": "base-set-pokemon",
            "set_name": "Base Set",
            "rarity": "Common",
            "variants": variants,
        }
        payload.update(overrides)
        return payload

    return _card


@pytest.fixture
def justtcg_page() -> Callable[..., dict[str, Any]]:
    def _page(cards: list[dict[str, Any]], has_more: bool = False, offset: int = 0) -> dict[str, Any]:
        return {
            "data": cards,
            "meta": {"total": len(cards), "limit": 200, "offset": offset, "hasMore": has_more},
            "_metadata": {"apiRequestsUsed": 1},
        }

    return _page
