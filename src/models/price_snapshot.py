"""
PokeLedger — Price Snapshot & History Models

price_snapshots holds the latest observed price per provider variant, upserted
on (provider, provider_ref). price_history_points is an insert-only time
series; a point already stored for the same key and timestamp is ignored.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import TIMESTAMP, Index, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, BigIntPK


class PriceSnapshot(Base):
    __tablename__ = "price_snapshots"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    canonical_slug: Mapped[str] = mapped_column(String, nullable=False)
    printing_id: Mapped[str | None] = mapped_column(String, nullable=True)
    grade: Mapped[str] = mapped_column(String, nullable=False, default="RAW", server_default="RAW")
    price_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    provider: Mapped[str] = mapped_column(String, nullable=False)
    provider_ref: Mapped[str] = mapped_column(
        String, nullable=False, comment="Provider-scoped variant reference, e.g. justtcg-<variant id>"
    )
    observed_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_price_snapshots_provider_ref"),
        Index("ix_price_snapshots_slug", "canonical_slug"),
    )

    def __repr__(self) -> str:
        return f"<PriceSnapshot {self.provider}:{self.provider_ref} ${self.price_value}>"


class PriceHistoryPoint(Base):
    __tablename__ = "price_history_points"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    canonical_slug: Mapped[str] = mapped_column(String, nullable=False)
    variant_ref: Mapped[str] = mapped_column(String, nullable=False)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    ts: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    source_window: Mapped[str] = mapped_column(String, nullable=False, comment="History window, e.g. 30d")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "canonical_slug", "variant_ref", "provider", "ts",
            name="uq_price_history_points_key_ts",
        ),
    )

    def __repr__(self) -> str:
        return f"<PriceHistoryPoint {self.canonical_slug}/{self.variant_ref} {self.ts} ${self.price}>"
