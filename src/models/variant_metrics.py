"""
PokeLedger — Variant Metrics Model

One row per (canonical_slug, printing_id, grade). Columns fall into two
ownership groups:

- internal: medians, volatility and snapshot counts, computed by the
  database's own refresh functions from price history. Never written here.
- provider: the vendor's analytics plus the signals derived from them,
  written by the sync jobs through a column-scoped upsert.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import TIMESTAMP, Float, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, BigIntPK

# Columns the provider sync may write on conflict
PROVIDER_METRIC_COLUMNS: tuple[str, ...] = (
    "variant_ref",
    "provider",
    "provider_trend_slope_7d",
    "provider_cov_price_7d",
    "provider_cov_price_30d",
    "provider_price_relative_to_30d_range",
    "provider_price_changes_count_30d",
    "provider_min_price_all_time",
    "provider_min_price_all_time_date",
    "provider_max_price_all_time",
    "provider_max_price_all_time_date",
    "provider_as_of_ts",
    "history_points_30d",
    "signal_trend",
    "signal_breakout",
    "signal_value",
    "signals_as_of_ts",
    "updated_at",
)


class VariantMetrics(Base):
    __tablename__ = "variant_metrics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    canonical_slug: Mapped[str] = mapped_column(String, nullable=False)
    printing_id: Mapped[str] = mapped_column(String, nullable=False)
    grade: Mapped[str] = mapped_column(String, nullable=False, default="RAW", server_default="RAW")
    variant_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)

    # --- internal (owned by database refresh functions) ---
    median_7d: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    median_30d: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    trimmed_median_30d: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    volatility_30d: Mapped[float | None] = mapped_column(Float, nullable=True)
    snapshot_count_30d: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # --- provider-owned ---
    provider_trend_slope_7d: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider_cov_price_7d: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider_cov_price_30d: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider_price_relative_to_30d_range: Mapped[float | None] = mapped_column(
        Float, nullable=True, comment="0 = at 30d low, 1 = at 30d high"
    )
    provider_price_changes_count_30d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_min_price_all_time: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    provider_min_price_all_time_date: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    provider_max_price_all_time: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    provider_max_price_all_time_date: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    provider_as_of_ts: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    history_points_30d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    signal_trend: Mapped[float | None] = mapped_column(Float, nullable=True)
    signal_breakout: Mapped[float | None] = mapped_column(Float, nullable=True)
    signal_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    signals_as_of_ts: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("canonical_slug", "printing_id", "grade", name="uq_variant_metrics_printing_grade"),
    )

    def __repr__(self) -> str:
        return f"<VariantMetrics {self.canonical_slug}/{self.printing_id}/{self.grade}>"
