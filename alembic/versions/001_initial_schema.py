"""Initial schema — catalog, provider set map, run log, audit, prices, variant metrics

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-03-01
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.TIMESTAMP(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    # --- canonical_cards (catalog import owns writes) ---
    op.create_table(
        "canonical_cards",
        sa.Column("slug", sa.String(), primary_key=True),
        sa.Column("canonical_name", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("set_name", sa.String(), nullable=True),
        sa.Column("set_code", sa.String(), nullable=True),
        sa.Column("year", sa.INTEGER(), nullable=True),
        sa.Column("card_number", sa.String(), nullable=True),
        sa.Column("language", sa.String(), server_default="EN", nullable=False),
        _created_at(),
    )

    # --- card_printings ---
    op.create_table(
        "card_printings",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("canonical_slug", sa.String(), nullable=False),
        sa.Column("set_code", sa.String(), nullable=True),
        sa.Column("set_name", sa.String(), nullable=True),
        sa.Column("card_number", sa.String(), nullable=True),
        sa.Column("finish", sa.String(), server_default="UNKNOWN", nullable=False),
        sa.Column("edition", sa.String(), server_default="UNKNOWN", nullable=False),
        sa.Column("stamp", sa.String(), nullable=True),
        sa.Column("rarity", sa.String(), nullable=True),
        sa.Column("language", sa.String(), server_default="EN", nullable=False),
        sa.Column("source", sa.String(), server_default="pokemontcg", nullable=False),
        _created_at(),
    )
    op.create_index("ix_card_printings_canonical_slug", "card_printings", ["canonical_slug"])
    op.create_index("ix_card_printings_set_code", "card_printings", ["set_code"])

    # --- provider_set_map ---
    op.create_table(
        "provider_set_map",
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("canonical_set_code", sa.String(), nullable=False),
        sa.Column("canonical_set_name", sa.String(), nullable=True),
        sa.Column("provider_set_id", sa.String(), nullable=False),
        sa.Column("confidence", sa.Float(), server_default="0", nullable=False),
        sa.Column("match_source", sa.String(), nullable=True),
        sa.Column("last_verified_at", sa.TIMESTAMP(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("provider", "canonical_set_code"),
    )

    # --- ingest_runs (run log + resume cursor) ---
    op.create_table(
        "ingest_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("job", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("ok", sa.BOOLEAN(), server_default=sa.false(), nullable=False),
        sa.Column("items_fetched", sa.INTEGER(), server_default="0", nullable=False),
        sa.Column("items_upserted", sa.INTEGER(), server_default="0", nullable=False),
        sa.Column("items_failed", sa.INTEGER(), server_default="0", nullable=False),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("ended_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("meta", JSONB(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_ingest_runs_job_status_ended", "ingest_runs", ["job", "status", "ok", "ended_at"]
    )

    # --- provider_raw_payloads (append-only, one per call per day) ---
    op.create_table(
        "provider_raw_payloads",
        sa.Column("id", sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("params", JSONB(), nullable=True),
        sa.Column("response", JSONB(), nullable=True),
        sa.Column("status_code", sa.INTEGER(), nullable=False),
        sa.Column("fetched_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("fetched_on", sa.DATE(), nullable=False),
        sa.Column("request_hash", sa.String(16), nullable=False),
        sa.Column("canonical_slug", sa.String(), nullable=True),
        sa.Column("variant_ref", sa.String(), nullable=True),
        sa.UniqueConstraint(
            "provider", "request_hash", "fetched_on", name="uq_provider_raw_payloads_hash_day"
        ),
    )

    # --- provider_ingests (append-only, one per variant observation) ---
    op.create_table(
        "provider_ingests",
        sa.Column("id", sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("job", sa.String(), nullable=False),
        sa.Column("set_id", sa.String(), nullable=True),
        sa.Column("card_id", sa.String(), nullable=True),
        sa.Column("variant_id", sa.String(), nullable=True),
        sa.Column("canonical_slug", sa.String(), nullable=True),
        sa.Column("printing_id", sa.String(), nullable=True),
        sa.Column("match_status", sa.String(), nullable=False),
        sa.Column("match_reason", sa.String(), nullable=True),
        sa.Column("raw_payload", JSONB(), nullable=True),
        sa.Column("ingested_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_provider_ingests_provider_set", "provider_ingests", ["provider", "set_id"])

    # --- price_snapshots ---
    op.create_table(
        "price_snapshots",
        sa.Column("id", sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column("canonical_slug", sa.String(), nullable=False),
        sa.Column("printing_id", sa.String(), nullable=True),
        sa.Column("grade", sa.String(), server_default="RAW", nullable=False),
        sa.Column("price_value", sa.DECIMAL(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), server_default="USD", nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_ref", sa.String(), nullable=False),
        sa.Column("observed_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("provider", "provider_ref", name="uq_price_snapshots_provider_ref"),
    )
    op.create_index("ix_price_snapshots_slug", "price_snapshots", ["canonical_slug"])

    # --- price_history_points (insert-only) ---
    op.create_table(
        "price_history_points",
        sa.Column("id", sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column("canonical_slug", sa.String(), nullable=False),
        sa.Column("variant_ref", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("ts", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("price", sa.DECIMAL(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), server_default="USD", nullable=False),
        sa.Column("source_window", sa.String(), nullable=False),
        _created_at(),
        sa.UniqueConstraint(
            "canonical_slug", "variant_ref", "provider", "ts", name="uq_price_history_points_key_ts"
        ),
    )

    # --- variant_metrics ---
    op.create_table(
        "variant_metrics",
        sa.Column("id", sa.BIGINT(), sa.Identity(), primary_key=True),
        sa.Column("canonical_slug", sa.String(), nullable=False),
        sa.Column("printing_id", sa.String(), nullable=False),
        sa.Column("grade", sa.String(), server_default="RAW", nullable=False),
        sa.Column("variant_ref", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        # internal statistics (database refresh functions)
        sa.Column("median_7d", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("median_30d", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("trimmed_median_30d", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("volatility_30d", sa.Float(), nullable=True),
        sa.Column("snapshot_count_30d", sa.INTEGER(), nullable=True),
        # provider-owned
        sa.Column("provider_trend_slope_7d", sa.Float(), nullable=True),
        sa.Column("provider_cov_price_7d", sa.Float(), nullable=True),
        sa.Column("provider_cov_price_30d", sa.Float(), nullable=True),
        sa.Column("provider_price_relative_to_30d_range", sa.Float(), nullable=True),
        sa.Column("provider_price_changes_count_30d", sa.INTEGER(), nullable=True),
        sa.Column("provider_min_price_all_time", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("provider_min_price_all_time_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("provider_max_price_all_time", sa.DECIMAL(12, 2), nullable=True),
        sa.Column("provider_max_price_all_time_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("provider_as_of_ts", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("history_points_30d", sa.INTEGER(), nullable=True),
        sa.Column("signal_trend", sa.Float(), nullable=True),
        sa.Column("signal_breakout", sa.Float(), nullable=True),
        sa.Column("signal_value", sa.Float(), nullable=True),
        sa.Column("signals_as_of_ts", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "canonical_slug", "printing_id", "grade", name="uq_variant_metrics_printing_grade"
        ),
    )


def downgrade() -> None:
    op.drop_table("variant_metrics")
    op.drop_table("price_history_points")
    op.drop_index("ix_price_snapshots_slug", table_name="price_snapshots")
    op.drop_table("price_snapshots")
    op.drop_index("ix_provider_ingests_provider_set", table_name="provider_ingests")
    op.drop_table("provider_ingests")
    op.drop_table("provider_raw_payloads")
    op.drop_index("ix_ingest_runs_job_status_ended", table_name="ingest_runs")
    op.drop_table("ingest_runs")
    op.drop_table("provider_set_map")
    op.drop_index("ix_card_printings_set_code", table_name="card_printings")
    op.drop_index("ix_card_printings_canonical_slug", table_name="card_printings")
    op.drop_table("card_printings")
    op.drop_table("canonical_cards")
