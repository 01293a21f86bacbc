"""
PokeLedger — Provider Audit Models

Append-only audit trail, never updated:

- provider_raw_payloads: one row per outbound call (and one trimmed row per
  priced variant), with the full response body. Deduplicated per day on the
  request hash.
- provider_ingests: one row per vendor variant observation, matched or not,
  with the match status and reason.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import DATE, TIMESTAMP, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, BigIntPK, JSONDocument


class ProviderRawPayload(Base):
    __tablename__ = "provider_raw_payloads"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    endpoint: Mapped[str] = mapped_column(String, nullable=False)
    params: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    response: Mapped[dict | list | None] = mapped_column(JSONDocument, nullable=True)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    fetched_on: Mapped[date] = mapped_column(DATE, nullable=False, comment="UTC day of fetched_at")
    request_hash: Mapped[str] = mapped_column(String(16), nullable=False)
    canonical_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    variant_ref: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "provider", "request_hash", "fetched_on",
            name="uq_provider_raw_payloads_hash_day",
        ),
    )

    def __repr__(self) -> str:
        return f"<ProviderRawPayload {self.provider} {self.endpoint} status={self.status_code}>"


class ProviderIngest(Base):
    __tablename__ = "provider_ingests"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    job: Mapped[str] = mapped_column(String, nullable=False)
    set_id: Mapped[str | None] = mapped_column(String, nullable=True)
    card_id: Mapped[str | None] = mapped_column(String, nullable=True)
    variant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    canonical_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    printing_id: Mapped[str | None] = mapped_column(String, nullable=True)
    match_status: Mapped[str] = mapped_column(String, nullable=False, comment="matched | unmatched | ambiguous")
    match_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_payload: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    ingested_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_provider_ingests_provider_set", "provider", "set_id"),
    )

    def __repr__(self) -> str:
        return f"<ProviderIngest {self.provider} variant={self.variant_id!r} {self.match_status}>"
