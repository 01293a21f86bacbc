"""
PokeLedger — Canonical Card & Card Printing Models

Authoritative card identity, owned by the catalog import. The ingestion
pipeline only reads these tables: it attaches price and metric facts to an
existing printing id and never mutates identity columns.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import TIMESTAMP, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class CanonicalCard(Base):
    """A unique printed card identity, keyed by slug."""

    __tablename__ = "canonical_cards"

    slug: Mapped[str] = mapped_column(
        String, primary_key=True, comment="Slug derived from name, set and number"
    )
    canonical_name: Mapped[str] = mapped_column(String, nullable=False)
    subject: Mapped[str | None] = mapped_column(String, nullable=True, comment="Pokémon depicted")
    set_name: Mapped[str | None] = mapped_column(String, nullable=True)
    set_code: Mapped[str | None] = mapped_column(String, nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    card_number: Mapped[str | None] = mapped_column(String, nullable=True)
    language: Mapped[str] = mapped_column(String, nullable=False, default="EN", server_default="EN")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<CanonicalCard slug={self.slug!r}>"


class CardPrinting(Base):
    """
    One physical print variant of a canonical card.

    finish: HOLO | REVERSE_HOLO | NON_HOLO | UNKNOWN
    edition: FIRST_EDITION | UNLIMITED | UNKNOWN
    """

    __tablename__ = "card_printings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    canonical_slug: Mapped[str] = mapped_column(String, nullable=False, index=True)
    set_code: Mapped[str | None] = mapped_column(String, nullable=True)
    set_name: Mapped[str | None] = mapped_column(String, nullable=True)
    card_number: Mapped[str | None] = mapped_column(String, nullable=True)
    finish: Mapped[str] = mapped_column(String, nullable=False, default="UNKNOWN", server_default="UNKNOWN")
    edition: Mapped[str] = mapped_column(String, nullable=False, default="UNKNOWN", server_default="UNKNOWN")
    stamp: Mapped[str | None] = mapped_column(String, nullable=True)
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    language: Mapped[str] = mapped_column(String, nullable=False, default="EN", server_default="EN")
    source: Mapped[str] = mapped_column(
        String, nullable=False, default="pokemontcg", server_default="pokemontcg",
        comment="Catalog the printing was imported from",
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_card_printings_set_code", "set_code"),
    )

    def __repr__(self) -> str:
        return (
            f"<CardPrinting id={self.id!r} slug={self.canonical_slug!r} "
            f"number={self.card_number!r} finish={self.finish!r}>"
        )
