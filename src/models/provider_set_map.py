"""
PokeLedger — Provider Set Mapping Model

(provider, canonical_set_code) -> provider_set_id with a confidence score.
Upserted by the set matcher on every run; confidence 1.0 means a fetch
returned cards, 0.0 means the id resolved but returned nothing.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import TIMESTAMP, Float, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class ProviderSetMap(Base):
    __tablename__ = "provider_set_map"

    provider: Mapped[str] = mapped_column(String, primary_key=True)
    canonical_set_code: Mapped[str] = mapped_column(String, primary_key=True)
    canonical_set_name: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_set_id: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    match_source: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="mapping | probe | search | verification"
    )
    last_verified_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderSetMap {self.provider}:{self.canonical_set_code} -> "
            f"{self.provider_set_id!r} confidence={self.confidence}>"
        )
