"""
PokeLedger — Ingest Run Model

One row per sync invocation. Inserted as status=started, finalized as
status=finished with ok, item counts and a metadata blob. The metadata of the
latest finished-and-ok run is the resume cursor for the next run.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import TIMESTAMP, Boolean, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, JSONDocument


class IngestRun(Base):
    __tablename__ = "ingest_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, comment="Client-generated UUID")
    job: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="started")
    ok: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    items_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_upserted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    ended_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    meta: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_ingest_runs_job_status_ended", "job", "status", "ok", "ended_at"),
    )

    def __repr__(self) -> str:
        return f"<IngestRun id={self.id!r} job={self.job!r} status={self.status!r} ok={self.ok}>"
