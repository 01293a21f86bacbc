"""
PokeLedger — Layered Writer

Persists one unit's worth of staged rows in a fixed layer order:

1. raw payloads        insert, duplicates (same request, same day) ignored
2. ingest audit rows   append-only insert
3. price snapshots     upsert on (provider, provider_ref), last write wins
4. history points      insert, conflicts on (slug, variant_ref, provider, ts) ignored
5. variant metrics     upsert on (slug, printing_id, grade), provider columns only

Each layer is written in bounded chunks. A failing chunk is counted and its
first error kept, then the writer moves on to the next chunk and the next
layer. Nothing here raises on a store error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.config import settings
from src.models import PROVIDER_METRIC_COLUMNS
from src.pipeline.store import Store

logger = structlog.get_logger(__name__)

Row = dict[str, Any]


@dataclass
class LayerResult:
    written: int = 0
    failed: int = 0
    first_error: str | None = None

    def record_failure(self, rows: int, error: Exception) -> None:
        self.failed += rows
        if self.first_error is None:
            self.first_error = str(error)


@dataclass
class WriteBatch:
    """Rows staged for one unit, one list per layer."""
    raw_payloads: list[Row] = field(default_factory=list)
    ingest_rows: list[Row] = field(default_factory=list)
    snapshots: list[Row] = field(default_factory=list)
    history_points: list[Row] = field(default_factory=list)
    metrics: list[Row] = field(default_factory=list)

    def extend(self, other: WriteBatch) -> None:
        self.raw_payloads.extend(other.raw_payloads)
        self.ingest_rows.extend(other.ingest_rows)
        self.snapshots.extend(other.snapshots)
        self.history_points.extend(other.history_points)
        self.metrics.extend(other.metrics)

    def __len__(self) -> int:
        return (
            len(self.raw_payloads)
            + len(self.ingest_rows)
            + len(self.snapshots)
            + len(self.history_points)
            + len(self.metrics)
        )


@dataclass
class WriteSummary:
    raw_payloads: LayerResult = field(default_factory=LayerResult)
    ingest_rows: LayerResult = field(default_factory=LayerResult)
    snapshots: LayerResult = field(default_factory=LayerResult)
    history_points: LayerResult = field(default_factory=LayerResult)
    metrics: LayerResult = field(default_factory=LayerResult)

    def layers(self) -> tuple[LayerResult, ...]:
        return (self.raw_payloads, self.ingest_rows, self.snapshots, self.history_points, self.metrics)

    @property
    def failed(self) -> int:
        return sum(layer.failed for layer in self.layers())

    @property
    def first_error(self) -> str | None:
        return next((layer.first_error for layer in self.layers() if layer.first_error), None)

    def counts(self) -> dict[str, int]:
        """Per-layer written counts, keyed as stored in run metadata."""
        return {
            "rawPayloadsWritten": self.raw_payloads.written,
            "ingestRowsWritten": self.ingest_rows.written,
            "snapshotsWritten": self.snapshots.written,
            "historyPointsWritten": self.history_points.written,
            "variantMetricsWritten": self.metrics.written,
        }


def _last_per_key(rows: Sequence[Row], keys: Sequence[str]) -> list[Row]:
    """Keep the last row per conflict key; one upsert statement may not touch a row twice."""
    by_key: dict[tuple, Row] = {}
    for row in rows:
        by_key[tuple(row.get(k) for k in keys)] = row
    return list(by_key.values())


def _chunks(rows: Sequence[Row], size: int):
    size = max(1, size)
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class LayeredWriter:
    """
    Writes WriteBatch layers through a Store.

    Usage:
        writer = LayeredWriter(store)
        summary = await writer.write(batch)
    """

    def __init__(
        self,
        store: Store,
        upsert_chunk_size: int | None = None,
        insert_chunk_size: int | None = None,
    ):
        self._store = store
        self._upsert_chunk = upsert_chunk_size or settings.WRITE_UPSERT_CHUNK_SIZE
        self._insert_chunk = insert_chunk_size or settings.WRITE_INSERT_CHUNK_SIZE

    async def record_raw_payload(self, row: Mapping[str, Any]) -> bool:
        """
        Insert one raw call payload.

        Returns:
            False when the same request was already recorded today.
        """
        try:
            await self._store.insert("provider_raw_payloads", [dict(row)])
        except IntegrityError:
            logger.debug(
                "raw_payload_already_recorded",
                provider=row.get("provider"),
                endpoint=row.get("endpoint"),
                request_hash=row.get("request_hash"),
            )
            return False
        return True

    async def write(self, batch: WriteBatch) -> WriteSummary:
        summary = WriteSummary()

        await self._write_layer(
            "raw_payloads",
            batch.raw_payloads,
            summary.raw_payloads,
            self._insert_chunk,
            lambda chunk: self._store.upsert(
                "provider_raw_payloads",
                chunk,
                on_conflict=("provider", "request_hash", "fetched_on"),
                ignore_duplicates=True,
            ),
        )
        await self._write_layer(
            "ingest_rows",
            batch.ingest_rows,
            summary.ingest_rows,
            self._insert_chunk,
            lambda chunk: self._store.insert("provider_ingests", chunk),
        )
        await self._write_layer(
            "snapshots",
            _last_per_key(batch.snapshots, ("provider", "provider_ref")),
            summary.snapshots,
            self._upsert_chunk,
            lambda chunk: self._store.upsert(
                "price_snapshots", chunk, on_conflict=("provider", "provider_ref")
            ),
        )
        await self._write_layer(
            "history_points",
            batch.history_points,
            summary.history_points,
            self._insert_chunk,
            lambda chunk: self._store.upsert(
                "price_history_points",
                chunk,
                on_conflict=("canonical_slug", "variant_ref", "provider", "ts"),
                ignore_duplicates=True,
            ),
        )
        await self._write_layer(
            "metrics",
            _last_per_key(batch.metrics, ("canonical_slug", "printing_id", "grade")),
            summary.metrics,
            self._upsert_chunk,
            lambda chunk: self._store.upsert(
                "variant_metrics",
                chunk,
                on_conflict=("canonical_slug", "printing_id", "grade"),
                update_columns=PROVIDER_METRIC_COLUMNS,
            ),
        )

        logger.info("layered_write_complete", **summary.counts(), failed=summary.failed)
        return summary

    async def _write_layer(self, layer, rows, result: LayerResult, chunk_size: int, write_chunk) -> None:
        for chunk in _chunks(rows, chunk_size):
            try:
                result.written += await write_chunk(chunk)
            except SQLAlchemyError as e:
                result.record_failure(len(chunk), e)
                logger.error(
                    "layered_write_chunk_failed",
                    layer=layer,
                    rows=len(chunk),
                    error=str(e),
                    error_type=type(e).__name__,
                )
