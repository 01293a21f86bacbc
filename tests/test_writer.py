"""
Tests for the layered writer (src/pipeline/writer.py).

Covers:
- Layer order and per-layer counts
- Idempotent re-writes (snapshots upserted, history/raw deduplicated)
- Metrics upsert limited to provider-owned columns
- Chunk failures isolated and counted, never raised
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Sequence

import pytest
from sqlalchemy.exc import OperationalError

from src.pipeline.store import SqlStore
from src.pipeline.writer import LayeredWriter, WriteBatch

NOW = datetime(2026, 1, 1, 12, tzinfo=timezone.utc)
VARIANT_REF = "reverse_holofoil:unlimited:none:nm:en:raw"


def _snapshot(ref: str = "justtcg-v1", price: str = "4.50") -> dict[str, Any]:
    return {
        "canonical_slug": "pikachu-base-set-58",
        "printing_id": "p1",
        "grade": "RAW",
        "price_value": Decimal(price),
        "currency": "USD",
        "provider": "JUSTTCG",
        "provider_ref": ref,
        "observed_at": NOW,
        "updated_at": NOW,
    }


def _history(day: int, price: str) -> dict[str, Any]:
    return {
        "canonical_slug": "pikachu-base-set-58",
        "variant_ref": VARIANT_REF,
        "provider": "JUSTTCG",
        "ts": datetime(2026, 1, day, tzinfo=timezone.utc),
        "price": Decimal(price),
        "currency": "USD",
        "source_window": "30d",
    }


def _metrics(trend: float = 57.4) -> dict[str, Any]:
    return {
        "canonical_slug": "pikachu-base-set-58",
        "printing_id": "p1",
        "grade": "RAW",
        "variant_ref": VARIANT_REF,
        "provider": "JUSTTCG",
        "provider_trend_slope_7d": 0.12,
        "signal_trend": trend,
        "updated_at": NOW,
    }


def _raw(request_hash: str = "0123456789abcdef") -> dict[str, Any]:
    return {
        "provider": "JUSTTCG",
        "endpoint": "/cards/variant",
        "params": {"variantId": "v1"},
        "response": {"id": "v1"},
        "status_code": 200,
        "fetched_at": NOW,
        "fetched_on": date(2026, 1, 1),
        "request_hash": request_hash,
    }


def _ingest() -> dict[str, Any]:
    return {
        "provider": "JUSTTCG",
        "job": "justtcg_price_sync",
        "set_id": "base-set-pokemon",
        "card_id": "c1",
        "variant_id": "v1",
        "match_status": "matched",
        "match_reason": "exact_finish",
        "ingested_at": NOW,
    }


def _batch() -> WriteBatch:
    return WriteBatch(
        raw_payloads=[_raw()],
        ingest_rows=[_ingest()],
        snapshots=[_snapshot()],
        history_points=[_history(1, "4.10"), _history(2, "4.50")],
        metrics=[_metrics()],
    )


class FailingStore:
    """Delegates to a real store but fails writes whose rows match a predicate."""

    def __init__(self, inner: SqlStore, table: str, bad_ref: str | None = None):
        self._inner = inner
        self._table = table
        self._bad_ref = bad_ref

    def _should_fail(self, table: str, rows: Sequence[Mapping[str, Any]]) -> bool:
        if table != self._table:
            return False
        return self._bad_ref is None or any(r.get("provider_ref") == self._bad_ref for r in rows)

    async def insert(self, table, rows):
        if self._should_fail(table, rows):
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return await self._inner.insert(table, rows)

    async def upsert(self, table, rows, on_conflict, **kw):
        if self._should_fail(table, rows):
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return await self._inner.upsert(table, rows, on_conflict, **kw)


class TestWrite:
    @pytest.mark.asyncio
    async def test_writes_every_layer(self, store: SqlStore) -> None:
        summary = await LayeredWriter(store).write(_batch())

        assert summary.counts() == {
            "rawPayloadsWritten": 1,
            "ingestRowsWritten": 1,
            "snapshotsWritten": 1,
            "historyPointsWritten": 2,
            "variantMetricsWritten": 1,
        }
        assert summary.failed == 0
        assert summary.first_error is None

    @pytest.mark.asyncio
    async def test_rewrite_is_idempotent(self, store: SqlStore) -> None:
        writer = LayeredWriter(store)
        await writer.write(_batch())
        second = await writer.write(_batch())

        assert second.raw_payloads.written == 0
        assert second.history_points.written == 0
        assert len(await store.select("price_snapshots")) == 1
        assert len(await store.select("price_history_points")) == 2
        assert len(await store.select("variant_metrics")) == 1
        assert len(await store.select("provider_raw_payloads")) == 1
        # the ingest audit is append-only
        assert len(await store.select("provider_ingests")) == 2

    @pytest.mark.asyncio
    async def test_snapshot_last_write_wins(self, store: SqlStore) -> None:
        writer = LayeredWriter(store)
        await writer.write(WriteBatch(snapshots=[_snapshot(price="4.50")]))
        await writer.write(WriteBatch(snapshots=[_snapshot(price="3.99"), _snapshot(price="5.25")]))

        rows = await store.select("price_snapshots")
        assert len(rows) == 1
        assert rows[0]["price_value"] == Decimal("5.25")

    @pytest.mark.asyncio
    async def test_metrics_upsert_leaves_internal_columns(self, store: SqlStore) -> None:
        await store.insert("variant_metrics", [{
            "canonical_slug": "pikachu-base-set-58",
            "printing_id": "p1",
            "grade": "RAW",
            "median_30d": Decimal("4.00"),
            "snapshot_count_30d": 12,
        }])

        await LayeredWriter(store).write(WriteBatch(metrics=[_metrics(trend=61.0)]))

        rows = await store.select("variant_metrics")
        assert len(rows) == 1
        assert rows[0]["median_30d"] == Decimal("4.00")
        assert rows[0]["snapshot_count_30d"] == 12
        assert rows[0]["signal_trend"] == 61.0
        assert rows[0]["variant_ref"] == VARIANT_REF

    @pytest.mark.asyncio
    async def test_empty_batch(self, store: SqlStore) -> None:
        summary = await LayeredWriter(store).write(WriteBatch())
        assert sum(summary.counts().values()) == 0


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_layer_does_not_stop_later_layers(self, store: SqlStore) -> None:
        writer = LayeredWriter(FailingStore(store, "price_snapshots"))
        summary = await writer.write(_batch())

        assert summary.snapshots.failed == 1
        assert summary.failed == 1
        assert "database is locked" in summary.first_error
        assert summary.history_points.written == 2
        assert summary.metrics.written == 1
        assert await store.select("price_snapshots") == []

    @pytest.mark.asyncio
    async def test_failing_chunk_does_not_stop_later_chunks(self, store: SqlStore) -> None:
        writer = LayeredWriter(FailingStore(store, "price_snapshots", bad_ref="justtcg-bad"), upsert_chunk_size=1)
        batch = WriteBatch(snapshots=[_snapshot("justtcg-a"), _snapshot("justtcg-bad"), _snapshot("justtcg-c")])
        summary = await writer.write(batch)

        assert summary.snapshots.written == 2
        assert summary.snapshots.failed == 1
        refs = sorted(r["provider_ref"] for r in await store.select("price_snapshots"))
        assert refs == ["justtcg-a", "justtcg-c"]


class TestRecordRawPayload:
    @pytest.mark.asyncio
    async def test_same_request_same_day_recorded_once(self, store: SqlStore) -> None:
        writer = LayeredWriter(store)
        assert await writer.record_raw_payload(_raw()) is True
        assert await writer.record_raw_payload(_raw()) is False
        assert await writer.record_raw_payload(_raw("fedcba9876543210")) is True
        assert len(await store.select("provider_raw_payloads")) == 2
