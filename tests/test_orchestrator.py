"""
Tests for the sync orchestrator (src/pipeline/orchestrator.py).

Covers:
- Cursor advance across runs, full-pass completion and wraparound
- Cursor seeded only by finished-and-ok runs
- Same-day guard and force
- Per-unit failure isolation
- Time budget
- Configuration errors, dry runs, single-unit runs, refresh errors
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

import pytest

from src.pipeline.orchestrator import (
    ConfigurationError,
    RunOptions,
    SyncCursor,
    SyncOrchestrator,
    UnitOutcome,
    WorkUnit,
)
from src.pipeline.store import SqlStore

CODES = ["base1", "base2", "base3", "base4", "base5"]


class FakeProcessor:
    job = "justtcg_price_sync"
    source = "justtcg"

    def __init__(
        self,
        codes: Sequence[str] = CODES,
        raise_for: set[str] | None = None,
        error_for: set[str] | None = None,
        unresolved: set[str] | None = None,
        config_error: bool = False,
        refresh_error: bool = False,
    ):
        self.codes = list(codes)
        self.raise_for = raise_for or set()
        self.error_for = error_for or set()
        self.unresolved = unresolved or set()
        self.config_error = config_error
        self.refresh_error = refresh_error
        self.processed: list[str] = []
        self.refreshed: list[list[dict[str, str]]] = []

    def validate_config(self) -> None:
        if self.config_error:
            raise ConfigurationError("JUSTTCG_API_KEY is not set")

    async def list_units(self, after: str, limit: int | None) -> list[WorkUnit]:
        units = [WorkUnit(code, code.title()) for code in sorted(self.codes) if code > after]
        return units if limit is None else units[:limit]

    async def process(self, unit: WorkUnit, options: RunOptions) -> UnitOutcome:
        self.processed.append(unit.code)
        if unit.code in self.raise_for:
            raise RuntimeError("boom")
        if unit.code in self.unresolved:
            return UnitOutcome(unresolved=True)
        if unit.code in self.error_for:
            return UnitOutcome(fetched=1, first_error="JustTCG 404 for set x")
        return UnitOutcome(
            fetched=2,
            upserted=2,
            layer_counts={"snapshotsWritten": 2},
            touched_keys=[{"canonical_slug": f"{unit.code}-card", "variant_ref": "v", "provider": "JUSTTCG", "grade": "RAW"}],
            counters={"variantsMatched": 2},
        )

    async def after_run(self, touched_keys: Sequence[dict[str, str]], options: RunOptions) -> dict[str, Any]:
        self.refreshed.append(list(touched_keys))
        if self.refresh_error:
            raise RuntimeError("function refresh_card_metrics() does not exist")
        return {"signalsRefresh": "ok"}


async def _runs(store: SqlStore) -> list[dict[str, Any]]:
    return await store.select("ingest_runs", order_by="started_at")


async def _seed_run(
    store: SqlStore,
    *,
    ok: bool,
    status: str = "finished",
    items_fetched: int = 2,
    next_position: str = "",
    done: bool = False,
    ended_at: datetime | None = None,
) -> None:
    ended_at = ended_at or datetime.now(timezone.utc) - timedelta(days=1)
    await store.insert("ingest_runs", [{
        "id": str(uuid.uuid4()),
        "job": "justtcg_price_sync",
        "source": "justtcg",
        "status": status,
        "ok": ok,
        "items_fetched": items_fetched,
        "items_upserted": 0,
        "items_failed": 0,
        "started_at": ended_at - timedelta(minutes=5),
        "ended_at": ended_at if status == "finished" else None,
        "meta": SyncCursor(next_position=next_position, done=done).to_meta(),
    }])


class TestCursor:
    @pytest.mark.asyncio
    async def test_runs_advance_then_complete_the_pass(self, store: SqlStore) -> None:
        processor = FakeProcessor()
        orchestrator = SyncOrchestrator(store, processor, units_per_run=2, budget_seconds=3600)

        first = await orchestrator.run()
        assert processor.processed == ["base1", "base2"]
        assert (first.cursor.next_position, first.cursor.done) == ("base2", False)

        second = await orchestrator.run()
        assert processor.processed[2:] == ["base3", "base4"]
        assert second.cursor.next_position == "base4"

        third = await orchestrator.run()
        assert processor.processed[4:] == ["base5"]
        assert (third.cursor.next_position, third.cursor.done) == ("", True)

        runs = await _runs(store)
        assert len(runs) == 3
        assert all(r["status"] == "finished" and r["ok"] for r in runs)
        assert runs[0]["meta"]["nextPosition"] == "base2"
        assert runs[0]["items_fetched"] == 4

    @pytest.mark.asyncio
    async def test_same_day_guard_and_force(self, store: SqlStore) -> None:
        await _seed_run(store, ok=True, done=True, ended_at=datetime.now(timezone.utc))
        processor = FakeProcessor()
        orchestrator = SyncOrchestrator(store, processor, units_per_run=2, budget_seconds=3600)

        skipped = await orchestrator.run()
        assert skipped.skipped is True
        assert skipped.reason == "completed_today"
        assert processor.processed == []
        assert len(await _runs(store)) == 1

        forced = await orchestrator.run(RunOptions(force=True))
        assert forced.skipped is False
        assert processor.processed == ["base1", "base2"]

    @pytest.mark.asyncio
    async def test_finished_pass_from_yesterday_restarts(self, store: SqlStore) -> None:
        await _seed_run(store, ok=True, done=True, next_position="")
        processor = FakeProcessor()

        await SyncOrchestrator(store, processor, units_per_run=2, budget_seconds=3600).run()

        assert processor.processed == ["base1", "base2"]

    @pytest.mark.asyncio
    async def test_cursor_only_from_finished_ok_runs(self, store: SqlStore) -> None:
        now = datetime.now(timezone.utc)
        await _seed_run(store, ok=True, next_position="base2", ended_at=now - timedelta(hours=3))
        await _seed_run(store, ok=False, next_position="base4", ended_at=now - timedelta(hours=2))
        await _seed_run(store, ok=False, status="started", next_position="base4", ended_at=now - timedelta(hours=1))
        processor = FakeProcessor()

        await SyncOrchestrator(store, processor, units_per_run=1, budget_seconds=3600).run()

        assert processor.processed == ["base3"]

    @pytest.mark.asyncio
    async def test_wraparound_after_empty_run(self, store: SqlStore) -> None:
        await _seed_run(store, ok=True, items_fetched=0, next_position="base3")
        processor = FakeProcessor()

        await SyncOrchestrator(store, processor, units_per_run=1, budget_seconds=3600).run()

        assert processor.processed == ["base1"]


class TestFailureBoundaries:
    @pytest.mark.asyncio
    async def test_one_unit_raising_does_not_stop_the_run(self, store: SqlStore) -> None:
        processor = FakeProcessor(raise_for={"base3"})

        report = await SyncOrchestrator(store, processor, units_per_run=5, budget_seconds=3600).run()

        assert processor.processed == CODES
        assert report.ok is False
        assert report.items_failed == 1
        assert report.items_upserted == 8
        assert report.first_error == "base3: boom"
        run = (await _runs(store))[0]
        assert not run["ok"]
        assert run["notes"] == "base3: boom"
        assert run["meta"]["unitsFailed"] == 1
        assert run["meta"]["snapshotsWritten"] == 8

    @pytest.mark.asyncio
    async def test_failed_run_does_not_advance_cursor(self, store: SqlStore) -> None:
        processor = FakeProcessor(raise_for={"base1"})
        orchestrator = SyncOrchestrator(store, processor, units_per_run=2, budget_seconds=3600)

        await orchestrator.run()
        processor.raise_for = set()
        await orchestrator.run()

        assert processor.processed == ["base1", "base2", "base1", "base2"]

    @pytest.mark.asyncio
    async def test_unit_error_outcome_counts_as_failure(self, store: SqlStore) -> None:
        processor = FakeProcessor(error_for={"base2"})

        report = await SyncOrchestrator(store, processor, units_per_run=5, budget_seconds=3600).run()

        assert report.ok is False
        assert report.items_failed == 1
        assert report.first_error == "base2: JustTCG 404 for set x"

    @pytest.mark.asyncio
    async def test_unresolved_sets_are_counted_not_failed(self, store: SqlStore) -> None:
        processor = FakeProcessor(unresolved={"base1", "base4"})

        report = await SyncOrchestrator(store, processor, units_per_run=5, budget_seconds=3600).run()

        assert report.ok is True
        assert report.meta["setsUnresolved"] == 2

    @pytest.mark.asyncio
    async def test_refresh_error_recorded_without_flipping_ok(self, store: SqlStore) -> None:
        processor = FakeProcessor(refresh_error=True)

        report = await SyncOrchestrator(store, processor, units_per_run=5, budget_seconds=3600).run()

        assert report.ok is True
        assert "refresh_card_metrics" in report.meta["refreshError"]
        assert len(processor.refreshed[0]) == 5


class TestBudget:
    @pytest.mark.asyncio
    async def test_stops_starting_units_when_budget_spent(self, store: SqlStore) -> None:
        ticks = iter([0.0, 5.0, 11.0])
        processor = FakeProcessor()
        orchestrator = SyncOrchestrator(
            store, processor, units_per_run=5, budget_seconds=10, clock=lambda: next(ticks)
        )

        report = await orchestrator.run()

        assert processor.processed == ["base1", "base2"]
        assert report.ok is True
        assert report.cursor.next_position == "base2"
        assert report.cursor.done is False
        assert report.meta["budgetExhausted"] is True

    @pytest.mark.asyncio
    async def test_first_unit_always_attempted(self, store: SqlStore) -> None:
        ticks = iter([0.0, 100.0])
        processor = FakeProcessor()
        orchestrator = SyncOrchestrator(
            store, processor, units_per_run=5, budget_seconds=0, clock=lambda: next(ticks)
        )

        await orchestrator.run()

        assert processor.processed == ["base1"]


class TestOptions:
    @pytest.mark.asyncio
    async def test_configuration_error_writes_nothing(self, store: SqlStore) -> None:
        orchestrator = SyncOrchestrator(store, FakeProcessor(config_error=True), units_per_run=5)

        with pytest.raises(ConfigurationError):
            await orchestrator.run()

        assert await _runs(store) == []

    @pytest.mark.asyncio
    async def test_dry_run_writes_no_run_row(self, store: SqlStore) -> None:
        processor = FakeProcessor()

        report = await SyncOrchestrator(store, processor, units_per_run=2, budget_seconds=3600).run(
            RunOptions(dry_run=True)
        )

        assert report.run_id is None
        assert processor.processed == ["base1", "base2"]
        assert processor.refreshed == []
        assert await _runs(store) == []

    @pytest.mark.asyncio
    async def test_single_unit_keeps_cursor(self, store: SqlStore) -> None:
        now = datetime.now(timezone.utc)
        await _seed_run(store, ok=True, done=True, next_position="", ended_at=now - timedelta(minutes=10))
        await _seed_run(store, ok=True, next_position="base2", ended_at=now - timedelta(minutes=5))
        processor = FakeProcessor()
        orchestrator = SyncOrchestrator(store, processor, units_per_run=2, budget_seconds=3600)

        report = await orchestrator.run(RunOptions(only_unit="base4"))

        assert processor.processed == ["base4"]
        assert report.cursor.next_position == "base2"
        assert report.meta["onlyUnit"] == "base4"
        assert report.meta["debug"] is True

        await orchestrator.run()
        assert processor.processed[1:] == ["base3", "base4"]

    @pytest.mark.asyncio
    async def test_report_dict_shape(self, store: SqlStore) -> None:
        report = await SyncOrchestrator(store, FakeProcessor(), units_per_run=2, budget_seconds=3600).run()
        body = report.to_dict()
        assert body["ok"] is True
        assert body["job"] == "justtcg_price_sync"
        assert body["nextPosition"] == "base2"
        assert body["itemsUpserted"] == 4
