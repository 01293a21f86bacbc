"""
PokeLedger — Sync Orchestrator

Drives one incremental run of a sync job:

    IDLE -> STARTED -> (per unit: FETCH -> MATCH -> STAGE) x N -> FINALIZED(ok|failed)

- The resume cursor comes only from the latest finished-and-ok run. A failed
  or still-running row never seeds the next cursor.
- A previous run that fetched nothing, or completed a full pass, restarts the
  cursor at the beginning of the unit ordering.
- Same-day guard: a full pass already completed today makes the run a no-op
  unless forced.
- Each unit runs in its own failure boundary. ok is false if and only if a
  unit recorded an error; everything that succeeded stays written.
- New units stop starting once the wall-clock budget is spent; the cursor then
  resumes after the last attempted unit.

Only ConfigurationError escapes run(), and it is raised before any row is
written.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, Sequence

import structlog

from src.config import settings
from src.pipeline.store import Store

logger = structlog.get_logger(__name__)

RUNS_TABLE = "ingest_runs"


class ConfigurationError(RuntimeError):
    """A required credential or setting is missing; the run cannot start."""


class RunStatus(str, Enum):
    STARTED = "started"
    FINISHED = "finished"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkUnit:
    """One set, ordered by code."""
    code: str
    name: str | None = None


@dataclass
class SyncCursor:
    last_position: str = ""
    next_position: str = ""
    items_count: int = 0
    done: bool = False

    def to_meta(self) -> dict[str, Any]:
        return {
            "lastPosition": self.last_position,
            "nextPosition": self.next_position,
            "itemsCount": self.items_count,
            "done": self.done,
        }

    @classmethod
    def from_meta(cls, meta: dict[str, Any] | None) -> SyncCursor:
        meta = meta or {}
        return cls(
            last_position=str(meta.get("lastPosition") or ""),
            next_position=str(meta.get("nextPosition") or ""),
            items_count=int(meta.get("itemsCount") or 0),
            done=bool(meta.get("done")),
        )


@dataclass
class RunOptions:
    """Debug overrides accepted from the trigger."""
    force: bool = False
    dry_run: bool = False
    only_unit: str | None = None
    card_limit: int | None = None

    @property
    def is_debug(self) -> bool:
        return self.only_unit is not None or self.card_limit is not None or self.dry_run


@dataclass
class UnitOutcome:
    """What processing one unit produced."""
    fetched: int = 0
    upserted: int = 0
    failed: int = 0
    first_error: str | None = None
    unresolved: bool = False
    layer_counts: dict[str, int] = field(default_factory=dict)
    touched_keys: list[dict[str, str]] = field(default_factory=list)
    counters: dict[str, int] = field(default_factory=dict)


@dataclass
class RunReport:
    job: str
    run_id: str | None
    ok: bool
    skipped: bool = False
    reason: str | None = None
    items_fetched: int = 0
    items_upserted: int = 0
    items_failed: int = 0
    first_error: str | None = None
    cursor: SyncCursor = field(default_factory=SyncCursor)
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "job": self.job,
            "runId": self.run_id,
            "skipped": self.skipped,
            "reason": self.reason,
            "itemsFetched": self.items_fetched,
            "itemsUpserted": self.items_upserted,
            "itemsFailed": self.items_failed,
            "firstError": self.first_error,
            **self.cursor.to_meta(),
            "meta": self.meta,
        }


class UnitProcessor(Protocol):
    """A job: which units exist and how to process one."""

    job: str
    source: str

    def validate_config(self) -> None: ...

    async def list_units(self, after: str, limit: int | None) -> list[WorkUnit]: ...

    async def process(self, unit: WorkUnit, options: RunOptions) -> UnitOutcome: ...

    async def after_run(
        self, touched_keys: Sequence[dict[str, str]], options: RunOptions
    ) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_utc(value: Any) -> datetime | None:
    """Stored timestamps as aware UTC; naive values are read as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _merge_counts(total: dict[str, int], part: dict[str, int]) -> None:
    for key, value in part.items():
        total[key] = total.get(key, 0) + int(value or 0)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    """
    Usage:
        orchestrator = SyncOrchestrator(store, JustTCGSetProcessor(store, client))
        report = await orchestrator.run(RunOptions())
    """

    def __init__(
        self,
        store: Store,
        processor: UnitProcessor,
        units_per_run: int,
        budget_seconds: float | None = None,
        clock=time.monotonic,
    ):
        self._store = store
        self._processor = processor
        self._units_per_run = max(1, units_per_run)
        self._budget_seconds = (
            settings.SYNC_RUN_BUDGET_SECONDS if budget_seconds is None else budget_seconds
        )
        self._clock = clock

    async def last_successful_run(self) -> dict[str, Any] | None:
        rows = await self._store.select(
            RUNS_TABLE,
            {"job": self._processor.job, "status": RunStatus.FINISHED.value, "ok": True},
            order_by="ended_at",
            descending=True,
            limit=1,
        )
        return rows[0] if rows else None

    @staticmethod
    def starting_position(previous: dict[str, Any] | None) -> str:
        """Where this run picks up, given the latest finished-and-ok run."""
        if previous is None:
            return ""
        cursor = SyncCursor.from_meta(previous.get("meta"))
        if (previous.get("items_fetched") or 0) == 0 or cursor.done:
            return ""
        return cursor.next_position

    @staticmethod
    def completed_full_pass_today(previous: dict[str, Any] | None, now: datetime) -> bool:
        if previous is None:
            return False
        ended_at = _as_utc(previous.get("ended_at"))
        if ended_at is None or ended_at.date() != now.date():
            return False
        return SyncCursor.from_meta(previous.get("meta")).done

    async def run(self, options: RunOptions | None = None) -> RunReport:
        options = options or RunOptions()
        job = self._processor.job
        self._processor.validate_config()

        now = datetime.now(timezone.utc)
        previous = await self.last_successful_run()

        if not options.force and not options.is_debug and self.completed_full_pass_today(previous, now):
            logger.info("sync_run_skipped_same_day", job=job, previous_run=previous.get("id"))
            return RunReport(job=job, run_id=None, ok=True, skipped=True, reason="completed_today")

        # Units
        previous_cursor = SyncCursor.from_meta(previous.get("meta") if previous else None)
        if options.only_unit is not None:
            start = previous_cursor.next_position
            units = [
                u for u in await self._processor.list_units("", None) if u.code == options.only_unit
            ]
            if not units:
                units = [WorkUnit(options.only_unit)]
        else:
            start = self.starting_position(previous)
            units = await self._processor.list_units(start, self._units_per_run)
            units = units[: self._units_per_run]

        run_id: str | None = None
        if not options.dry_run:
            run_id = str(uuid.uuid4())
            await self._store.insert(
                RUNS_TABLE,
                [{
                    "id": run_id,
                    "job": job,
                    "source": self._processor.source,
                    "status": RunStatus.STARTED.value,
                    "ok": False,
                    "started_at": now,
                    "meta": {"lastPosition": start, "debug": options.is_debug},
                }],
            )
        logger.info(
            "sync_run_started",
            job=job,
            run_id=run_id,
            start_position=start,
            units=len(units),
            dry_run=options.dry_run,
            only_unit=options.only_unit,
        )

        # Units, each in its own failure boundary
        started_clock = self._clock()
        fetched = upserted = failed = 0
        units_failed = 0
        units_unresolved = 0
        first_error: str | None = None
        layer_counts: dict[str, int] = {}
        counters: dict[str, int] = {}
        touched_keys: list[dict[str, str]] = []
        attempted: list[WorkUnit] = []
        budget_exhausted = False

        for unit in units:
            if attempted and self._clock() - started_clock > self._budget_seconds:
                budget_exhausted = True
                logger.warning(
                    "sync_run_budget_exhausted",
                    job=job,
                    attempted=len(attempted),
                    remaining=len(units) - len(attempted),
                )
                break
            attempted.append(unit)

            try:
                outcome = await self._processor.process(unit, options)
            except Exception as e:
                units_failed += 1
                failed += 1
                first_error = first_error or f"{unit.code}: {e}"
                logger.error(
                    "sync_unit_failed",
                    job=job,
                    unit=unit.code,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            fetched += outcome.fetched
            upserted += outcome.upserted
            failed += outcome.failed
            _merge_counts(layer_counts, outcome.layer_counts)
            _merge_counts(counters, outcome.counters)
            touched_keys.extend(outcome.touched_keys)
            if outcome.unresolved:
                units_unresolved += 1
            if outcome.first_error:
                units_failed += 1
                if outcome.failed == 0:
                    failed += 1
                first_error = first_error or f"{unit.code}: {outcome.first_error}"

        # Cursor
        if options.only_unit is not None:
            # single-unit mode leaves the resume position where it was
            cursor = SyncCursor(
                last_position=start,
                next_position=start,
                items_count=len(attempted),
                done=previous_cursor.done,
            )
        else:
            done = not budget_exhausted and len(units) < self._units_per_run
            last_code = attempted[-1].code if attempted else start
            cursor = SyncCursor(
                last_position=start,
                next_position="" if done else last_code,
                items_count=len(attempted),
                done=done,
            )

        ok = units_failed == 0

        refresh: dict[str, Any] = {}
        if not options.dry_run:
            try:
                refresh = await self._processor.after_run(touched_keys, options)
            except Exception as e:
                refresh = {"refreshError": str(e)}
                logger.error(
                    "sync_refresh_failed",
                    job=job,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        meta: dict[str, Any] = {
            **cursor.to_meta(),
            "debug": options.is_debug,
            "dryRun": options.dry_run,
            "onlyUnit": options.only_unit,
            "cardLimit": options.card_limit,
            "firstError": first_error,
            "unitsFailed": units_failed,
            "setsUnresolved": units_unresolved,
            "budgetExhausted": budget_exhausted,
            **layer_counts,
            **counters,
            **refresh,
        }

        if run_id is not None:
            await self._store.update(
                RUNS_TABLE,
                {
                    "status": RunStatus.FINISHED.value,
                    "ok": ok,
                    "items_fetched": fetched,
                    "items_upserted": upserted,
                    "items_failed": failed,
                    "ended_at": datetime.now(timezone.utc),
                    "meta": meta,
                    "notes": first_error,
                },
                {"id": run_id},
            )

        logger.info(
            "sync_run_finished",
            job=job,
            run_id=run_id,
            ok=ok,
            items_fetched=fetched,
            items_upserted=upserted,
            items_failed=failed,
            next_position=cursor.next_position,
            done=cursor.done,
        )
        return RunReport(
            job=job,
            run_id=run_id,
            ok=ok,
            items_fetched=fetched,
            items_upserted=upserted,
            items_failed=failed,
            first_error=first_error,
            cursor=cursor,
            meta=meta,
        )
