"""
PokeLedger — Polling Scheduler

Runs both sync jobs on their own cadences for deployments without an external
cron trigger:

- justtcg_price_sync: every JUSTTCG_SYNC_INTERVAL_MINUTES (default 60)
- tcg_price_sync: every TCGTRACKING_SYNC_INTERVAL_MINUTES (default 1440)

Each job keeps an independent clock; a failing job is logged and the other
keeps running. Each run is still gated by the same-day guard, so a short
cadence only resumes the cursor.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import SyncJob, settings
from src.pipeline.orchestrator import ConfigurationError, RunOptions
from src.pipeline.store import SqlStore
from src.pipeline.trigger import JOB_RUNNERS, JobRunner

logger = structlog.get_logger(__name__)


class _JobClock:
    def __init__(self, job: str, runner: JobRunner, cadence_minutes: int):
        self.job = job
        self.runner = runner
        self.cadence_minutes = cadence_minutes
        self.last_run: datetime | None = None

    def due(self, now: datetime) -> bool:
        if self.last_run is None:
            return True
        return (now - self.last_run).total_seconds() / 60 >= self.cadence_minutes


class Scheduler:
    """
    Async scheduler for the sync jobs.

    Every job runs once at start-up, then on its own cadence.
    """

    def __init__(
        self,
        db_engine: Any,
        session_factory: async_sessionmaker[AsyncSession],
        runners: dict[str, JobRunner] | None = None,
        poll_check_interval: float = 5,
    ):
        self.db_engine = db_engine
        self.store = SqlStore(session_factory)
        self._shutdown_event = asyncio.Event()
        self._poll_check_interval = poll_check_interval

        runners = runners or JOB_RUNNERS
        cadences = {
            SyncJob.JUSTTCG_PRICE_SYNC.value: settings.JUSTTCG_SYNC_INTERVAL_MINUTES,
            SyncJob.TCG_PRICE_SYNC.value: settings.TCGTRACKING_SYNC_INTERVAL_MINUTES,
        }
        self._clocks = [
            _JobClock(job, runner, cadences.get(job, 60)) for job, runner in runners.items()
        ]
        self._disabled: set[str] = set()

    async def shutdown(self) -> None:
        """Signal graceful shutdown to the scheduler loop."""
        logger.info("scheduler_shutdown_requested")
        self._shutdown_event.set()

    async def run_job(self, clock: _JobClock) -> dict[str, Any] | None:
        """Run one job now; failures are logged, never raised."""
        logger.info("scheduler_job_start", job=clock.job)
        clock.last_run = datetime.now(timezone.utc)
        try:
            report = await clock.runner(self.store, RunOptions())
        except ConfigurationError as e:
            # missing credentials will not fix themselves
            self._disabled.add(clock.job)
            logger.error("scheduler_job_disabled", job=clock.job, error=str(e))
            return None
        except Exception as e:
            logger.error(
                "scheduler_job_failed",
                job=clock.job,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        logger.info(
            "scheduler_job_complete",
            job=clock.job,
            ok=report.get("ok"),
            skipped=report.get("skipped"),
            items_upserted=report.get("itemsUpserted"),
            next_in_minutes=clock.cadence_minutes,
        )
        return report

    async def tick(self) -> None:
        now = datetime.now(timezone.utc)
        for clock in self._clocks:
            if clock.job not in self._disabled and clock.due(now):
                await self.run_job(clock)

    async def run(self) -> None:
        """
        Main scheduler loop. Runs until shutdown is signaled.
        """
        logger.info(
            "scheduler_started",
            jobs={clock.job: clock.cadence_minutes for clock in self._clocks},
        )

        try:
            while not self._shutdown_event.is_set():
                try:
                    await self.tick()
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._poll_check_interval,
                    )
                except asyncio.TimeoutError:
                    # no shutdown signal yet
                    continue
        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            raise
        finally:
            logger.info("scheduler_stopped")


async def run_scheduler(db_engine: Any, session_factory: async_sessionmaker[AsyncSession]) -> None:
    """
    Initialize and run the scheduler with graceful shutdown handling.

    Registers SIGTERM/SIGINT handlers to trigger shutdown.
    """
    scheduler = Scheduler(db_engine, session_factory)

    def handle_signal(_signum: int, _frame: Any) -> None:
        logger.info("scheduler_signal_received")
        asyncio.create_task(scheduler.shutdown())

    loop = asyncio.get_running_loop()

    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM, None)
        loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT, None)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler for all signals
        logger.warning("signal_handlers_not_supported_on_platform")

    await scheduler.run()
