"""
PokeLedger — Sync Trigger

Framework-agnostic handler for the scheduled trigger endpoint. The hosting
HTTP layer passes the job name, request headers and query parameters and
returns the (status_code, body) pair as JSON.

Query overrides (debugging):
- set=<code>            process only this set; the cursor is left alone
- cardLimit=<n>|limit=<n>  stop after n cards per set
- force=1               bypass the same-day guard
- dryRun=1              fetch and match, write nothing
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import SyncJob
from src.pipeline.justtcg_sync import run_justtcg_sync
from src.pipeline.orchestrator import ConfigurationError, RunOptions
from src.pipeline.store import SqlStore, Store
from src.pipeline.tcgtracking_sync import run_tcgtracking_sync
from src.utils.cron_auth import authorize_trigger

logger = structlog.get_logger(__name__)

JobRunner = Callable[[Store, RunOptions], Awaitable[dict[str, Any]]]

JOB_RUNNERS: dict[str, JobRunner] = {
    SyncJob.JUSTTCG_PRICE_SYNC.value: run_justtcg_sync,
    SyncJob.TCG_PRICE_SYNC.value: run_tcgtracking_sync,
}

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(query: Mapping[str, str], name: str) -> bool:
    return (query.get(name) or "").strip().lower() in _TRUTHY


def _positive_int(value: str | None) -> int | None:
    try:
        parsed = int((value or "").strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def parse_run_options(query: Mapping[str, str]) -> RunOptions:
    only_set = (query.get("set") or "").strip() or None
    return RunOptions(
        force=_flag(query, "force"),
        dry_run=_flag(query, "dryRun"),
        only_unit=only_set,
        card_limit=_positive_int(query.get("cardLimit")) or _positive_int(query.get("limit")),
    )


async def handle_trigger(
    job: str,
    headers: Mapping[str, str],
    query: Mapping[str, str],
    session_factory: async_sessionmaker[AsyncSession],
    runners: Mapping[str, JobRunner] | None = None,
) -> tuple[int, dict[str, Any]]:
    """
    Authorize and run one sync job.

    Returns:
        (200, report) on completion, even when the run finished with ok=false;
        401 unauthorized; 404 unknown job; 500 configuration or fatal error.
    """
    auth = authorize_trigger(headers, query)
    if not auth.ok:
        logger.warning("sync_trigger_unauthorized", job=job)
        return 401, {"ok": False, "error": "Unauthorized"}

    runner = (runners or JOB_RUNNERS).get(job)
    if runner is None:
        return 404, {"ok": False, "error": f"Unknown job: {job}"}

    options = parse_run_options(query)
    logger.info(
        "sync_trigger_accepted",
        job=job,
        deprecated_query_auth=auth.deprecated_query_auth,
        only_set=options.only_unit,
        card_limit=options.card_limit,
        force=options.force,
        dry_run=options.dry_run,
    )

    try:
        body = await runner(SqlStore(session_factory), options)
    except ConfigurationError as e:
        logger.error("sync_trigger_config_error", job=job, error=str(e))
        return 500, {"ok": False, "error": str(e)}
    except Exception as e:
        logger.error("sync_trigger_failed", job=job, error=str(e), error_type=type(e).__name__)
        return 500, {"ok": False, "error": str(e)}

    if auth.deprecated_query_auth:
        body = {**body, "warning": "query-string secret is deprecated; use the Authorization header"}
    return 200, body
