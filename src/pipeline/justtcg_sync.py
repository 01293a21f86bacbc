"""
PokeLedger — JustTCG Price Sync (job: justtcg_price_sync)

Work unit = one of our sets. Per set:

1. Resolve the JustTCG set id (SetMatcher).
2. Page through GET /cards for that set, archiving every call.
3. Verify the mapping from what came back (1.0 with cards, 0.0 without).
4. Match each Near Mint priced variant to a printing. Every variant is
   audited, sealed and filtered ones included (as unmatched).
5. Stage snapshots, history points and provider metrics for matched variants
   and hand them to the LayeredWriter.

After the run, the database's derived-signal and card-metric refresh
functions are called for the variants that were written.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.config import Provider, SyncJob, settings
from src.engine.signals import compute_signals
from src.engine.variant_matcher import MatchReason, MatchStatus, PrintingRef
from src.pipeline.catalog import list_catalog_sets, load_printing_lookup, raw_payload_row
from src.pipeline.http import FetchOutcome, request_hash
from src.pipeline.justtcg import JustTCGCard, JustTCGClient, JustTCGVariant
from src.pipeline.orchestrator import (
    ConfigurationError,
    RunOptions,
    SyncOrchestrator,
    UnitOutcome,
    WorkUnit,
)
from src.pipeline.set_matcher import SetMatcher
from src.pipeline.store import Store
from src.pipeline.writer import LayeredWriter, WriteBatch
from src.utils.variant_key import build_variant_key

logger = structlog.get_logger(__name__)

PROVIDER = Provider.JUSTTCG.value
GRADE = "RAW"
CURRENCY = "USD"
VARIANT_AUDIT_ENDPOINT = "/cards/variant"
_MILLISECOND_THRESHOLD = 1_000_000_000_000


# ---------------------------------------------------------------------------
# Row Shaping
# ---------------------------------------------------------------------------


def _parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 strings or unix seconds/milliseconds to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value <= 0:
            return None
        seconds = value / 1000 if value >= _MILLISECOND_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _ratio(numerator: float | None, price: Decimal) -> float | None:
    if numerator is None or price <= 0:
        return None
    return round(numerator / float(price), 4)


def variant_edition(printing_label: str | None, printing: PrintingRef) -> str:
    """
    Edition segment for a matched variant.

    JustTCG spells out "1st Edition" in the printing label; otherwise the
    printing's own edition is used, and an unknown edition reads as unlimited.
    """
    label = (printing_label or "").lower()
    if "1st edition" in label or "first edition" in label:
        return "FIRST_EDITION"
    if printing.edition and printing.edition != "UNKNOWN":
        return printing.edition
    return "UNLIMITED"


def build_metrics_row(
    variant: JustTCGVariant,
    printing: PrintingRef,
    variant_ref: str,
    as_of: datetime,
) -> dict[str, Any] | None:
    """
    Provider-owned variant_metrics columns for one priced variant.

    CoV falls back to stddev / price (a ratio, 4 dp) and the 30d change count
    falls back to the 7d count when the provider omits them.
    """
    price = variant.price
    if price is None or price <= 0:
        return None

    cov_30d = variant.cov_price_30d
    if cov_30d is None:
        cov_30d = _ratio(variant.stddev_pop_price_30d, price)
    cov_7d = variant.cov_price_7d
    if cov_7d is None:
        cov_7d = _ratio(variant.stddev_pop_price_7d, price)
    changes_30d = variant.price_changes_count_30d
    if changes_30d is None:
        changes_30d = variant.price_changes_count_7d

    signals = compute_signals(
        variant.trend_slope_7d,
        cov_30d,
        changes_30d,
        variant.price_relative_to_30d_range,
    )
    return {
        "canonical_slug": printing.canonical_slug,
        "printing_id": printing.id,
        "grade": GRADE,
        "variant_ref": variant_ref,
        "provider": PROVIDER,
        "provider_trend_slope_7d": variant.trend_slope_7d,
        "provider_cov_price_7d": cov_7d,
        "provider_cov_price_30d": cov_30d,
        "provider_price_relative_to_30d_range": variant.price_relative_to_30d_range,
        "provider_price_changes_count_30d": changes_30d,
        "provider_min_price_all_time": variant.min_price_all_time,
        "provider_min_price_all_time_date": _parse_timestamp(variant.min_price_all_time_date),
        "provider_max_price_all_time": variant.max_price_all_time,
        "provider_max_price_all_time_date": _parse_timestamp(variant.max_price_all_time_date),
        "provider_as_of_ts": as_of,
        "history_points_30d": sum(1 for p in variant.history if p.p > 0 and p.t > 0),
        "signal_trend": signals.trend,
        "signal_breakout": signals.breakout,
        "signal_value": signals.value,
        "signals_as_of_ts": as_of,
        "updated_at": as_of,
    }


def build_history_rows(
    variant: JustTCGVariant,
    printing: PrintingRef,
    variant_ref: str,
) -> list[dict[str, Any]]:
    rows = []
    for point in variant.history:
        ts = _parse_timestamp(point.t)
        if point.p <= 0 or ts is None:
            continue
        rows.append({
            "canonical_slug": printing.canonical_slug,
            "variant_ref": variant_ref,
            "provider": PROVIDER,
            "ts": ts,
            "price": Decimal(str(point.p)),
            "currency": CURRENCY,
            "source_window": settings.JUSTTCG_PRICE_HISTORY_DURATION,
        })
    return rows


def _variant_audit_payload(variant: JustTCGVariant) -> dict[str, Any]:
    return variant.model_dump(mode="json", by_alias=True, exclude={"price_history", "price_history_30d"})


def build_ingest_row(
    card: JustTCGCard,
    variant: JustTCGVariant | None,
    provider_set_id: str,
    status: MatchStatus,
    reason: MatchReason,
    now: datetime,
    printing: PrintingRef | None = None,
) -> dict[str, Any]:
    """One provider_ingests row per vendor observation, filtered ones included."""
    return {
        "provider": PROVIDER,
        "job": SyncJob.JUSTTCG_PRICE_SYNC.value,
        "set_id": provider_set_id,
        "card_id": card.id,
        "variant_id": variant.id if variant else None,
        "canonical_slug": printing.canonical_slug if printing else None,
        "printing_id": printing.id if printing else None,
        "match_status": status.value,
        "match_reason": reason.value,
        "raw_payload": {
            "card": {"id": card.id, "name": card.name, "number": card.number, "set": card.set_id},
            "variant": _variant_audit_payload(variant) if variant else None,
        },
        "ingested_at": now,
    }


# ---------------------------------------------------------------------------
# Unit Processor
# ---------------------------------------------------------------------------


class JustTCGSetProcessor:
    """
    Usage:
        async with JustTCGClient() as client:
            processor = JustTCGSetProcessor(store, client)
            report = await SyncOrchestrator(store, processor, 100).run()
    """

    job = SyncJob.JUSTTCG_PRICE_SYNC.value
    source = "justtcg"

    def __init__(
        self,
        store: Store,
        client: JustTCGClient,
        matcher: SetMatcher | None = None,
        writer: LayeredWriter | None = None,
        max_pages: int | None = None,
    ):
        self._store = store
        self._client = client
        self._matcher = matcher or SetMatcher(store, client)
        self._writer = writer or LayeredWriter(store)
        self._max_pages = max_pages or settings.JUSTTCG_MAX_PAGES_PER_SET

    def validate_config(self) -> None:
        if not self._client.has_credentials:
            raise ConfigurationError("JUSTTCG_API_KEY is not set")

    async def list_units(self, after: str, limit: int | None) -> list[WorkUnit]:
        return await list_catalog_sets(self._store, after, limit)

    async def _fetch_set(
        self, provider_set_id: str, first_page, options: RunOptions, counters: dict[str, int]
    ) -> tuple[list[JustTCGCard], str | None]:
        """All pages of one set. Returns the cards and a provider-miss message."""
        cards: list[JustTCGCard] = []
        offset = 0
        for page_number in range(self._max_pages):
            if page_number == 0 and first_page is not None:
                page = first_page
            else:
                page = await self._client.fetch_cards(provider_set_id, offset=offset)
            counters["pagesFetched"] = counters.get("pagesFetched", 0) + 1

            if not options.dry_run:
                if await self._writer.record_raw_payload(raw_payload_row(PROVIDER, page)):
                    counters["callPayloadsRecorded"] = counters.get("callPayloadsRecorded", 0) + 1

            if page.outcome is FetchOutcome.PROVIDER_MISS:
                return cards, f"JustTCG {page.http_status} for set {provider_set_id}"

            cards.extend(page.records)
            if not page.has_more or not page.records:
                break
            offset += len(page.records)
        else:
            logger.warning(
                "justtcg_set_page_cap_reached",
                provider_set_id=provider_set_id,
                max_pages=self._max_pages,
            )
        return cards, None

    async def process(self, unit: WorkUnit, options: RunOptions) -> UnitOutcome:
        resolution = await self._matcher.resolve(unit.code, unit.name, persist=not options.dry_run)
        if not resolution.resolved:
            return UnitOutcome(unresolved=True)

        provider_set_id = resolution.provider_set_id
        counters: dict[str, int] = {}
        cards, miss = await self._fetch_set(provider_set_id, resolution.first_page, options, counters)

        if not options.dry_run:
            await self._matcher.record_verification(unit.code, unit.name, provider_set_id, bool(cards))

        lookup = await load_printing_lookup(self._store, unit.code)
        now = datetime.now(timezone.utc)
        batch = WriteBatch()
        touched: dict[tuple[str, str], dict[str, str]] = {}
        fetched = 0

        for card in cards:
            if card.is_sealed:
                counters["sealedSkipped"] = counters.get("sealedSkipped", 0) + 1
                for variant in card.variants or [None]:
                    batch.ingest_rows.append(build_ingest_row(
                        card, variant, provider_set_id, MatchStatus.UNMATCHED, MatchReason.SEALED, now
                    ))
                continue
            if options.card_limit is not None and fetched >= options.card_limit:
                break
            fetched += 1

            for variant in card.variants:
                if variant.normalized_condition != "nm":
                    skip_reason = MatchReason.CONDITION_FILTERED
                elif variant.price is None or variant.price <= 0:
                    skip_reason = MatchReason.UNPRICED
                else:
                    skip_reason = None
                if skip_reason is not None:
                    counters["variantsSkipped"] = counters.get("variantsSkipped", 0) + 1
                    batch.ingest_rows.append(build_ingest_row(
                        card, variant, provider_set_id, MatchStatus.UNMATCHED, skip_reason, now
                    ))
                    continue

                match = lookup.match(card.number, variant.printing)
                printing = match.printing
                batch.ingest_rows.append(build_ingest_row(
                    card, variant, provider_set_id, match.status, match.reason, now, printing
                ))
                if not match.matched:
                    key = "variantsAmbiguous" if match.status is MatchStatus.AMBIGUOUS else "variantsUnmatched"
                    counters[key] = counters.get(key, 0) + 1
                    continue
                counters["variantsMatched"] = counters.get("variantsMatched", 0) + 1

                variant_ref = build_variant_key(
                    variant.printing,
                    variant_edition(variant.printing, printing),
                    printing.stamp,
                    variant.condition,
                    variant.language,
                    GRADE,
                )
                observed_at = variant.observed_at(now)
                audit_params = {"set": provider_set_id, "cardId": card.id, "variantId": variant.id}
                batch.raw_payloads.append({
                    "provider": PROVIDER,
                    "endpoint": VARIANT_AUDIT_ENDPOINT,
                    "params": audit_params,
                    "response": _variant_audit_payload(variant),
                    "status_code": 200,
                    "fetched_at": now,
                    "fetched_on": now.date(),
                    "request_hash": request_hash(PROVIDER, VARIANT_AUDIT_ENDPOINT, audit_params),
                    "canonical_slug": printing.canonical_slug,
                    "variant_ref": variant_ref,
                })
                batch.snapshots.append({
                    "canonical_slug": printing.canonical_slug,
                    "printing_id": printing.id,
                    "grade": GRADE,
                    "price_value": variant.price,
                    "currency": CURRENCY,
                    "provider": PROVIDER,
                    "provider_ref": f"justtcg-{variant.id}",
                    "observed_at": observed_at,
                    "updated_at": now,
                })
                batch.history_points.extend(build_history_rows(variant, printing, variant_ref))
                metrics = build_metrics_row(variant, printing, variant_ref, observed_at)
                if metrics is not None:
                    batch.metrics.append(metrics)
                touched[(printing.canonical_slug, variant_ref)] = {
                    "canonical_slug": printing.canonical_slug,
                    "variant_ref": variant_ref,
                    "provider": PROVIDER,
                    "grade": GRADE,
                }

        logger.info(
            "justtcg_set_staged",
            set_code=unit.code,
            provider_set_id=provider_set_id,
            resolution=resolution.source,
            cards=len(cards),
            fetched=fetched,
            snapshots=len(batch.snapshots),
            history_points=len(batch.history_points),
            dry_run=options.dry_run,
        )

        if options.dry_run:
            return UnitOutcome(
                fetched=fetched,
                upserted=len(batch.snapshots),
                first_error=miss,
                counters=counters,
            )

        summary = await self._writer.write(batch)
        return UnitOutcome(
            fetched=fetched,
            upserted=summary.snapshots.written,
            failed=summary.failed,
            first_error=miss or summary.first_error,
            layer_counts=summary.counts(),
            touched_keys=list(touched.values()),
            counters=counters,
        )

    async def after_run(
        self, touched_keys: Sequence[dict[str, str]], options: RunOptions
    ) -> dict[str, Any]:
        """Trigger the database's derived-signal and card-metric refreshes."""
        keys = list({(k["canonical_slug"], k["variant_ref"]): k for k in touched_keys}.values())
        if not keys:
            return {"signalsRefresh": "skipped"}

        result: dict[str, Any] = {"variantKeysUpdated": len(keys)}
        errors: list[str] = []

        if len(keys) <= settings.SIGNAL_INCREMENTAL_REFRESH_LIMIT:
            try:
                result["signalsRefreshed"] = await self._store.rpc(
                    "refresh_derived_signals_for_variants", {"keys": json.dumps(keys)}
                )
                result["signalsRefresh"] = "incremental"
            except SQLAlchemyError as e:
                errors.append(f"refresh_derived_signals_for_variants: {e}")
                logger.warning("signals_incremental_refresh_failed", error=str(e))

        if "signalsRefresh" not in result:
            try:
                result["signalsRefreshed"] = await self._store.rpc("refresh_derived_signals")
                result["signalsRefresh"] = "full"
            except SQLAlchemyError as e:
                errors.append(f"refresh_derived_signals: {e}")
                logger.error("signals_full_refresh_failed", error=str(e))

        try:
            result["cardMetricsRefreshed"] = await self._store.rpc("refresh_card_metrics")
        except SQLAlchemyError as e:
            errors.append(f"refresh_card_metrics: {e}")
            logger.error("card_metrics_refresh_failed", error=str(e))

        if errors:
            result["refreshError"] = errors[0]
        return result


async def run_justtcg_sync(store: Store, options: RunOptions | None = None) -> dict[str, Any]:
    """Run one justtcg_price_sync pass and return the report as a dict."""
    async with JustTCGClient() as client:
        processor = JustTCGSetProcessor(store, client)
        orchestrator = SyncOrchestrator(store, processor, settings.JUSTTCG_SETS_PER_RUN)
        report = await orchestrator.run(options)
    return report.to_dict()
