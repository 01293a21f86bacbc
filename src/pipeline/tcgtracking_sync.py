"""
PokeLedger — TCGTracking Price Sync (job: tcg_price_sync)

Rolling daily refresh of TCGPlayer market prices, ten sets per run.
Per set: resolve the TCGTracking set (search by name variants and set code),
fetch its priced items, match each item to a printing by number and price
subtype, audit every item and upsert one snapshot per matched printing with
provider_ref "tcgplayer-{productId}-{printingId}".

No history or metrics are written for this provider.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

import structlog

from src.config import Provider, SyncJob, settings
from src.engine.variant_matcher import MatchReason, MatchStatus, PrintingRef
from src.pipeline.catalog import list_catalog_sets, load_printing_lookup, raw_payload_row
from src.pipeline.http import FetchOutcome
from src.pipeline.orchestrator import RunOptions, SyncOrchestrator, UnitOutcome, WorkUnit
from src.pipeline.set_matcher import SetMatcher
from src.pipeline.store import Store
from src.pipeline.tcgtracking import TCGTrackingClient, TCGTrackingPricingItem
from src.pipeline.writer import LayeredWriter, WriteBatch

logger = structlog.get_logger(__name__)

PROVIDER = Provider.TCGTRACKING.value


class TCGTrackingSetProcessor:
    job = SyncJob.TCG_PRICE_SYNC.value
    source = "tcgtracking"

    def __init__(
        self,
        store: Store,
        client: TCGTrackingClient,
        matcher: SetMatcher | None = None,
        writer: LayeredWriter | None = None,
    ):
        self._store = store
        self._client = client
        self._matcher = matcher or SetMatcher(store, client, search_by_code=True)
        self._writer = writer or LayeredWriter(store)

    def validate_config(self) -> None:
        # TCGTracking needs no credentials
        return None

    def _ingest_row(
        self,
        item: TCGTrackingPricingItem,
        provider_set_id: str,
        status: MatchStatus,
        reason: MatchReason,
        now: datetime,
        printing: PrintingRef | None = None,
    ) -> dict[str, Any]:
        return {
            "provider": PROVIDER,
            "job": self.job,
            "set_id": provider_set_id,
            "card_id": item.product_id,
            "variant_id": item.subtype,
            "canonical_slug": printing.canonical_slug if printing else None,
            "printing_id": printing.id if printing else None,
            "match_status": status.value,
            "match_reason": reason.value,
            "raw_payload": item.model_dump(mode="json", exclude={"raw"}),
            "ingested_at": now,
        }

    async def list_units(self, after: str, limit: int | None) -> list[WorkUnit]:
        return await list_catalog_sets(self._store, after, limit)

    async def process(self, unit: WorkUnit, options: RunOptions) -> UnitOutcome:
        resolution = await self._matcher.resolve(unit.code, unit.name, persist=not options.dry_run)
        if not resolution.resolved:
            return UnitOutcome(unresolved=True)

        provider_set_id = resolution.provider_set_id
        pricing = await self._client.fetch_set_pricing(provider_set_id)
        counters: dict[str, int] = {"pagesFetched": 1}
        if not options.dry_run:
            if await self._writer.record_raw_payload(raw_payload_row(PROVIDER, pricing)):
                counters["callPayloadsRecorded"] = 1
            await self._matcher.record_verification(
                unit.code, unit.name, provider_set_id, bool(pricing.records)
            )

        if pricing.outcome is FetchOutcome.PROVIDER_MISS:
            return UnitOutcome(
                first_error=f"TCGTracking {pricing.http_status} for set {provider_set_id}",
                counters=counters,
            )

        lookup = await load_printing_lookup(self._store, unit.code)
        now = datetime.now(timezone.utc)
        batch = WriteBatch()
        fetched = 0

        for item in pricing.records:
            if options.card_limit is not None and fetched >= options.card_limit:
                break
            fetched += 1
            price = item.best_price
            if price is None or price <= 0:
                counters["itemsUnpriced"] = counters.get("itemsUnpriced", 0) + 1
                batch.ingest_rows.append(
                    self._ingest_row(item, provider_set_id, MatchStatus.UNMATCHED, MatchReason.UNPRICED, now)
                )
                continue

            match = lookup.match(item.number, item.subtype)
            printing = match.printing
            batch.ingest_rows.append(
                self._ingest_row(item, provider_set_id, match.status, match.reason, now, printing)
            )
            if not match.matched:
                key = "variantsAmbiguous" if match.status is MatchStatus.AMBIGUOUS else "variantsUnmatched"
                counters[key] = counters.get(key, 0) + 1
                continue
            counters["variantsMatched"] = counters.get("variantsMatched", 0) + 1

            batch.snapshots.append({
                "canonical_slug": printing.canonical_slug,
                "printing_id": printing.id,
                "grade": "RAW",
                "price_value": price,
                "currency": item.currency,
                "provider": PROVIDER,
                "provider_ref": f"tcgplayer-{item.product_id}-{printing.id}",
                "observed_at": now,
                "updated_at": now,
            })

        logger.info(
            "tcgtracking_set_staged",
            set_code=unit.code,
            provider_set_id=provider_set_id,
            resolution=resolution.source,
            items=len(pricing.records),
            snapshots=len(batch.snapshots),
            dry_run=options.dry_run,
        )

        if options.dry_run:
            return UnitOutcome(fetched=fetched, upserted=len(batch.snapshots), counters=counters)

        summary = await self._writer.write(batch)
        return UnitOutcome(
            fetched=fetched,
            upserted=summary.snapshots.written,
            failed=summary.failed,
            first_error=summary.first_error,
            layer_counts=summary.counts(),
            counters=counters,
        )

    async def after_run(
        self, touched_keys: Sequence[dict[str, str]], options: RunOptions
    ) -> dict[str, Any]:
        return {}


async def run_tcgtracking_sync(store: Store, options: RunOptions | None = None) -> dict[str, Any]:
    """Run one tcg_price_sync pass and return the report as a dict."""
    async with TCGTrackingClient() as client:
        processor = TCGTrackingSetProcessor(store, client)
        orchestrator = SyncOrchestrator(store, processor, settings.TCGTRACKING_SETS_PER_RUN)
        report = await orchestrator.run(options)
    return report.to_dict()
