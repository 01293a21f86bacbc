"""
Tests for the TCGTracking price sync (src/pipeline/tcgtracking_sync.py).
"""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
import respx

from src.pipeline.http import RetryPolicy
from src.pipeline.orchestrator import RunOptions, SyncOrchestrator
from src.pipeline.store import SqlStore
from src.pipeline.tcgtracking import TCGTrackingClient
from src.pipeline.tcgtracking_sync import TCGTrackingSetProcessor

BASE_URL = "https://tcgtracking.test/tcgapi/v1"

SEARCH = {"sets": [{"id": 1663, "name": "Base Set", "abbr": "BS"}, {"id": 1700, "name": "Base Set 2"}]}
PRICING = {
    "prices": {
        "101": {"tcg": {"Normal": {"market": 1.25, "low": 0.99}}},
        "102": {"tcg": {"Reverse Holofoil": {"low": 2.0}}},
        "103": {"tcg": {}},
    },
}
PRODUCTS = {
    "products": [
        {"id": 101, "name": "Charmander", "number": "046/102"},
        {"id": 102, "name": "Squirtle", "number": "063/102"},
        {"id": 103, "name": "Booster Pack"},
    ],
}


@pytest.fixture
async def catalog(seed_printings) -> None:
    await seed_printings({
        "id": "p46",
        "canonical_slug": "charmander-base-set-46",
        "set_code": "base1",
        "set_name": "Base Set",
        "card_number": "46",
    })


def _orchestrator(store: SqlStore, policy: RetryPolicy):
    client = TCGTrackingClient(base_url=BASE_URL, category=3, retry_policy=policy)
    processor = TCGTrackingSetProcessor(store, client)
    return client, SyncOrchestrator(store, processor, units_per_run=10, budget_seconds=3600)


def _mock_routes(mock: respx.MockRouter, pricing_status: int = 200) -> None:
    mock.get("/3/search").mock(return_value=httpx.Response(200, json=SEARCH))
    mock.get("/3/sets/1663/pricing").mock(
        return_value=httpx.Response(pricing_status, json=PRICING if pricing_status == 200 else {"error": "x"})
    )
    mock.get("/3/sets/1663").mock(return_value=httpx.Response(200, json=PRODUCTS))


class TestTCGTrackingSync:
    @pytest.mark.asyncio
    async def test_snapshots_for_matched_items(
        self, store: SqlStore, catalog: None, fast_retry_policy: RetryPolicy
    ) -> None:
        client, orchestrator = _orchestrator(store, fast_retry_policy)
        with respx.mock(base_url=BASE_URL) as mock:
            _mock_routes(mock)
            async with client:
                report = await orchestrator.run()

        assert report.ok is True
        snapshots = await store.select("price_snapshots")
        assert len(snapshots) == 1
        assert snapshots[0]["provider"] == "TCGTRACKING"
        assert snapshots[0]["provider_ref"] == "tcgplayer-101-p46"
        assert snapshots[0]["price_value"] == Decimal("1.25")

        ingests = await store.select("provider_ingests", order_by="card_id")
        assert [(i["card_id"], i["match_status"], i["match_reason"]) for i in ingests][1:] == [
            ("102", "unmatched", "no_printing_for_number"),
            ("103", "unmatched", "unpriced"),
        ]
        assert (ingests[0]["card_id"], ingests[0]["match_status"]) == ("101", "matched")

        assert report.meta["itemsUnpriced"] == 1
        assert report.meta["variantsMatched"] == 1
        assert await store.select("price_history_points") == []
        assert await store.select("variant_metrics") == []

        mapping = (await store.select("provider_set_map"))[0]
        assert mapping["provider_set_id"] == "1663"
        assert mapping["confidence"] == 1.0
        assert len(await store.select("provider_raw_payloads")) == 1

    @pytest.mark.asyncio
    async def test_rerun_keeps_one_snapshot(
        self, store: SqlStore, catalog: None, fast_retry_policy: RetryPolicy
    ) -> None:
        client, orchestrator = _orchestrator(store, fast_retry_policy)
        with respx.mock(base_url=BASE_URL) as mock:
            _mock_routes(mock)
            async with client:
                await orchestrator.run()
                await orchestrator.run(RunOptions(force=True))

        assert len(await store.select("price_snapshots")) == 1
        assert len(await store.select("provider_raw_payloads")) == 1

    @pytest.mark.asyncio
    async def test_pricing_miss_fails_unit(
        self, store: SqlStore, catalog: None, fast_retry_policy: RetryPolicy
    ) -> None:
        client, orchestrator = _orchestrator(store, fast_retry_policy)
        with respx.mock(base_url=BASE_URL, assert_all_called=False) as mock:
            _mock_routes(mock, pricing_status=404)
            async with client:
                report = await orchestrator.run()

        assert report.ok is False
        assert report.first_error == "base1: TCGTracking 404 for set 1663"
        assert (await store.select("provider_set_map"))[0]["confidence"] == 0.0
