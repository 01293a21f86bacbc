"""
Tests for the TCGTracking client (src/pipeline/tcgtracking.py).
"""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
import respx

from src.pipeline.http import FetchOutcome, RetryPolicy
from src.pipeline.tcgtracking import TCGTrackingClient, TCGTrackingPricingItem, select_preferred_subtype

BASE_URL = "https://tcgtracking.test/tcgapi/v1"

PRICING = {
    "updated": "2026-01-01T00:00:00Z",
    "prices": {
        "101": {"tcg": {"Normal": {"market": 1.25, "low": 0.99}, "Holofoil": {"market": 9.0}}},
        "102": {"tcg": {"Reverse Holofoil": {"low": 2.0}}},
    },
}
PRODUCTS = {
    "set_name": "Base Set",
    "products": [
        {"id": 101, "name": "Charmander", "number": "046/102"},
        {"id": 102, "name": "Squirtle", "number": "063/102"},
        {"id": 103, "name": "Booster Pack", "number": None},
    ],
}


def _client(policy: RetryPolicy, **kw) -> TCGTrackingClient:
    return TCGTrackingClient(base_url=BASE_URL, category=3, retry_policy=policy, **kw)


class TestSubtypeSelection:
    def test_preferred_subtype_wins(self) -> None:
        subtype, fields = select_preferred_subtype(PRICING["prices"]["101"])
        assert subtype == "Normal"
        assert fields["market"] == 1.25

    def test_populated_subtype_beats_empty_preferred(self) -> None:
        node = {"tcg": {"Normal": {}, "Reverse Holofoil": {"market": 1, "low": 1, "mid": 1, "high": 1}}}
        assert select_preferred_subtype(node)[0] == "Reverse Holofoil"

    def test_missing_tcg_node(self) -> None:
        assert select_preferred_subtype(None) == (None, None)
        assert select_preferred_subtype({"tcg": []}) == (None, None)

    def test_best_price_falls_back_to_low(self) -> None:
        item = TCGTrackingPricingItem(product_id="1", low_price=Decimal("2.00"))
        assert item.best_price == Decimal("2.00")


class TestFetchSetPricing:
    @pytest.mark.asyncio
    async def test_merges_pricing_and_products(self, fast_retry_policy: RetryPolicy) -> None:
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/3/sets/1663/pricing").mock(return_value=httpx.Response(200, json=PRICING))
            mock.get("/3/sets/1663").mock(return_value=httpx.Response(200, json=PRODUCTS))
            async with _client(fast_retry_policy) as client:
                pricing = await client.fetch_set_pricing("1663")

        assert pricing.outcome is FetchOutcome.OK
        by_id = {item.product_id: item for item in pricing.records}
        assert set(by_id) == {"101", "102", "103"}
        assert by_id["101"].number == "046/102"
        assert by_id["101"].subtype == "Normal"
        assert by_id["101"].best_price == Decimal("1.25")
        assert by_id["102"].best_price == Decimal("2.0")
        assert by_id["103"].best_price is None
        assert by_id["101"].set_name == "Base Set"
        assert by_id["101"].updated_at == "2026-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_products_failure_only_loses_names(self, fast_retry_policy: RetryPolicy) -> None:
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/3/sets/1663/pricing").mock(return_value=httpx.Response(200, json=PRICING))
            mock.get("/3/sets/1663").mock(return_value=httpx.Response(503))
            async with _client(fast_retry_policy) as client:
                pricing = await client.fetch_set_pricing("1663")

        assert len(pricing.records) == 2
        assert all(item.number is None for item in pricing.records)

    @pytest.mark.asyncio
    async def test_item_limit(self, fast_retry_policy: RetryPolicy) -> None:
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/3/sets/1663/pricing").mock(return_value=httpx.Response(200, json=PRICING))
            mock.get("/3/sets/1663").mock(return_value=httpx.Response(200, json=PRODUCTS))
            async with _client(fast_retry_policy, item_limit=1) as client:
                pricing = await client.fetch_set_pricing("1663")

        assert [item.product_id for item in pricing.records] == ["101"]

    @pytest.mark.asyncio
    async def test_pricing_miss(self, fast_retry_policy: RetryPolicy) -> None:
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/3/sets/9/pricing").mock(return_value=httpx.Response(404, json={"error": "nope"}))
            async with _client(fast_retry_policy) as client:
                pricing = await client.fetch_set_pricing("9")

        assert pricing.outcome is FetchOutcome.PROVIDER_MISS
        assert pricing.raw_envelope == {"error": "nope"}


class TestSearchSets:
    @pytest.mark.asyncio
    async def test_search_reads_code(self, fast_retry_policy: RetryPolicy) -> None:
        body = {"sets": [{"id": 1663, "name": "Base Set", "abbr": "BS"}, {"name": "no id"}]}
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/3/search").mock(return_value=httpx.Response(200, json=body))
            async with _client(fast_retry_policy) as client:
                results = await client.search_sets("Base Set")

        assert len(results) == 1
        assert results[0].id == "1663"
        assert results[0].code == "BS"

    def test_no_deterministic_id(self, fast_retry_policy: RetryPolicy) -> None:
        assert _client(fast_retry_policy).deterministic_set_id("Base Set") == ""
