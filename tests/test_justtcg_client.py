"""
Tests for the JustTCG client (src/pipeline/justtcg.py).

Covers:
- Card page parsing: variants, Decimal prices, hasMore, history
- Non-2xx responses kept as provider misses with the raw envelope
- Invalid cards dropped without losing the page
- Sealed product detection
- Set search and deterministic set ids
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import httpx
import pytest
import respx

from src.pipeline.http import FetchOutcome, RetryPolicy
from src.pipeline.justtcg import JustTCGCard, JustTCGClient, JustTCGVariant

BASE_URL = "https://justtcg.test/v1"


def _client(policy: RetryPolicy, api_key: str = "test-key") -> JustTCGClient:
    return JustTCGClient(api_key=api_key, base_url=BASE_URL, retry_policy=policy, page_limit=200)


class TestFetchCards:
    @pytest.mark.asyncio
    async def test_parses_page(
        self,
        fast_retry_policy: RetryPolicy,
        justtcg_variant: Callable[..., dict[str, Any]],
        justtcg_card: Callable[..., dict[str, Any]],
        justtcg_page: Callable[..., dict[str, Any]],
    ) -> None:
        payload = justtcg_page([justtcg_card("c1", "025/203", [justtcg_variant()])], has_more=True)

        with respx.mock(base_url=BASE_URL) as mock:
            route = mock.get("/cards").mock(return_value=httpx.Response(200, json=payload))
            async with _client(fast_retry_policy) as client:
                page = await client.fetch_cards("base-set-pokemon", offset=200)

        request = route.calls.last.request
        assert request.headers["x-api-key"] == "test-key"
        assert request.url.params["set"] == "base-set-pokemon"
        assert request.url.params["offset"] == "200"
        assert request.url.params["priceHistoryDuration"] == "30d"

        assert page.outcome is FetchOutcome.OK
        assert page.has_more is True
        assert page.raw_envelope == payload
        card = page.records[0]
        assert card.number == "025/203"
        variant = card.variants[0]
        assert variant.price == Decimal("4.5")
        assert variant.trend_slope_7d == 0.12
        assert [point.p for point in variant.history] == [4.10, 4.50]

    @pytest.mark.asyncio
    async def test_provider_miss_keeps_envelope(self, fast_retry_policy: RetryPolicy) -> None:
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/cards").mock(return_value=httpx.Response(404, json={"error": "Set not found"}))
            async with _client(fast_retry_policy) as client:
                page = await client.fetch_cards("missing-set-pokemon")

        assert page.outcome is FetchOutcome.PROVIDER_MISS
        assert page.http_status == 404
        assert page.records == []
        assert page.raw_envelope == {"error": "Set not found"}
        assert page.endpoint == "/cards"

    @pytest.mark.asyncio
    async def test_invalid_card_dropped(
        self,
        fast_retry_policy: RetryPolicy,
        justtcg_card: Callable[..., dict[str, Any]],
        justtcg_page: Callable[..., dict[str, Any]],
    ) -> None:
        payload = justtcg_page([justtcg_card("c1", "1", []), {"name": "no id"}])

        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/cards").mock(return_value=httpx.Response(200, json=payload))
            async with _client(fast_retry_policy) as client:
                page = await client.fetch_cards("base-set-pokemon")

        assert [card.id for card in page.records] == ["c1"]

    @pytest.mark.asyncio
    async def test_empty_page(self, fast_retry_policy: RetryPolicy, justtcg_page: Callable[..., dict[str, Any]]) -> None:
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/cards").mock(return_value=httpx.Response(200, json=justtcg_page([])))
            async with _client(fast_retry_policy) as client:
                page = await client.fetch_cards("base-set-pokemon")

        assert page.outcome is FetchOutcome.EMPTY


class TestModels:
    def test_variant_defaults(self) -> None:
        variant = JustTCGVariant.model_validate(
            {"id": 17, "condition": None, "language": "", "price": "N/A", "priceHistory": None}
        )
        assert variant.id == "17"
        assert variant.condition == ""
        assert variant.language == "English"
        assert variant.price is None
        assert variant.history == []

    def test_deprecated_history_field(self) -> None:
        variant = JustTCGVariant.model_validate({"id": "v", "priceHistory30d": [{"p": 1.0, "t": 5}]})
        assert variant.history[0].t == 5

    def test_observed_at_accepts_milliseconds(self) -> None:
        fallback = datetime(2020, 1, 1, tzinfo=timezone.utc)
        seconds = JustTCGVariant(id="v", lastUpdated=1_767_225_600).observed_at(fallback)
        millis = JustTCGVariant(id="v", lastUpdated=1_767_225_600_000).observed_at(fallback)
        assert seconds == millis == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert JustTCGVariant(id="v").observed_at(fallback) == fallback

    @pytest.mark.parametrize(
        ("payload", "sealed"),
        [
            ({"id": "c", "name": "Charizard", "number": "4"}, False),
            ({"id": "c", "name": "Base Set Booster Pack", "number": ""}, True),
            ({"id": "c", "name": "Mystery", "number": "N/A"}, True),
            ({"id": "c", "name": "Mystery", "number": "", "variants": [{"id": "v", "condition": "Sealed"}]}, True),
        ],
    )
    def test_sealed_detection(self, payload: dict[str, Any], sealed: bool) -> None:
        assert JustTCGCard.model_validate(payload).is_sealed is sealed


class TestSets:
    @pytest.mark.asyncio
    async def test_search_sets(self, fast_retry_policy: RetryPolicy) -> None:
        body = {"data": [{"id": "base-set-pokemon", "name": "Base Set"}, {"id": None, "name": "broken"}]}
        with respx.mock(base_url=BASE_URL) as mock:
            route = mock.get("/sets").mock(return_value=httpx.Response(200, json=body))
            async with _client(fast_retry_policy) as client:
                results = await client.search_sets("Base Set")

        assert route.calls.last.request.url.params["q"] == "Base Set"
        assert [(r.id, r.name) for r in results] == [("base-set-pokemon", "Base Set")]

    @pytest.mark.asyncio
    async def test_search_failure_is_empty(self, fast_retry_policy: RetryPolicy) -> None:
        with respx.mock(base_url=BASE_URL) as mock:
            mock.get("/sets").mock(return_value=httpx.Response(400, json={"error": "bad"}))
            async with _client(fast_retry_policy) as client:
                assert await client.search_sets("x") == []

    def test_deterministic_set_id(self, fast_retry_policy: RetryPolicy) -> None:
        assert _client(fast_retry_policy).deterministic_set_id("Base Set") == "base-set-pokemon"

    def test_has_credentials(self, fast_retry_policy: RetryPolicy) -> None:
        assert _client(fast_retry_policy).has_credentials
        assert not _client(fast_retry_policy, api_key="  ").has_credentials
