"""
PokeLedger — TCGTracking API Client (secondary price aggregator)

TCGTracking republishes TCGPlayer market/low/mid/high prices per product and
price subtype. No authentication.

Endpoints (category 3 = English Pokémon):
- GET /{cat}/search?q={term}         -> {"sets": [{id, name, abbr|code, ...}]}
- GET /{cat}/sets/{id}/pricing       -> {"prices": {productId: {"tcg": {subtype: {...}}}}}
- GET /{cat}/sets/{id}               -> {"products": [{id, name, number, ...}]}

A set's pricing items merge the two set endpoints; the products call is
optional and its failure only loses names and numbers.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, Field

from src.config import Provider, settings
from src.engine.set_scoring import ProviderSet
from src.pipeline.http import (
    ProviderRequestError,
    ProviderResponse,
    RetryPolicy,
    request_with_retry,
    response_json,
)

logger = structlog.get_logger(__name__)

PREFERRED_SUBTYPES = (
    "normal",
    "nonfoil",
    "non-foil",
    "holo",
    "holofoil",
    "foil",
    "reverseholo",
    "reverseholofoil",
    "reverse-holo",
    "1stedition",
)
_PRICE_KEYS = ("market", "mid", "low", "high")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


class TCGTrackingPricingItem(BaseModel):
    """One product's preferred price subtype within a set."""

    product_id: str
    name: str | None = None
    number: str | None = None
    set_name: str | None = None
    subtype: str | None = None
    market_price: Decimal | None = None
    low_price: Decimal | None = None
    mid_price: Decimal | None = None
    high_price: Decimal | None = None
    currency: str = "USD"
    updated_at: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def best_price(self) -> Decimal | None:
        return self.market_price if self.market_price is not None else self.low_price


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _price(value: Any) -> Decimal | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price.is_finite() else None


def select_preferred_subtype(price_node: Any) -> tuple[str | None, dict[str, Any] | None]:
    """
    Pick the subtype whose prices represent the product.

    Preference order follows PREFERRED_SUBTYPES; each populated price field
    adds weight so a complete subtype beats an empty preferred one.
    """
    tcg = price_node.get("tcg") if isinstance(price_node, dict) else None
    if not isinstance(tcg, dict):
        return None, None

    scored: list[tuple[int, str, dict[str, Any]]] = []
    for subtype, fields in tcg.items():
        if not isinstance(fields, dict):
            continue
        key = _NON_ALNUM.sub("", subtype.lower())
        preferred = next((i for i, s in enumerate(PREFERRED_SUBTYPES) if s == key), None)
        score = 0 if preferred is None else 100 - preferred * 4
        score += 10 * sum(1 for k in _PRICE_KEYS if _price(fields.get(k)) is not None)
        scored.append((score, subtype, fields))

    if not scored:
        return None, None
    scored.sort(key=lambda item: (-item[0], item[1]))
    _, subtype, fields = scored[0]
    return subtype, fields


class TCGTrackingClient:
    """
    Async client for the TCGTracking API.

    Usage:
        async with TCGTrackingClient() as client:
            sets = await client.search_sets("Base Set")
            pricing = await client.fetch_set_pricing(sets[0].id)
    """

    provider = Provider.TCGTRACKING.value

    def __init__(
        self,
        base_url: str | None = None,
        category: int | None = None,
        retry_policy: RetryPolicy | None = None,
        item_limit: int | None = None,
    ):
        self._base_url = base_url or settings.TCGTRACKING_BASE_URL
        self._category = category or settings.TCGTRACKING_CATEGORY
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._item_limit = max(1, min(item_limit or settings.TCGTRACKING_ITEM_LIMIT, 250))
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> TCGTrackingClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        assert self._client is not None, "Client not initialized. Use 'async with'."
        return await request_with_retry(
            self._client,
            "GET",
            path,
            provider=self.provider,
            params=params,
            policy=self._retry_policy,
        )

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def deterministic_set_id(self, set_name: str) -> str:
        """TCGTracking ids are numeric; there is nothing to derive."""
        return ""

    async def search_sets(self, query: str) -> list[ProviderSet]:
        response = await self._get(f"/{self._category}/search", params={"q": query})
        if not (200 <= response.status_code < 300):
            logger.warning("tcgtracking_set_search_failed", query=query, status_code=response.status_code)
            return []

        body = response_json(response)
        rows = body.get("sets") if isinstance(body, dict) else None
        results: list[ProviderSet] = []
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, dict) or row.get("id") in (None, ""):
                continue
            code = _text(row.get("code")) or _text(row.get("abbr")) or _text(row.get("set_abbr"))
            results.append(ProviderSet(id=str(row["id"]), name=_text(row.get("name")) or "", code=code))

        logger.info("tcgtracking_set_search_complete", query=query, results_count=len(results))
        return results

    async def fetch_set_pricing(self, set_id: str) -> ProviderResponse[TCGTrackingPricingItem]:
        """
        Fetch priced items for one set.

        Returns:
            ProviderResponse with at most `item_limit` items. A non-2xx pricing
            response yields no records and keeps the raw envelope.
        """
        base = f"/{self._category}/sets/{quote(set_id, safe='')}"
        params = {"set": set_id, "limit": self._item_limit}
        logger.info("tcgtracking_fetch_set_pricing", provider_set_id=set_id)

        pricing_response = await self._get(f"{base}/pricing")
        pricing_body = response_json(pricing_response)
        if not (200 <= pricing_response.status_code < 300):
            logger.warning(
                "tcgtracking_pricing_provider_miss",
                provider_set_id=set_id,
                status_code=pricing_response.status_code,
            )
            return ProviderResponse(
                raw_envelope=pricing_body,
                http_status=pricing_response.status_code,
                endpoint="/sets/pricing",
                params=params,
            )

        products_body: dict[str, Any] = {}
        try:
            products_response = await self._get(base)
            if 200 <= products_response.status_code < 300:
                decoded = response_json(products_response)
                products_body = decoded if isinstance(decoded, dict) else {}
        except ProviderRequestError as e:
            logger.warning("tcgtracking_products_unavailable", provider_set_id=set_id, error=str(e))

        items = self._merge_items(pricing_body if isinstance(pricing_body, dict) else {}, products_body)
        logger.info("tcgtracking_fetch_set_pricing_complete", provider_set_id=set_id, items=len(items))
        return ProviderResponse(
            records=items,
            has_more=False,
            raw_envelope=pricing_body,
            http_status=pricing_response.status_code,
            endpoint="/sets/pricing",
            params=params,
        )

    async def probe_set(self, set_id: str) -> ProviderResponse[TCGTrackingPricingItem]:
        return await self.fetch_set_pricing(set_id)

    def _merge_items(
        self,
        pricing: dict[str, Any],
        products_payload: dict[str, Any],
    ) -> list[TCGTrackingPricingItem]:
        products = products_payload.get("products")
        products = products if isinstance(products, list) else []
        by_id = {str(p["id"]): p for p in products if isinstance(p, dict) and p.get("id") is not None}
        prices = pricing.get("prices")
        prices = prices if isinstance(prices, dict) else {}

        product_ids = list(dict.fromkeys([*by_id.keys(), *(str(k) for k in prices.keys())]))
        items: list[TCGTrackingPricingItem] = []
        for product_id in product_ids[: self._item_limit]:
            product = by_id.get(product_id) or {}
            node = prices.get(product_id)
            subtype, fields = select_preferred_subtype(node)
            fields = fields or {}
            items.append(
                TCGTrackingPricingItem(
                    product_id=product_id,
                    name=_text(product.get("name")),
                    number=_text(product.get("number")),
                    set_name=_text(product.get("set_name")) or _text(products_payload.get("set_name")),
                    subtype=subtype,
                    market_price=_price(fields.get("market")),
                    low_price=_price(fields.get("low")),
                    mid_price=_price(fields.get("mid")),
                    high_price=_price(fields.get("high")),
                    updated_at=_text((node or {}).get("updated") if isinstance(node, dict) else None)
                    or _text(pricing.get("updated")),
                    raw={"subtype": subtype, "pricing": node, "product": product or None},
                )
            )
        return items
