"""
PokeLedger — JustTCG API Client

Fetches Pokémon card variants with 7d/30d market statistics and 30-day price
history from the JustTCG API.

Endpoints:
- GET /cards?set={id}&offset=&limit=&priceHistoryDuration=30d
- GET /sets?game=pokemon&q={term}

Auth is a static `x-api-key` header. Every call goes through the shared retry
policy; non-2xx card responses come back as a ProviderResponse with an empty
record list and the raw envelope so the caller can archive and classify them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.config import Provider, settings
from src.engine.set_scoring import ProviderSet
from src.pipeline.http import (
    ProviderResponse,
    RetryPolicy,
    request_with_retry,
    response_json,
)
from src.utils.condition_map import normalize_condition
from src.utils.variant_key import set_name_to_provider_id

logger = structlog.get_logger(__name__)

CARDS_ENDPOINT = "/cards"
SETS_ENDPOINT = "/sets"
SEALED_NAME_KEYWORDS = ("pack", "box", "booster", "etb", "tin", "bundle", "collection")
_MILLISECOND_THRESHOLD = 1_000_000_000_000

# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


class JustTCGPricePoint(BaseModel):
    """One point of a variant's price history: price `p` at unix time `t`."""

    p: float = 0.0
    t: int = 0

    @field_validator("p", "t", mode="before")
    @classmethod
    def default_numbers(cls, v: Any) -> Any:
        return 0 if v is None else v


class JustTCGVariant(BaseModel):
    """A priced condition/printing/language variant of a JustTCG card."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    condition: str = ""
    printing: str = ""
    language: str = "English"
    price: Decimal | None = None
    last_updated: int | None = Field(default=None, alias="lastUpdated")

    trend_slope_7d: float | None = Field(default=None, alias="trendSlope7d")
    cov_price_7d: float | None = Field(default=None, alias="covPrice7d")
    cov_price_30d: float | None = Field(default=None, alias="covPrice30d")
    stddev_pop_price_7d: float | None = Field(default=None, alias="stddevPopPrice7d")
    stddev_pop_price_30d: float | None = Field(default=None, alias="stddevPopPrice30d")
    price_relative_to_30d_range: float | None = Field(default=None, alias="priceRelativeTo30dRange")
    price_changes_count_7d: int | None = Field(default=None, alias="priceChangesCount7d")
    price_changes_count_30d: int | None = Field(default=None, alias="priceChangesCount30d")
    min_price_all_time: Decimal | None = Field(default=None, alias="minPriceAllTime")
    min_price_all_time_date: str | None = Field(default=None, alias="minPriceAllTimeDate")
    max_price_all_time: Decimal | None = Field(default=None, alias="maxPriceAllTime")
    max_price_all_time_date: str | None = Field(default=None, alias="maxPriceAllTimeDate")

    price_history: list[JustTCGPricePoint] = Field(default_factory=list, alias="priceHistory")
    price_history_30d: list[JustTCGPricePoint] = Field(default_factory=list, alias="priceHistory30d")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("condition", "printing", mode="before")
    @classmethod
    def default_label(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("language", mode="before")
    @classmethod
    def default_language(cls, v: Any) -> str:
        return "English" if v in (None, "") else str(v)

    @field_validator("price", "min_price_all_time", "max_price_all_time", mode="before")
    @classmethod
    def parse_decimal(cls, v: Any) -> Decimal | None:
        """Safely convert price values to Decimal. Never use float for money."""
        if v is None or v == "" or v == "N/A":
            return None
        try:
            return Decimal(str(v))
        except (InvalidOperation, ValueError):
            return None

    @field_validator("price_history", "price_history_30d", mode="before")
    @classmethod
    def default_history(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []

    @property
    def normalized_condition(self) -> str:
        return normalize_condition(self.condition)

    @property
    def history(self) -> list[JustTCGPricePoint]:
        """priceHistory when populated, else the deprecated priceHistory30d."""
        return self.price_history or self.price_history_30d

    def observed_at(self, fallback: datetime) -> datetime:
        """lastUpdated as an aware datetime; accepts seconds or milliseconds."""
        raw = self.last_updated
        if raw is None or raw <= 0:
            return fallback
        seconds = raw / 1000 if raw >= _MILLISECOND_THRESHOLD else raw
        return datetime.fromtimestamp(seconds, tz=timezone.utc)


class JustTCGCard(BaseModel):
    """A JustTCG card with its variants."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str = ""
    number: str = ""
    set_id: str = Field(default="", alias="set")
    set_name: str = ""
    rarity: str | None = None
    tcgplayer_id: str | None = Field(default=None, alias="tcgplayerId")
    variants: list[JustTCGVariant] = Field(default_factory=list)

    @field_validator("id", "name", "number", "set_id", "set_name", mode="before")
    @classmethod
    def default_text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("tcgplayer_id", mode="before")
    @classmethod
    def coerce_tcgplayer_id(cls, v: Any) -> str | None:
        return None if v in (None, "") else str(v)

    @field_validator("variants", mode="before")
    @classmethod
    def default_variants(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []

    @property
    def is_sealed(self) -> bool:
        """Sealed product: sealed condition, "N/A" number, or a product-like name."""
        if any(v.normalized_condition == "sealed" for v in self.variants):
            return True
        if self.number.strip().upper() == "N/A":
            return True
        name = self.name.lower()
        return any(keyword in name for keyword in SEALED_NAME_KEYWORDS)


class JustTCGCardsMeta(BaseModel):
    total: int = 0
    limit: int = 0
    offset: int = 0
    has_more: bool = Field(default=False, alias="hasMore")


class JustTCGCardsEnvelope(BaseModel):
    """Top-level response from GET /cards."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    data: list[JustTCGCard] = Field(default_factory=list)
    meta: JustTCGCardsMeta = Field(default_factory=JustTCGCardsMeta)

    @field_validator("data", mode="before")
    @classmethod
    def default_data(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []

    @field_validator("meta", mode="before")
    @classmethod
    def default_meta(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}


class JustTCGSet(BaseModel):
    id: str
    name: str = ""

    @field_validator("id", "name", mode="before")
    @classmethod
    def default_text(cls, v: Any) -> str:
        return "" if v is None else str(v)


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class JustTCGClient:
    """
    Async client for the JustTCG API.

    Usage:
        async with JustTCGClient() as client:
            page = await client.fetch_cards("base-set-pokemon")
            sets = await client.search_sets("Base Set")
    """

    provider = Provider.JUSTTCG.value

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        retry_policy: RetryPolicy | None = None,
        page_limit: int | None = None,
    ):
        self._api_key = api_key if api_key is not None else settings.JUSTTCG_API_KEY
        self._base_url = base_url or settings.JUSTTCG_BASE_URL
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._page_limit = page_limit or settings.JUSTTCG_PAGE_LIMIT
        self._client: httpx.AsyncClient | None = None

    @property
    def page_limit(self) -> int:
        return self._page_limit

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key.strip())

    async def __aenter__(self) -> JustTCGClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"x-api-key": self._api_key},
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> httpx.Response:
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
        return set_name_to_provider_id(set_name)

    async def fetch_cards(self, set_id: str, offset: int = 0) -> ProviderResponse[JustTCGCard]:
        """
        Fetch one page of cards for a JustTCG set.

        Args:
            set_id: Provider set id (e.g., "base-set-pokemon").
            offset: Record offset of the page.

        Returns:
            ProviderResponse with parsed cards, hasMore and the raw envelope.
            Non-2xx responses carry no records.
        """
        params = {
            "set": set_id,
            "offset": offset,
            "limit": self._page_limit,
            "priceHistoryDuration": settings.JUSTTCG_PRICE_HISTORY_DURATION,
        }
        logger.info("justtcg_fetch_cards", provider_set_id=set_id, offset=offset)

        response = await self._get(CARDS_ENDPOINT, params)
        body = response_json(response)

        if not (200 <= response.status_code < 300):
            logger.warning(
                "justtcg_fetch_cards_provider_miss",
                provider_set_id=set_id,
                status_code=response.status_code,
            )
            return ProviderResponse(
                records=[],
                has_more=False,
                raw_envelope=body,
                http_status=response.status_code,
                endpoint=CARDS_ENDPOINT,
                params=params,
            )

        try:
            envelope = JustTCGCardsEnvelope.model_validate(body if isinstance(body, dict) else {})
            cards = envelope.data
            has_more = envelope.meta.has_more
        except ValidationError as e:
            # Card-level validation failures drop the card, not the page.
            logger.warning("justtcg_envelope_invalid", provider_set_id=set_id, error=str(e))
            cards = self._parse_cards_leniently(body)
            has_more = bool(((body or {}).get("meta") or {}).get("hasMore", False))

        logger.info(
            "justtcg_fetch_cards_complete",
            provider_set_id=set_id,
            offset=offset,
            cards=len(cards),
            has_more=has_more,
        )
        return ProviderResponse(
            records=cards,
            has_more=has_more,
            raw_envelope=body,
            http_status=response.status_code,
            endpoint=CARDS_ENDPOINT,
            params=params,
        )

    @staticmethod
    def _parse_cards_leniently(body: Any) -> list[JustTCGCard]:
        cards: list[JustTCGCard] = []
        data = body.get("data") if isinstance(body, dict) else None
        for item in data if isinstance(data, list) else []:
            try:
                cards.append(JustTCGCard.model_validate(item))
            except ValidationError:
                logger.debug("justtcg_card_skipped_invalid", card_id=(item or {}).get("id"))
        return cards

    async def probe_set(self, set_id: str) -> ProviderResponse[JustTCGCard]:
        """First page of a set; used by the set matcher to verify an id."""
        return await self.fetch_cards(set_id, offset=0)

    async def search_sets(self, query: str) -> list[ProviderSet]:
        """
        Search JustTCG sets by name.

        Non-2xx responses yield an empty list (the matcher tries the next
        query variant).
        """
        params = {"game": settings.JUSTTCG_GAME, "q": query}
        response = await self._get(SETS_ENDPOINT, params)
        if not (200 <= response.status_code < 300):
            logger.warning(
                "justtcg_set_search_failed",
                query=query,
                status_code=response.status_code,
            )
            return []

        body = response_json(response)
        rows = body.get("data") if isinstance(body, dict) else None
        results: list[ProviderSet] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                parsed = JustTCGSet.model_validate(row)
            except ValidationError:
                continue
            if parsed.id:
                results.append(ProviderSet(id=parsed.id, name=parsed.name))

        logger.info("justtcg_set_search_complete", query=query, results_count=len(results))
        return results
