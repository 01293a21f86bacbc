"""
PokeLedger — Catalog Reads & Audit Rows

Helpers shared by the sync jobs: listing our sets as ordered work units,
loading one set's printings into a PrintingLookup, and shaping the raw
payload audit row for a provider call.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.config import settings
from src.engine.variant_matcher import PrintingLookup, PrintingRef
from src.pipeline.http import ProviderResponse, request_hash
from src.pipeline.orchestrator import WorkUnit
from src.pipeline.store import Store


async def list_catalog_sets(
    store: Store,
    after: str,
    limit: int | None,
    source: str | None = None,
    language: str | None = None,
) -> list[WorkUnit]:
    """
    Our sets strictly after `after`, ordered by set code.

    The set code under Python string order is the cursor's total order;
    filtering and sorting happen here, over the full distinct list. A code
    listed under several names takes the smallest non-empty one.
    """
    rows = await store.select(
        "card_printings",
        {
            "source": source or settings.CATALOG_SOURCE,
            "language": language or settings.CATALOG_LANGUAGE,
        },
        columns=("set_code", "set_name"),
        distinct=True,
    )
    names: dict[str, str | None] = {}
    for row in rows:
        code = (row.get("set_code") or "").strip()
        if not code or code <= after:
            continue
        name = row.get("set_name") or None
        current = names.get(code)
        if code not in names or (name is not None and (current is None or name < current)):
            names[code] = name
    units = [WorkUnit(code, names[code]) for code in sorted(names)]
    return units if limit is None else units[:limit]


async def load_printing_lookup(store: Store, set_code: str) -> PrintingLookup:
    rows = await store.select("card_printings", {"set_code": set_code})
    return PrintingLookup(PrintingRef.from_row(row) for row in rows)


def raw_payload_row(
    provider: str,
    response: ProviderResponse[Any],
    fetched_at: datetime | None = None,
) -> dict[str, Any]:
    fetched_at = fetched_at or datetime.now(timezone.utc)
    return {
        "provider": provider,
        "endpoint": response.endpoint,
        "params": response.params,
        "response": response.raw_envelope,
        "status_code": response.http_status,
        "fetched_at": fetched_at,
        "fetched_on": fetched_at.date(),
        "request_hash": request_hash(provider, response.endpoint, response.params),
    }
