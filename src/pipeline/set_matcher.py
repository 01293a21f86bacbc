"""
PokeLedger — Set Matcher

Resolves one of our canonical sets (code + name) to a provider set id.

Resolution order, first success wins:
1. Any stored mapping, zero confidence included: reuse, no network call.
   Only a later verification fetch moves its confidence.
2. Deterministic id from the set name: probe it. Records -> confidence 1.0;
   no records -> confidence 0.0 (cached) and keep going.
3. Fuzzy search with rewritten query variants, ranked by set_scoring.
   The winner is stored with confidence min(1, score/100).
4. Fallback: the deterministic id, uncached when nothing was persisted.

A set that resolves to nothing is returned as unresolved; callers count and
skip it. Mapping writes are single-statement upserts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from src.engine.set_scoring import (
    ProviderSet,
    SetScoreWeights,
    build_set_search_terms,
    rank_set_candidates,
)
from src.pipeline.http import ProviderRequestError, ProviderResponse
from src.pipeline.store import Store

logger = structlog.get_logger(__name__)

MAPPING_TABLE = "provider_set_map"


class SetCatalogProvider(Protocol):
    """What the matcher needs from a provider client."""

    provider: str

    def deterministic_set_id(self, set_name: str) -> str: ...

    async def probe_set(self, set_id: str) -> ProviderResponse[Any]: ...

    async def search_sets(self, query: str) -> list[ProviderSet]: ...


@dataclass
class SetResolution:
    """
    Outcome of resolving one set.

    source: "mapping" | "probe" | "search" | "fallback" | "unresolved".
    first_page: the probe response when the probe returned records, so the
    caller can reuse it instead of fetching the same page again.
    """
    provider_set_id: str | None
    source: str
    confidence: float | None = None
    first_page: ProviderResponse[Any] | None = None

    @property
    def resolved(self) -> bool:
        return bool(self.provider_set_id)


class SetMatcher:
    """
    Usage:
        matcher = SetMatcher(store, client)
        resolution = await matcher.resolve("base1", "Base Set")
    """

    def __init__(
        self,
        store: Store,
        client: SetCatalogProvider,
        weights: SetScoreWeights | None = None,
        search_by_code: bool = False,
    ):
        self._store = store
        self._client = client
        self._weights = weights or SetScoreWeights.from_settings()
        self._search_by_code = search_by_code

    @property
    def provider(self) -> str:
        return self._client.provider

    # -----------------------------------------------------------------------
    # Mapping persistence
    # -----------------------------------------------------------------------

    async def load_mapping(self, set_code: str) -> dict[str, Any] | None:
        rows = await self._store.select(
            MAPPING_TABLE,
            {"provider": self.provider, "canonical_set_code": set_code},
            limit=1,
        )
        return rows[0] if rows else None

    async def save_mapping(
        self,
        set_code: str,
        set_name: str | None,
        provider_set_id: str,
        confidence: float,
        match_source: str,
        verified: bool = False,
    ) -> None:
        now = datetime.now(timezone.utc)
        row: dict[str, Any] = {
            "provider": self.provider,
            "canonical_set_code": set_code,
            "canonical_set_name": set_name,
            "provider_set_id": provider_set_id,
            "confidence": confidence,
            "match_source": match_source,
            "updated_at": now,
        }
        if verified:
            row["last_verified_at"] = now
        await self._store.upsert(
            MAPPING_TABLE, [row], on_conflict=("provider", "canonical_set_code")
        )
        logger.debug(
            "set_mapping_saved",
            provider=self.provider,
            set_code=set_code,
            provider_set_id=provider_set_id,
            confidence=confidence,
            match_source=match_source,
        )

    async def record_verification(
        self,
        set_code: str,
        set_name: str | None,
        provider_set_id: str,
        has_records: bool,
    ) -> None:
        """Overwrite confidence after a real fetch: 1.0 with cards, 0.0 without."""
        await self.save_mapping(
            set_code,
            set_name,
            provider_set_id,
            1.0 if has_records else 0.0,
            "verification",
            verified=has_records,
        )

    # -----------------------------------------------------------------------
    # Resolution
    # -----------------------------------------------------------------------

    async def resolve(
        self, set_code: str, set_name: str | None, persist: bool = True
    ) -> SetResolution:
        """Resolve a set id. With persist=False nothing is written (dry runs)."""
        existing = await self.load_mapping(set_code)
        if existing and existing.get("provider_set_id"):
            logger.debug(
                "set_resolved_from_mapping",
                provider=self.provider,
                set_code=set_code,
                provider_set_id=existing["provider_set_id"],
            )
            return SetResolution(
                existing["provider_set_id"], "mapping", float(existing.get("confidence") or 0)
            )

        deterministic_id = self._client.deterministic_set_id(set_name or "")

        if deterministic_id:
            probe = await self._client.probe_set(deterministic_id)
            if probe.ok and probe.records:
                if persist:
                    await self.save_mapping(
                        set_code, set_name, deterministic_id, 1.0, "probe", verified=True
                    )
                logger.info(
                    "set_resolved_by_probe",
                    provider=self.provider,
                    set_code=set_code,
                    provider_set_id=deterministic_id,
                )
                return SetResolution(deterministic_id, "probe", 1.0, first_page=probe)
            if persist:
                await self.save_mapping(set_code, set_name, deterministic_id, 0.0, "probe")

        found = await self._search(set_code, set_name, persist)
        if found is not None:
            return found

        fallback_id = deterministic_id or None
        if fallback_id:
            logger.warning(
                "set_resolved_by_fallback",
                provider=self.provider,
                set_code=set_code,
                provider_set_id=fallback_id,
            )
            return SetResolution(fallback_id, "fallback", 0.0)

        logger.warning("set_unresolved", provider=self.provider, set_code=set_code, set_name=set_name)
        return SetResolution(None, "unresolved")

    async def _search(
        self, set_code: str, set_name: str | None, persist: bool
    ) -> SetResolution | None:
        code = set_code if self._search_by_code else None
        for query in build_set_search_terms(set_name, code):
            try:
                candidates = await self._client.search_sets(query)
            except ProviderRequestError as e:
                logger.warning(
                    "set_search_failed",
                    provider=self.provider,
                    set_code=set_code,
                    query=query,
                    error=str(e),
                )
                continue

            ranked = rank_set_candidates(candidates, query, set_name or "", code, self._weights)
            if not ranked:
                continue

            best = ranked[0]
            confidence = min(1.0, best.score / 100)
            if persist:
                await self.save_mapping(set_code, set_name, best.id, confidence, "search")
            logger.info(
                "set_resolved_by_search",
                provider=self.provider,
                set_code=set_code,
                query=query,
                provider_set_id=best.id,
                score=best.score,
            )
            return SetResolution(best.id, "search", confidence)
        return None
