"""
PokeLedger — Set Candidate Scoring

Ranks a provider's set-search results against one of our canonical sets.
Scoring is an explicit formula over a ranked candidate list:

    +exact      normalized provider name equals the query or the set name
    +contains   otherwise, either string contains the other
    +token      per set-name token found in the provider name
    +code       provider set code equals our set code (when exposed)
    -penalties  promo/energy disagreement between local and provider set

Candidates below the minimum score are discarded; ties break on
provider id ascending so the winner is deterministic.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Sequence

import structlog

from src.config import settings

logger = structlog.get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_PROMO = re.compile(r"\bpromos?\b", re.IGNORECASE)
_ENERGY = re.compile(r"\benerg(?:y|ies)\b", re.IGNORECASE)
_DASHES = "—–-"

_PROMO_ERA_EXPANSIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^DP\b", re.IGNORECASE), "Diamond and Pearl"),
    (re.compile(r"^BW\b", re.IGNORECASE), "Black and White"),
    (re.compile(r"^SWSH\b", re.IGNORECASE), "Sword and Shield"),
    (re.compile(r"^SM\b", re.IGNORECASE), "Sun and Moon"),
    (re.compile(r"^SVP\b", re.IGNORECASE), "Scarlet and Violet"),
    (re.compile(r"\bBlack Star Promos\b", re.IGNORECASE), "Promos"),
)
_WIZARDS_PROMOS = re.compile(r"^Wizards Black Star Promos$", re.IGNORECASE)
_HS_PREFIX = re.compile(rf"^HS[{_DASHES}]\s*", re.IGNORECASE)
_HGSS = re.compile(r"^HeartGold\s*&\s*SoulSilver$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SetScoreWeights:
    """Scoring weights. Defaults come from settings."""
    exact: int
    contains: int
    token: int
    code: int
    unexpected_promo: int
    missing_promo: int
    unexpected_energy: int
    missing_energy: int
    min_score: int

    @classmethod
    def from_settings(cls) -> SetScoreWeights:
        return cls(
            exact=settings.SET_MATCH_EXACT_WEIGHT,
            contains=settings.SET_MATCH_CONTAINS_WEIGHT,
            token=settings.SET_MATCH_TOKEN_WEIGHT,
            code=settings.SET_MATCH_CODE_WEIGHT,
            unexpected_promo=settings.SET_MATCH_UNEXPECTED_PROMO_PENALTY,
            missing_promo=settings.SET_MATCH_MISSING_PROMO_PENALTY,
            unexpected_energy=settings.SET_MATCH_UNEXPECTED_ENERGY_PENALTY,
            missing_energy=settings.SET_MATCH_MISSING_ENERGY_PENALTY,
            min_score=settings.SET_MATCH_MIN_SCORE,
        )


@dataclass(frozen=True)
class ProviderSet:
    """A set as returned by a provider's search endpoint."""
    id: str
    name: str
    code: str | None = None


@dataclass(frozen=True)
class RankedSetCandidate:
    """A scored candidate; `score` already includes penalties."""
    id: str
    name: str
    score: int
    exact: bool
    code_matched: bool

    @property
    def confidence(self) -> float:
        return round(max(0.0, min(1.0, self.score / 100)), 2)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_set_name(value: str | None) -> str:
    """Accent-fold, lowercase, collapse non-alphanumerics to single spaces."""
    decomposed = unicodedata.normalize("NFKD", (value or "").lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped).strip()


def normalize_set_code(value: str | None) -> str:
    return _NON_ALNUM.sub("", (value or "").lower())


def looks_promo(value: str | None) -> bool:
    return bool(_PROMO.search(value or ""))


def looks_energy(value: str | None) -> bool:
    return bool(_ENERGY.search(value or ""))


def build_set_search_terms(set_name: str | None, set_code: str | None = None) -> list[str]:
    """
    Query variants for a set-name search, most literal first, deduplicated.

    "HeartGold & SoulSilver" yields the original, "HeartGold and SoulSilver",
    "HeartGold SoulSilver" and so on. The set code, when given, goes last.
    """
    terms: list[str] = []

    def add(term: str) -> None:
        term = re.sub(r"\s+", " ", term).strip()
        if term and term not in terms:
            terms.append(term)

    trimmed = (set_name or "").strip()
    add(trimmed)
    and_expanded = re.sub(r"\s+", " ", trimmed.replace("&", " and ")).strip()
    add(and_expanded)
    add(re.sub(rf"[&{_DASHES}]", " ", trimmed))
    add(re.sub(rf"[&{_DASHES}]", "", trimmed))

    promo_expanded = and_expanded
    for pattern, replacement in _PROMO_ERA_EXPANSIONS:
        promo_expanded = pattern.sub(replacement, promo_expanded)
    add(promo_expanded)

    if _WIZARDS_PROMOS.match(trimmed):
        add("WoTC Promo")
    if _HS_PREFIX.match(trimmed):
        add(_HS_PREFIX.sub("", trimmed))
    if _HGSS.match(trimmed):
        add("HeartGold SoulSilver")
    if set_code:
        add(set_code)
    return terms


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_set_candidate(
    candidate: ProviderSet,
    query: str,
    set_name: str,
    set_code: str | None = None,
    weights: SetScoreWeights | None = None,
) -> RankedSetCandidate:
    """Score one provider set against the query that found it and our set."""
    w = weights or SetScoreWeights.from_settings()
    provider_name = normalize_set_name(candidate.name)
    provider_id = normalize_set_name(candidate.id.replace("-", " "))
    query_target = normalize_set_name(query)
    target = normalize_set_name(set_name)
    target_tokens = {token for token in target.split(" ") if token}

    score = 0
    exact = bool(provider_name) and provider_name in (query_target, target)
    if exact:
        score += w.exact
    elif provider_name and any(
        t and (t in provider_name or provider_name in t) for t in (query_target, target)
    ):
        score += w.contains
    score += w.token * sum(1 for token in target_tokens if token in provider_name)

    code_matched = bool(
        set_code
        and candidate.code
        and normalize_set_code(candidate.code) == normalize_set_code(set_code)
    )
    if code_matched:
        score += w.code

    local_promo = looks_promo(set_name)
    provider_promo = looks_promo(provider_name) or looks_promo(provider_id)
    if not local_promo and provider_promo:
        score -= w.unexpected_promo
    if local_promo and not provider_promo:
        score -= w.missing_promo

    local_energy = looks_energy(set_name)
    provider_energy = looks_energy(provider_name) or looks_energy(provider_id)
    if not local_energy and provider_energy:
        score -= w.unexpected_energy
    if local_energy and not provider_energy:
        score -= w.missing_energy

    return RankedSetCandidate(
        id=candidate.id,
        name=candidate.name,
        score=score,
        exact=exact,
        code_matched=code_matched,
    )


def rank_set_candidates(
    candidates: Iterable[ProviderSet],
    query: str,
    set_name: str,
    set_code: str | None = None,
    weights: SetScoreWeights | None = None,
) -> list[RankedSetCandidate]:
    """
    Score, threshold and order candidates (score desc, id asc).

    Returns an empty list when nothing clears the minimum score.
    """
    w = weights or SetScoreWeights.from_settings()
    seen: set[str] = set()
    ranked: list[RankedSetCandidate] = []
    for candidate in candidates:
        if not candidate.id or candidate.id in seen:
            continue
        seen.add(candidate.id)
        scored = score_set_candidate(candidate, query, set_name, set_code, w)
        if scored.score >= w.min_score:
            ranked.append(scored)

    ranked.sort(key=lambda c: (-c.score, c.id))
    logger.debug(
        "set_candidates_ranked",
        query=query,
        set_name=set_name,
        candidates=len(ranked),
        top_id=ranked[0].id if ranked else None,
        top_score=ranked[0].score if ranked else None,
    )
    return ranked
