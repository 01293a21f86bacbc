"""
PokeLedger — Product/Variant Matcher

Within one resolved set, matches a vendor card variant to one of our card
printings by card number and finish.

Resolution order:
1. Candidates = printings whose matching-normalized number equals the
   vendor's.
2. With a finish signal, narrow to printings of that finish. If none carry
   it, fall back to every candidate for the number.
3. Without a finish signal, candidates of more than one finish are
   ambiguous.
4. Candidates spanning more than one canonical slug are ambiguous.
5. Several printings of one slug left: tiebreak prefers non-holo, then
   unlimited, then unstamped, then lowest id.

Ambiguous and unmatched observations are reported, never guessed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

import structlog

from src.utils.card_number import normalize_matching_card_number
from src.utils.condition_map import Edition, Finish, map_printing_to_finish

logger = structlog.get_logger(__name__)


class MatchStatus(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    AMBIGUOUS = "ambiguous"


class MatchReason(str, Enum):
    """Why a match resolved the way it did (stored on audit rows)."""
    EXACT_FINISH = "exact_finish"
    SINGLE_CANDIDATE = "single_candidate"
    NUMBER_FALLBACK = "number_fallback"
    TIEBREAK = "tiebreak"
    NO_NUMBER = "no_card_number"
    NO_PRINTING = "no_printing_for_number"
    NO_FINISH_SIGNAL = "no_finish_signal"
    SLUG_COLLISION = "slug_collision"
    # filtered before matching; audited as unmatched
    SEALED = "sealed"
    CONDITION_FILTERED = "condition_filtered"
    UNPRICED = "unpriced"


@dataclass(frozen=True)
class PrintingRef:
    """The slice of a card_printings row the matcher needs."""
    id: str
    canonical_slug: str
    card_number: str
    finish: str = Finish.UNKNOWN.value
    edition: str = Edition.UNKNOWN.value
    stamp: str | None = None
    set_code: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PrintingRef:
        return cls(
            id=str(row["id"]),
            canonical_slug=row["canonical_slug"],
            card_number=row.get("card_number") or "",
            finish=row.get("finish") or Finish.UNKNOWN.value,
            edition=row.get("edition") or Edition.UNKNOWN.value,
            stamp=row.get("stamp"),
            set_code=row.get("set_code"),
        )


@dataclass(frozen=True)
class VariantMatch:
    status: MatchStatus
    reason: MatchReason
    printing: PrintingRef | None = None

    @property
    def matched(self) -> bool:
        return self.status is MatchStatus.MATCHED


def _tiebreak_key(printing: PrintingRef) -> tuple[bool, bool, bool, str]:
    return (
        printing.finish != Finish.NON_HOLO.value,
        printing.edition != Edition.UNLIMITED.value,
        printing.stamp is not None,
        printing.id,
    )


class PrintingLookup:
    """
    Index of one set's printings keyed by matching-normalized card number.

    Usage:
        lookup = PrintingLookup(PrintingRef.from_row(r) for r in rows)
        match = lookup.match("025/203", "Reverse Holofoil")
    """

    def __init__(self, printings: Iterable[PrintingRef]):
        self._by_number: dict[str, list[PrintingRef]] = {}
        for printing in printings:
            if not printing.card_number or not printing.canonical_slug:
                continue
            key = normalize_matching_card_number(printing.card_number)
            self._by_number.setdefault(key, []).append(printing)

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._by_number.values())

    def candidates(self, card_number: str | None) -> list[PrintingRef]:
        return list(self._by_number.get(normalize_matching_card_number(card_number), ()))

    def match(self, card_number: str | None, printing_label: str | None) -> VariantMatch:
        """Resolve one vendor variant to a printing, or explain why not."""
        if not normalize_matching_card_number(card_number):
            return VariantMatch(MatchStatus.UNMATCHED, MatchReason.NO_NUMBER)

        candidates = self.candidates(card_number)
        if not candidates:
            return VariantMatch(MatchStatus.UNMATCHED, MatchReason.NO_PRINTING)

        has_finish_signal = bool((printing_label or "").strip())
        reason = MatchReason.SINGLE_CANDIDATE
        pool = candidates
        if has_finish_signal:
            finish = map_printing_to_finish(printing_label).value
            exact = [p for p in candidates if p.finish == finish]
            if exact:
                pool = exact
                reason = MatchReason.EXACT_FINISH
            else:
                reason = MatchReason.NUMBER_FALLBACK
        elif len({p.finish for p in candidates}) > 1:
            logger.debug(
                "variant_match_ambiguous",
                card_number=card_number,
                reason=MatchReason.NO_FINISH_SIGNAL.value,
                candidates=len(candidates),
            )
            return VariantMatch(MatchStatus.AMBIGUOUS, MatchReason.NO_FINISH_SIGNAL)

        if len({p.canonical_slug for p in pool}) > 1:
            logger.debug(
                "variant_match_ambiguous",
                card_number=card_number,
                reason=MatchReason.SLUG_COLLISION.value,
                slugs=sorted({p.canonical_slug for p in pool}),
            )
            return VariantMatch(MatchStatus.AMBIGUOUS, MatchReason.SLUG_COLLISION)

        if len(pool) == 1:
            return VariantMatch(MatchStatus.MATCHED, reason, pool[0])

        chosen = min(pool, key=_tiebreak_key)
        if reason is MatchReason.SINGLE_CANDIDATE:
            reason = MatchReason.TIEBREAK
        return VariantMatch(MatchStatus.MATCHED, reason, chosen)
