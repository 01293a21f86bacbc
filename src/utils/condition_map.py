"""
PokeLedger — Condition, Language & Finish Vocabulary

Vendor labels come in free text ("Near Mint", "Reverse Holofoil", "Japanese").
This module maps them onto the short tokens used in variant keys and onto the
finish enum stored on card printings.

Every mapping is total: unknown labels degrade to a sanitized token instead
of raising.
"""

from __future__ import annotations

import re
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class Finish(str, Enum):
    """Physical finish of a card printing (card_printings.finish)."""
    HOLO = "HOLO"
    REVERSE_HOLO = "REVERSE_HOLO"
    NON_HOLO = "NON_HOLO"
    UNKNOWN = "UNKNOWN"


class Edition(str, Enum):
    """Print run of a card printing (card_printings.edition)."""
    FIRST_EDITION = "FIRST_EDITION"
    UNLIMITED = "UNLIMITED"
    UNKNOWN = "UNKNOWN"


# ---------------------------------------------------------------------------
# Mapping tables
# ---------------------------------------------------------------------------

_CONDITION_TOKENS: dict[str, str] = {
    "near mint": "nm",
    "lightly played": "lp",
    "moderately played": "mp",
    "heavily played": "hp",
    "damaged": "dmg",
    "sealed": "sealed",
}

_LANGUAGE_TOKENS: dict[str, str] = {
    "english": "en",
    "japanese": "jp",
    "korean": "kr",
    "french": "fr",
    "german": "de",
    "spanish": "es",
    "italian": "it",
    "portuguese": "pt",
}

_WHITESPACE = re.compile(r"\s+")


def normalize_condition(condition: str | None) -> str:
    """
    Map a vendor condition label to a short token.

    "Near Mint" -> "nm", "Sealed" -> "sealed". Unknown labels fall back to the
    lowercase label with whitespace removed; blank input yields "".
    """
    key = _WHITESPACE.sub(" ", (condition or "").strip().lower())
    token = _CONDITION_TOKENS.get(key)
    if token is None:
        token = key.replace(" ", "")
        if token:
            logger.debug("condition_unmapped", condition=condition, token=token)
    return token


def normalize_language(language: str | None) -> str:
    """Map a vendor language name to its abbreviation ("English" -> "en")."""
    key = (language or "").strip().lower()
    token = _LANGUAGE_TOKENS.get(key)
    if token is not None:
        return token
    return _WHITESPACE.sub("_", key)


def map_printing_to_finish(printing: str | None) -> Finish:
    """
    Map a vendor printing label to a finish by substring rules.

    "reverse" wins over "holo" so "Reverse Holofoil" is REVERSE_HOLO;
    "holo" and "cosmos" are HOLO; anything else is NON_HOLO.
    """
    label = (printing or "").lower()
    if "reverse" in label:
        return Finish.REVERSE_HOLO
    if "holo" in label or "cosmos" in label:
        return Finish.HOLO
    return Finish.NON_HOLO
