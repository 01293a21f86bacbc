"""
PokeLedger — Card Number Normalization

Two normalizers:

- normalize_card_number: the storage form. "#004/130" -> "4", "007" -> "7",
  promo codes such as "SWSH001" pass through.
- normalize_matching_card_number: the comparison form. Splits an alpha prefix
  from a numeric suffix and rejoins them as PREFIX<int>, so "BW04" and
  "BW004" compare equal.

Both are idempotent.
"""

from __future__ import annotations

import re

_SLASH_NUMBER = re.compile(r"^(\d+)\s*/")
_BARE_NUMBER = re.compile(r"^\d+$")
_PREFIXED_NUMBER = re.compile(r"^([A-Za-z]+)(\d+)$")
_ALPHA_ONLY = re.compile(r"^[A-Za-z]+$")


def normalize_card_number(raw: str | None) -> str:
    """
    Canonical card number: strip "#", drop a "/total" denominator, strip
    leading zeros from pure numerals. Anything else passes through trimmed.
    """
    if not raw:
        return ""
    trimmed = raw.strip().lstrip("#").strip()
    slash = _SLASH_NUMBER.match(trimmed)
    if slash:
        return str(int(slash.group(1)))
    if _BARE_NUMBER.match(trimmed):
        return str(int(trimmed))
    return trimmed


def normalize_matching_card_number(raw: str | None) -> str:
    """Comparison key for card numbers ("SWSH001" -> "SWSH1", "bw04" -> "BW4")."""
    number = normalize_card_number(raw)
    prefixed = _PREFIXED_NUMBER.match(number)
    if prefixed:
        return f"{prefixed.group(1).upper()}{int(prefixed.group(2))}"
    if _ALPHA_ONLY.match(number):
        return number.upper()
    return number
