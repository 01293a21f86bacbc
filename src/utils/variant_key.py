"""
PokeLedger — Variant Key Construction

The variant key is the join key between price history, derived metrics and
display layers:

    printing:edition:stamp:condition:language:grade
    e.g. "reverse_holofoil:unlimited:none:nm:en:raw"

Each segment is normalized independently and every rule is total, so two
independent computations of the same logical variant are byte-identical and
no input can raise or collapse a segment to "".
"""

from __future__ import annotations

import re

from src.config import settings
from src.utils.condition_map import normalize_condition, normalize_language

_UNSAFE = re.compile(r"[\s:]+")
_SLUG_UNSAFE = re.compile(r"[^a-z0-9]+")
_EDITION_ALNUM = re.compile(r"[^a-z0-9]")

UNKNOWN_SEGMENT = "unknown"


def _segment(value: str | None) -> str:
    """Lowercase, whitespace/colon runs to underscore, blank -> "unknown"."""
    cleaned = _UNSAFE.sub("_", (value or "").strip().lower()).strip("_")
    return cleaned or UNKNOWN_SEGMENT


def normalize_edition(edition: str | None) -> str:
    """Collapse any edition label to "1st-edition", "unlimited" or "unknown"."""
    compact = _EDITION_ALNUM.sub("", (edition or "").lower())
    if "1st" in compact or "first" in compact:
        return "1st-edition"
    if "unlimited" in compact:
        return "unlimited"
    return UNKNOWN_SEGMENT


def normalize_stamp(stamp: str | None) -> str:
    """Slugify a stamp label; no stamp is "none"."""
    slug = _SLUG_UNSAFE.sub("-", (stamp or "").lower()).strip("-")
    return slug or "none"


def build_variant_key(
    printing: str | None,
    edition: str | None,
    stamp: str | None,
    condition: str | None,
    language: str | None,
    grade: str | None,
) -> str:
    """
    Build the 6-segment variant key.

    Args:
        printing: Vendor printing label ("Reverse Holofoil" -> "reverse_holofoil").
        edition: Any edition label or enum value.
        stamp: Stamp label or None.
        condition: Vendor condition label ("Near Mint" -> "nm").
        language: Vendor language name ("English" -> "en").
        grade: Grade label ("RAW" -> "raw").
    """
    segments = (
        _segment(printing),
        normalize_edition(edition),
        normalize_stamp(stamp),
        _segment(normalize_condition(condition)),
        _segment(normalize_language(language)),
        _segment(grade),
    )
    return ":".join(segments)


def set_name_to_provider_id(set_name: str | None, suffix: str | None = None) -> str:
    """
    Deterministic provider set id derived from a set name.

    "Base Set" -> "base-set-pokemon". Returns "" when the name has no
    alphanumeric content.
    """
    suffix = settings.JUSTTCG_SET_ID_SUFFIX if suffix is None else suffix
    slug = _SLUG_UNSAFE.sub("-", (set_name or "").lower()).strip("-")
    if not slug:
        return ""
    return f"{slug}{suffix}"
