"""
PokeLedger — Trigger Authorization

Scheduled triggers authenticate with `Authorization: Bearer <CRON_SECRET>`.
A `?secret=` query parameter is still accepted as a deprecated fallback for
manual debugging. An unset secret denies every request.
"""

from __future__ import annotations

import hmac
from typing import Mapping, NamedTuple

import structlog

from src.config import settings

logger = structlog.get_logger(__name__)


class TriggerAuth(NamedTuple):
    """Result of checking a trigger request."""
    ok: bool
    deprecated_query_auth: bool = False


def _header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return (value or "").strip()
    return ""


def authorize_trigger(
    headers: Mapping[str, str],
    query: Mapping[str, str] | None = None,
    secret: str | None = None,
    allow_query_secret: bool | None = None,
) -> TriggerAuth:
    """
    Check a trigger request against the shared secret.

    Args:
        headers: Request headers (case-insensitive lookup).
        query: Query parameters, consulted only for the deprecated fallback.
        secret: Override for CRON_SECRET.
        allow_query_secret: Override for CRON_ALLOW_QUERY_SECRET.
    """
    expected = (settings.CRON_SECRET if secret is None else secret).strip()
    allow_query = (
        settings.CRON_ALLOW_QUERY_SECRET if allow_query_secret is None else allow_query_secret
    )

    if not expected:
        logger.warning("trigger_auth_secret_unset")
        return TriggerAuth(ok=False)

    auth_header = _header(headers, "authorization")
    if hmac.compare_digest(auth_header.encode(), f"Bearer {expected}".encode()):
        return TriggerAuth(ok=True)

    if allow_query and query:
        query_secret = (query.get("secret") or "").strip()
        if query_secret and hmac.compare_digest(query_secret.encode(), expected.encode()):
            logger.warning("trigger_auth_deprecated_query_secret")
            return TriggerAuth(ok=True, deprecated_query_auth=True)

    return TriggerAuth(ok=False)
