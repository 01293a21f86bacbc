"""
PokeLedger — Shared Provider HTTP Layer

One retry policy used by every vendor call:

- Retryable statuses (429/500/502/503/504) and network errors are retried with
  exponential backoff plus jitter, honouring a Retry-After header when given.
- After the attempt budget is spent the call fails loudly with
  ProviderRequestError; it never degrades to an empty result.
- Any other status (2xx or a non-retryable 4xx) is returned as-is so callers
  can archive the raw envelope before classifying the outcome.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx
import structlog

from src.config import settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


class ProviderRequestError(RuntimeError):
    """A provider call exhausted its retry budget."""

    def __init__(self, provider: str, path: str, attempts: int, status_code: int | None = None):
        self.provider = provider
        self.path = path
        self.attempts = attempts
        self.status_code = status_code
        detail = f" (last status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider} request {path} failed after {attempts} attempts{detail}")


# ---------------------------------------------------------------------------
# Retry Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter."""

    max_attempts: int = 6
    backoff_base: float = 0.8
    backoff_max: float = 10.0
    jitter_max: float = 0.25
    retry_after_cap: float = 20.0
    retry_statuses: frozenset[int] = RETRYABLE_STATUSES

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.HTTP_MAX_ATTEMPTS,
            backoff_base=settings.HTTP_BACKOFF_BASE_SECONDS,
            backoff_max=settings.HTTP_BACKOFF_MAX_SECONDS,
            jitter_max=settings.HTTP_JITTER_MAX_SECONDS,
            retry_after_cap=settings.HTTP_RETRY_AFTER_CAP_SECONDS,
        )

    def backoff(self, attempt: int) -> float:
        """Wait before retry number `attempt` (1-based), jitter included."""
        delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        if self.jitter_max > 0:
            delay += random.uniform(0, self.jitter_max)
        return delay

    def retry_after(self, header: str | None) -> float | None:
        """Parse a Retry-After value given in seconds; dates are ignored."""
        if not header:
            return None
        try:
            seconds = float(header.strip())
        except ValueError:
            return None
        if seconds <= 0:
            return None
        return min(seconds, self.retry_after_cap)


# ---------------------------------------------------------------------------
# Response Envelope
# ---------------------------------------------------------------------------


class FetchOutcome(str, Enum):
    """How a fetch should be classified by the caller."""
    OK = "ok"
    EMPTY = "empty"                  # 2xx with zero records; may mean exhausted
    PROVIDER_MISS = "provider_miss"  # non-2xx; envelope kept for the audit layer


@dataclass
class ProviderResponse(Generic[T]):
    """Parsed records plus everything needed to archive the call."""

    records: list[T] = field(default_factory=list)
    has_more: bool = False
    raw_envelope: Any = None
    http_status: int = 200
    endpoint: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.http_status < 300

    @property
    def outcome(self) -> FetchOutcome:
        if not self.ok:
            return FetchOutcome.PROVIDER_MISS
        if not self.records:
            return FetchOutcome.EMPTY
        return FetchOutcome.OK


def request_hash(provider: str, endpoint: str, params: dict[str, Any]) -> str:
    """Stable 16-hex-char digest of a request, used as the audit dedupe key."""
    payload = json.dumps(
        {"provider": provider, "endpoint": endpoint, "params": params},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def response_json(response: httpx.Response) -> Any:
    """Decode a body as JSON; non-JSON bodies are kept as truncated text."""
    try:
        return response.json()
    except ValueError:
        return {"_raw_text": response.text[:2000]}


# ---------------------------------------------------------------------------
# Request With Retry
# ---------------------------------------------------------------------------


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    provider: str,
    params: dict[str, Any] | None = None,
    policy: RetryPolicy | None = None,
) -> httpx.Response:
    """
    Send a request, retrying transient failures per `policy`.

    Returns:
        The final response (2xx or non-retryable status).

    Raises:
        ProviderRequestError: retryable failures persisted for every attempt.
    """
    policy = policy or RetryPolicy.from_settings()
    last_error: Exception | None = None
    last_status: int | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            response = await client.request(method, path, params=params)
        except httpx.RequestError as e:
            last_error = e
            last_status = None
            logger.warning(
                "provider_request_error",
                provider=provider,
                path=path,
                attempt=attempt,
                error=str(e),
                error_type=type(e).__name__,
            )
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.backoff(attempt))
            continue

        if response.status_code not in policy.retry_statuses:
            return response

        last_status = response.status_code
        last_error = httpx.HTTPStatusError(
            f"retryable status {response.status_code}",
            request=response.request,
            response=response,
        )
        if attempt >= policy.max_attempts:
            break

        retry_after = policy.retry_after(response.headers.get("retry-after"))
        wait_time = retry_after if retry_after is not None else policy.backoff(attempt)
        logger.warning(
            "provider_retryable_status",
            provider=provider,
            path=path,
            status_code=response.status_code,
            attempt=attempt,
            wait_seconds=round(wait_time, 3),
            retry_after=retry_after is not None,
        )
        await asyncio.sleep(wait_time)

    logger.error(
        "provider_request_exhausted",
        provider=provider,
        path=path,
        attempts=policy.max_attempts,
        status_code=last_status,
    )
    raise ProviderRequestError(provider, path, policy.max_attempts, last_status) from last_error
