"""
Bounded retry with exponential back-off and jitter for capability calls.

Policy:
  delay(attempt) = min(base × 2^attempt + uniform(0, jitter), max_delay)

  attempt 0 is the initial call; it is followed by at most `max_retries`
  retries. Only transient failures are retried:
    • TransientCapabilityError (raised by our own HTTP clients on 429 / 5xx)
    • SDK exceptions whose class name marks a throttle / outage
      (RateLimitError, InternalServerError, APITimeoutError, …)
    • anything carrying status_code 429/502/503/504
    • messages mentioning "rate limit", "429" or "503"
  Everything else fails fast. When the bound is exhausted the ORIGINAL
  exception is re-raised unchanged (no wrapping), so callers can still
  classify it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from dms.core.config import settings
from dms.core.errors import FatalCapabilityError, TransientCapabilityError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Transient failure detection
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai / langchain-openai
    "RateLimitError",
    "ServiceUnavailableError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)

_RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

_RETRYABLE_MESSAGE_MARKERS = ("rate limit", "429", "503")


def is_transient(exc: BaseException) -> bool:
    """True if *exc* signals throttling or a temporary outage."""
    if isinstance(exc, TransientCapabilityError):
        return True
    if isinstance(exc, FatalCapabilityError):
        return False

    name = type(exc).__name__
    if any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES):
        return True

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and status_code in _RETRYABLE_STATUS_CODES:
        return True

    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MESSAGE_MARKERS)


def compute_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
) -> float:
    """Delay in seconds before retry number *attempt* (0-based)."""
    delay = base_delay * (2 ** attempt) + random.uniform(0, jitter)
    return min(delay, max_delay)


# ---------------------------------------------------------------------------
# Retry wrapper
# ---------------------------------------------------------------------------

async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    jitter: float | None = None,
    label: str = "capability",
) -> T:
    """
    Await ``fn()`` and retry transient failures.

    ``fn`` must be a zero-argument coroutine factory so each attempt issues
    a fresh request.
    """
    max_retries = settings.retry_max_retries if max_retries is None else max_retries
    base_delay  = settings.retry_base_delay if base_delay is None else base_delay
    max_delay   = settings.retry_max_delay if max_delay is None else max_delay
    jitter      = settings.retry_jitter if jitter is None else jitter

    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries or not is_transient(exc):
                raise
            delay = compute_backoff(attempt, base_delay, max_delay, jitter)
            logger.warning(
                "Retry | call=%s attempt=%d/%d delay=%.2fs error=%s: %s",
                label, attempt + 1, max_retries, delay, type(exc).__name__, exc,
            )
            await asyncio.sleep(delay)
            attempt += 1
