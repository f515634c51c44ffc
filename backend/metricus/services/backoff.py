"""Exponential backoff executor for unreliable remote calls.

WHAT:
    Runs a no-argument async operation, retrying transient failures with
    `base_delay * 2^retries + jitter(0..1s)` between attempts, and returns a
    `BackoffResult` instead of raising.

WHY:
    Google Ads and the OAuth token endpoint both fail transiently (429, 5xx,
    dropped connections). Every ingestion path shares this one implementation
    instead of hand-rolling retry loops at each call site.

HOW:
    - Retryable: status_code 429 or 5xx, httpx timeouts/network errors, or a
      message mentioning a timeout, connection reset or failed fetch.
    - Anything else fails immediately with the retries consumed so far.
    - After `max_retries` retries the last error is returned as a failure.

REFERENCES:
    - metricus/services/metrics_ingestor.py (wraps query + transform + upsert)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from metricus.utils.customer_ids import redact_customer_ids

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0

_RETRYABLE_MARKERS = ("timeout", "timed out", "econnreset", "connection reset", "fetch failed")


@dataclass
class BackoffResult:
    """Outcome of `with_backoff`. Exactly one of result/error is meaningful."""
    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    retries: int = 0


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an exception as transient (worth retrying) or permanent."""
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code == 429 or 500 <= status_code <= 599

    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError, asyncio.TimeoutError)):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


async def with_backoff(
    operation: Callable[[], Awaitable[Any]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    *,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    base_delay: float = BASE_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    jitter: Callable[[], float] = random.random,
    label: str = "operation",
) -> BackoffResult:
    """Run `operation` with bounded exponential backoff.

    Args:
        operation: Zero-argument coroutine function performing the remote call.
        max_retries: Retries allowed after the first attempt.
        is_retryable: Predicate deciding whether a failure is transient.
        base_delay: Seconds for the first backoff step.
        sleep: Awaitable sleep (injected by tests).
        jitter: Returns extra seconds in [0, 1) added to each delay.
        label: Name used in log lines.

    Returns:
        BackoffResult with `retries` equal to the retries consumed.
    """
    retries = 0
    while True:
        try:
            result = await operation()
            return BackoffResult(success=True, result=result, retries=retries)
        except Exception as exc:  # noqa: BLE001
            if not is_retryable(exc):
                logger.warning("[BACKOFF] %s failed with non-retryable error after %d retries: %s", label, retries, redact_customer_ids(exc))
                return BackoffResult(success=False, error=exc, retries=retries)

            if retries >= max_retries:
                logger.error("[BACKOFF] %s exhausted %d retries: %s", label, retries, redact_customer_ids(exc))
                return BackoffResult(success=False, error=exc, retries=retries)

            delay = base_delay * (2 ** retries) + jitter()
            retries += 1
            logger.info("[BACKOFF] %s retry %d/%d in %.2fs (%s)", label, retries, max_retries, delay, redact_customer_ids(exc))
            await sleep(delay)
