"""
Retry boundary for embedding provider calls.

Calls go through ``RetryPolicy.run`` which retries transient failures
(rate limits, 5xx, timeouts, dropped connections) with exponential backoff
and returns a ``ProviderResult`` instead of raising, so the caller decides
what a final failure means for the run.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import openai

logger = logging.getLogger("knowledge-graph.indexer.retry")

T = TypeVar("T")

TRANSIENT_STATUS_CODES = {408, 409, 429}

TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying: HTTP 429/5xx, timeouts, connection drops."""
    if isinstance(exc, TRANSIENT_OPENAI_ERRORS):
        return True
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    status = _status_code(exc)
    if status is None:
        return False
    return status in TRANSIENT_STATUS_CODES or status >= 500


def retry_after_seconds(exc: BaseException) -> float | None:
    """Value of a ``Retry-After`` header carried by the error, if any."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


@dataclass
class ProviderResult(Generic[T]):
    """Outcome of a call made through ``RetryPolicy``."""

    value: T | None = None
    attempts: int = 0
    error: str | None = None
    transient: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter.

    ``delay(n) = min(max_delay, base_delay * multiplier ** (n - 1))`` plus up
    to ``jitter`` of that value, unless the error carries a Retry-After.
    """

    max_attempts: int = 4
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 20.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        if exc is not None:
            hinted = retry_after_seconds(exc)
            if hinted is not None:
                return min(hinted, self.max_delay)
        delay = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        timeout: float | None = None,
        description: str = "provider call",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> ProviderResult[T]:
        """
        Await ``call()`` until it succeeds, a non-transient error occurs or
        ``max_attempts`` is exhausted.

        ``asyncio.CancelledError`` is never swallowed.
        """
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                if timeout:
                    value = await asyncio.wait_for(call(), timeout=timeout)
                else:
                    value = await call()
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", description, attempt)
                return ProviderResult(value=value, attempts=attempt)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                if not is_transient(exc):
                    logger.error(
                        "%s attempt %d/%d failed (not retryable): %s",
                        description, attempt, self.max_attempts, last_error,
                    )
                    return ProviderResult(attempts=attempt, error=last_error)
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt, exc)
                logger.warning(
                    "%s attempt %d/%d: %s, retrying in %.2fs",
                    description, attempt, self.max_attempts, last_error, delay,
                )
                await sleep(delay)

        logger.error("%s failed after %d attempts: %s", description, self.max_attempts, last_error)
        return ProviderResult(attempts=self.max_attempts, error=last_error, transient=True)
