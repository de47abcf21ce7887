"""
Reusable retry policy for provider calls.

Token exchange, token refresh and destination uploads all go through
``RetryPolicy.run`` so that attempt ceilings, backoff and the decision of
which errors are transient live in one place.

Example:
    policy = RetryPolicy(
        max_attempts=3,
        backoff=linear_backoff(1.0),
        retryable=is_transient,
    )
    response = await policy.run(lambda: client.post(url), "token refresh")
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from core.exceptions import ProviderError, RetryableError

logger = logging.getLogger(__name__)

BackoffFn = Callable[[int], float]
RetryPredicate = Callable[[BaseException], bool]


def linear_backoff(base_delay: float) -> BackoffFn:
    """Delay grows linearly with the attempt number (base, 2*base, ...)."""
    return lambda attempt: base_delay * attempt


def exponential_backoff(base_delay: float, max_delay: float = 60.0) -> BackoffFn:
    return lambda attempt: min(base_delay * (2 ** (attempt - 1)), max_delay)


def is_transient(error: BaseException) -> bool:
    """Default predicate: provider 5xx/429, timeouts and connection errors."""
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, RetryableError):
        return True
    return isinstance(error, httpx.TransportError)


@dataclass
class RetryPolicy:
    """
    Retry configuration: attempt ceiling, backoff function, retry predicate.

    ``backoff(attempt)`` is called with the 1-based number of the attempt that
    just failed and returns the number of seconds to wait before the next one.
    """

    max_attempts: int = 3
    backoff: BackoffFn = field(default_factory=lambda: linear_backoff(1.0))
    retryable: RetryPredicate = is_transient
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        description: str = "operation",
    ) -> Any:
        """
        Run ``operation`` until it succeeds, fails permanently or the attempt
        ceiling is reached. The last error is re-raised unchanged.
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                last_error = e

                if not self.retryable(e):
                    raise

                if attempt == self.max_attempts:
                    logger.error(
                        f"{description} failed after {attempt} attempts: {e}"
                    )
                    raise

                delay = self.backoff(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self.sleep(delay)

        raise last_error  # pragma: no cover
