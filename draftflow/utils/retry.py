from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..config import RetryBudget
from ..errors import (
    StoreUnavailableError,
    TransientAgentError,
    TransportUnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientAgentError,
    StoreUnavailableError,
    TransportUnavailableError,
    TimeoutError,
    asyncio.TimeoutError,
)


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.5,
) -> float:
    """Compute capped exponential backoff with jitter."""
    delay = min(base * multiplier**attempt, max_delay)
    return delay + random.uniform(0, jitter)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


class RetryPolicy:
    """Decide whether and when a failed operation is re-issued.

    Only errors in ``retryable`` are ever retried; everything else is fatal
    no matter how much budget is left.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: float = 0.5,
        retryable: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable = retryable

    @classmethod
    def from_budget(cls, budget: RetryBudget) -> "RetryPolicy":
        return cls(
            max_retries=budget.max_retries,
            base_delay=budget.base_delay,
            multiplier=budget.multiplier,
            max_delay=budget.max_delay,
            jitter=budget.jitter,
        )

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retryable)

    def backoff(self, retry_count: int) -> float:
        return compute_backoff(
            retry_count,
            base=self.base_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )

    def should_retry(
        self,
        error: BaseException,
        retry_count: int,
        max_retries: Optional[int] = None,
    ) -> RetryDecision:
        """Return whether ``error`` at ``retry_count`` earns another attempt."""
        limit = self.max_retries if max_retries is None else max_retries
        if not self.is_retryable(error) or retry_count >= limit:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay=self.backoff(retry_count))


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    timeout: Optional[float] = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` under ``policy`` with a per-attempt ``timeout``.

    A timeout counts as a retryable failure. The last error is re-raised
    once the policy gives up.
    """
    attempt = 0
    while True:
        try:
            if timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout)
        except Exception as exc:
            decision = policy.should_retry(exc, attempt)
            if not decision.retry:
                if policy.is_retryable(exc):
                    logger.error(
                        f"{description} failed after {attempt + 1} attempts: {exc!r}"
                    )
                raise
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{policy.max_retries + 1}): "
                f"{exc!r}; retrying in {decision.delay:.2f}s"
            )
            await asyncio.sleep(decision.delay)
            attempt += 1
