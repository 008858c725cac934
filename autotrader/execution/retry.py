"""Retry policy for broker submissions."""

from __future__ import annotations

from dataclasses import dataclass

from autotrader.config import ORDER_BASE_BACKOFF, ORDER_MAX_ATTEMPTS, ORDER_MAX_BACKOFF
from autotrader.execution.gateway import TransientBrokerError


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff applied to transient broker errors only.

    Attributes:
        max_attempts: Total submissions allowed, first try included.
        base_backoff: Delay before the first retry, in seconds.
        max_backoff: Upper bound on any single delay.
    """

    max_attempts: int = ORDER_MAX_ATTEMPTS
    base_backoff: float = ORDER_BASE_BACKOFF
    max_backoff: float = ORDER_MAX_BACKOFF

    def is_retryable(self, result: object) -> bool:
        return isinstance(result, TransientBrokerError)

    def should_retry(self, result: object, attempt: int) -> bool:
        """True if `attempt` (1-based, just failed) may be followed by another."""
        return self.is_retryable(result) and attempt < self.max_attempts

    def delay(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt`."""
        return min(self.base_backoff * (2 ** (attempt - 1)), self.max_backoff)


NO_RETRY = RetryPolicy(max_attempts=1)
