"""Retry policy shared by every push in the sync engine."""

import random
from dataclasses import dataclass, field
from typing import Optional

from .errors import ApiError, NetworkError, RateLimitedError, ServerError


@dataclass(frozen=True)
class RetryRule:
    """Backoff parameters for one kind of failure."""

    max_attempts: int = 8
    base: float = 2.0
    cap: float = 300.0
    jitter: float = 0.2

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Exponential delay for the given 1-based attempt, jittered, never above cap."""
        rng = rng or random
        raw = min(self.cap, self.base * (2 ** max(attempt - 1, 0)))
        return min(self.cap, raw * (1 + rng.uniform(-self.jitter, self.jitter)))


NEVER = RetryRule(max_attempts=0)


def _default_rules() -> dict[str, RetryRule]:
    transient = RetryRule()
    return {
        NetworkError.kind: transient,
        RateLimitedError.kind: transient,
        ServerError.kind: transient,
    }


@dataclass
class RetryPolicy:
    """Maps an ApiError kind to its RetryRule; unknown kinds are not retried."""

    rules: dict[str, RetryRule] = field(default_factory=_default_rules)

    def rule_for(self, error: ApiError) -> RetryRule:
        return self.rules.get(error.kind, NEVER)

    def should_retry(self, error: ApiError) -> bool:
        return error.retryable and self.rule_for(error).max_attempts > 0

    def exhausted(self, error: ApiError, attempt: int) -> bool:
        return attempt >= self.rule_for(error).max_attempts

    def next_delay(self, error: ApiError, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before the next attempt; Retry-After is a lower bound."""
        delay = self.rule_for(error).delay(attempt, rng)
        if isinstance(error, RateLimitedError) and error.retry_after:
            delay = max(delay, float(error.retry_after))
        return delay
