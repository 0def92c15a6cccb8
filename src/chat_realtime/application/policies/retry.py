from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry schedule shared by reconnection and message send.

    ``attempt`` is 1-based: the first retry after the initial try is attempt 1.
    """

    max_attempts: int
    base_delay: float
    factor: float = 2.0
    max_delay: float | None = None

    def allows(self, attempt: int) -> bool:
        return attempt <= self.max_attempts

    def delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.factor ** max(attempt - 1, 0))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


def reconnect_policy(attempts: int, delay: float, max_delay: float) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, base_delay=delay, factor=2.0, max_delay=max_delay)


def send_retry_policy(delay: float) -> RetryPolicy:
    """Exactly one retry after a fixed delay."""
    return RetryPolicy(max_attempts=1, base_delay=delay, factor=1.0)
