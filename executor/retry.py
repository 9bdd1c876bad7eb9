"""
Bounded retry with exponential backoff. Shared by the execution engine and
ledger adapters so every call site retries the same way.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from client.ledger import LedgerTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, LedgerTransientError)


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts: total tries including the first (1 disables retries).
    backoff_sec: wait before the first retry; doubles on each further retry.
    """

    max_attempts: int = 2
    backoff_sec: float = 2.0
    multiplier: float = 2.0
    max_backoff_sec: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_sec < 0:
            raise ValueError(f"backoff_sec must be >= 0, got {self.backoff_sec}")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed *attempt* (1-based)."""
        return min(self.max_backoff_sec, self.backoff_sec * (self.multiplier ** (attempt - 1)))

    def call(
        self,
        fn: Callable[[], T],
        retry_on: Callable[[BaseException], bool] = is_transient,
        description: str = "",
    ) -> tuple[T, int]:
        """
        Run *fn* until it succeeds or a non-retryable error / the attempt cap
        is hit. Returns (result, attempts). The last exception propagates.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(), attempt
            except Exception as exc:
                if not retry_on(exc) or attempt >= self.max_attempts:
                    raise
                wait = self.delay_for(attempt)
                logger.debug(
                    "Retry %d/%d for %s after %.1fs: %s",
                    attempt, self.max_attempts - 1, description or getattr(fn, "__name__", "call"), wait, exc,
                )
                self.sleep(wait)
