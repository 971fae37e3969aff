"""Shared retry/backoff policy.

One policy object serves the RPC fallback layer, the LLM transport and the
allowance re-verification loop; each call site parameterizes its own budget.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

import requests

from src.execution.errors import NetworkError, RateLimitError

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "429",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "too many",
    "network",
    "timeout",
    "timed out",
    "etimedout",
    "econnrefused",
    "econnreset",
    "connection",
    "fetch failed",
    "temporarily unavailable",
)


def is_transient_error(exc: BaseException) -> bool:
    """Rate limits and network failures are retryable; everything else is fatal."""
    if isinstance(exc, (RateLimitError, NetworkError)):
        return True
    if isinstance(exc, (requests.ConnectionError, requests.Timeout, TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(m in msg for m in _TRANSIENT_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 10.0
    jitter: float = 0.2
    is_retryable: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)
    rand: Callable[[], float] = field(default=random.random, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Exponential delay for a zero-based attempt, jittered by +/- jitter and capped."""
        raw = self.base_delay_s * (2 ** attempt)
        if self.jitter:
            raw *= 1.0 + self.jitter * (2.0 * self.rand() - 1.0)
        return max(0.0, min(raw, self.max_delay_s))

    def run(
        self,
        op: Callable[[], T],
        *,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> T:
        """Run op, retrying retryable errors up to max_attempts total tries."""
        last_err: Optional[BaseException] = None
        for attempt in range(max(1, self.max_attempts)):
            try:
                return op()
            except Exception as e:  # pylint: disable=broad-exception-caught
                if not self.is_retryable(e):
                    raise
                last_err = e
                if attempt + 1 >= self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                self.sleep(delay)
        assert last_err is not None
        raise last_err


__all__ = ["RetryPolicy", "is_transient_error"]
