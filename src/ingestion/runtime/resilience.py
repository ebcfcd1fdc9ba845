"""
src.ingestion.runtime.resilience

Shared resilience utilities: retries, rate limiting.

Clock and sleep are injectable so throttling can be tested without real
delays.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_mode: str = "exp"  # exp | fixed | none
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0
    jitter: float = 0.0
    retry_on_status: tuple[int, ...] = (408, 429, 500, 502, 503, 504)

    def compute_backoff_s(self, attempt: int) -> float:
        """
        attempt: 1..N
        """
        if self.backoff_mode == "none":
            return 0.0
        if self.backoff_mode == "fixed":
            delay = self.base_delay_s
        else:
            delay = self.base_delay_s * (2 ** max(0, attempt - 1))

        delay = min(delay, self.max_delay_s)
        if self.jitter > 0:
            delay = delay * (1.0 + (random.random() * 2 - 1) * self.jitter)
        return max(0.0, delay)

    def should_retry_status(self, status_code: int) -> bool:
        return status_code in self.retry_on_status


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """
    Call ``fn`` until it succeeds or the policy is exhausted.

    The last exception is re-raised once retries run out.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as e:
            attempt += 1
            if attempt > policy.max_retries:
                raise
            delay = policy.compute_backoff_s(attempt)
            logger.info(
                f"{description} failed ({e}); retry {attempt}/{policy.max_retries} in {delay:.2f}s"
            )
            if delay > 0:
                sleep(delay)


class RateLimiter:
    """
    Process-local throttle: minimum delay between calls plus an optional
    token bucket. Thread-safe, so parallel workers share one budget.
    """

    def __init__(
        self,
        *,
        rps: float | None = None,
        min_delay_s: float | None = None,
        jitter_s: float | None = None,
        burst: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rps = rps
        self.min_delay_s = min_delay_s or 0.0
        self.jitter_s = jitter_s or 0.0
        self.burst = burst or 1
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self._last_call_s: float | None = None
        self._tokens: float = float(self.burst)
        self._last_refill_s: float = clock()

    @classmethod
    def fixed_delay(
        cls, delay_ms: float, *, sleep: Callable[[float], None] = time.sleep, **kwargs
    ) -> RateLimiter:
        return cls(min_delay_s=max(0.0, delay_ms) / 1000.0, sleep=sleep, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        if self.rps and self.rps > 0:
            dt = now - self._last_refill_s
            self._tokens = min(float(self.burst), self._tokens + dt * float(self.rps))
        self._last_refill_s = now

    def wait(self) -> float:
        """Block until the next call is allowed. Returns the seconds slept."""
        slept = 0.0
        with self._lock:
            if self._last_call_s is not None:
                since_last = self._clock() - self._last_call_s
                target_delay = self.min_delay_s + (
                    random.random() * self.jitter_s if self.jitter_s else 0.0
                )
                if target_delay > since_last:
                    pause = target_delay - since_last
                    self._sleep(pause)
                    slept += pause

            if self.rps and self.rps > 0:
                self._refill()
                if self._tokens < 1.0:
                    pause = (1.0 - self._tokens) / float(self.rps)
                    self._sleep(pause)
                    slept += pause
                    self._tokens = 1.0
                    self._last_refill_s = self._clock()
                self._tokens -= 1.0

            self._last_call_s = self._clock()
        return slept
