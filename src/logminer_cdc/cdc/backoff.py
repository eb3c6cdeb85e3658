"""Exponential backoff used when retrying session and window operations."""

from __future__ import annotations

import random
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class BackoffExhausted(RuntimeError):
    """Raised when the backoff policy has no further retries available."""


class ExponentialBackoff:
    """Exponential backoff helper with optional full jitter."""

    def __init__(
        self,
        base_interval: float = 0.5,
        multiplier: float = 2.0,
        max_interval: float = 30.0,
        max_attempts: Optional[int] = None,
        jitter: bool = True,
        random_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        if base_interval <= 0:
            raise ValueError("base_interval must be positive")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1.0")
        if max_interval < base_interval:
            raise ValueError("max_interval must be >= base_interval")
        self.base_interval = base_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.random_fn = random_fn or random.random
        self._attempt = 0

    @property
    def attempts(self) -> int:
        return self._attempt

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self._attempt >= self.max_attempts

    def reset(self) -> None:
        self._attempt = 0

    def next_delay(self) -> float:
        if self.exhausted:
            raise BackoffExhausted("retry attempts exhausted")
        raw = min(
            self.base_interval * (self.multiplier**self._attempt), self.max_interval
        )
        self._attempt += 1
        if not self.jitter:
            return raw
        return self.random_fn() * raw


def retry_call(
    operation: Callable[[], T],
    backoff: ExponentialBackoff,
    *,
    should_retry: Callable[[BaseException], bool],
    sleep: Callable[[float], None],
    on_retry: Optional[Callable[[BaseException, float], None]] = None,
) -> T:
    """Run ``operation`` until it succeeds or the backoff policy gives up.

    Errors rejected by ``should_retry`` propagate immediately.  Once the
    policy is exhausted the last error propagates unchanged.  The policy is
    reset before the first attempt.
    """
    backoff.reset()
    while True:
        try:
            return operation()
        except Exception as exc:
            if not should_retry(exc) or backoff.exhausted:
                raise
            delay = backoff.next_delay()
            if on_retry is not None:
                on_retry(exc, delay)
            sleep(delay)


__all__ = ["BackoffExhausted", "ExponentialBackoff", "retry_call"]
