"""Retry strategies applied uniformly to persistence writes and side effects.

Every write that records a stage transition or a terminal state, and every
failure-handler / status-reporter call, goes through :func:`retry_on_error`
so that a transient database or network error does not lose the fact that
an operation moved on or failed.

``DEFAULT_RETRY`` mirrors the kubernetes client ``DefaultRetry``: 5
attempts, 10ms apart, with 10% jitter.

Example:
    >>> from provisioner.operations.retry import retry_on_error, ConstantBackoff
    >>>
    >>> retry_on_error(lambda: session.transition_operation(...))
    >>> retry_on_error(flaky_call, strategy=ConstantBackoff(max_attempts=3, delay=0.5))
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another attempt should be made.

        Args:
            attempt: Number of attempts made so far
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) +/- jitter

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (1.0 gives a constant delay)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        retryable_errors: Exception types that are retryable (None = all)
    """

    max_attempts: int = 5
    base_delay: float = 0.01
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_errors: tuple[type[Exception], ...] | None = None

    def next_delay(self, attempt: int) -> float:
        try:
            delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        except OverflowError:
            # multiplier**attempt left the float range; the cap applies
            delay = self.max_delay

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if attempt >= self.max_attempts:
            return False

        if error is not None and self.retryable_errors is not None:
            return isinstance(error, self.retryable_errors)

        return True


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between attempts."""

    max_attempts: int = 3
    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt < self.max_attempts


@dataclass
class NoRetry(RetryStrategy):
    """Single attempt - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


# kubernetes client DefaultRetry: Steps=5, Duration=10ms, Factor=1.0, Jitter=0.1
DEFAULT_RETRY = ExponentialBackoff(max_attempts=5, base_delay=0.01, multiplier=1.0, jitter_range=0.1)


@dataclass
class RetryContext:
    """Tracks the attempts of one retried call.

    Example:
        >>> ctx = RetryContext(DEFAULT_RETRY)
        >>> result = ctx.run(lambda: session.get_operation("op-1"))
        >>> ctx.attempts
        1
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since the context was created."""
        return (utcnow() - self.started_at).total_seconds()

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call *func* until it succeeds or the strategy gives up.

        Raises:
            The last exception once all attempts are exhausted.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.sleep(delay)


def retry_on_error(
    func: Callable[..., T],
    *args: Any,
    strategy: RetryStrategy | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call ``func(*args, **kwargs)`` under *strategy* (``DEFAULT_RETRY`` if omitted)."""
    ctx = RetryContext(strategy=strategy or DEFAULT_RETRY, on_retry=on_retry, sleep=sleep)
    return ctx.run(func, *args, **kwargs)


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "NoRetry",
    "DEFAULT_RETRY",
    "RetryContext",
    "retry_on_error",
]
