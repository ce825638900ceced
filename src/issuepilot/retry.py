"""Retry with exponential backoff.

The delay computation (:func:`backoff_delay`) is a pure function so it
can be tested without a clock; :func:`retry_async` and
:class:`ReconnectBackoff` build on it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from issuepilot.errors import AbortedError, IssuePilotError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base: float,
    ceiling: float,
    jitter: float = 0.0,
    *,
    multiplier: float = 2.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay in seconds before retry number *attempt*.

    ``base * multiplier**attempt`` capped at *ceiling*, then stretched by
    up to ``jitter`` (a fraction) of itself.

    Args:
        attempt: Zero-based retry index.
        base: Delay for the first retry.
        ceiling: Upper bound before jitter is applied.
        jitter: Fraction of the delay added at random (0 disables).
        multiplier: Growth factor per attempt.
        rand: Source of uniform ``[0, 1)`` values.
    """
    delay = min(base * (multiplier**attempt), ceiling)
    if jitter > 0:
        delay += delay * jitter * rand()
    return delay


@dataclass
class RetryPolicy:
    """Configuration for retry behaviour.

    ``max_retries`` counts retries after the first attempt, so an
    operation runs at most ``max_retries + 1`` times.

    Raises:
        ValueError: If any constraint is violated (negative retries,
            non-positive delay/multiplier, or max_delay < base_delay).
    """

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_seconds <= 0:
            raise ValueError(
                f"base_delay_seconds must be > 0, got {self.base_delay_seconds}"
            )
        if self.multiplier <= 0:
            raise ValueError(f"multiplier must be > 0, got {self.multiplier}")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError(
                f"max_delay_seconds ({self.max_delay_seconds}) must be "
                f">= base_delay_seconds ({self.base_delay_seconds})"
            )
        if self.jitter < 0:
            raise ValueError(f"jitter must be >= 0, got {self.jitter}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for_attempt(self, attempt: int) -> float:
        """Calculate the backoff delay for a zero-based retry index."""
        return backoff_delay(
            attempt,
            self.base_delay_seconds,
            self.max_delay_seconds,
            self.jitter,
            multiplier=self.multiplier,
        )


def default_is_retryable(exc: BaseException) -> bool:
    """Retry issuepilot errors flagged retryable; give up on everything else."""
    return isinstance(exc, IssuePilotError) and exc.is_retryable


async def _sleep_or_abort(delay: float, cancel_event: asyncio.Event | None) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise AbortedError("Operation aborted during backoff")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Run *operation*, retrying failures that *is_retryable* accepts.

    Non-retryable failures propagate immediately. After the last attempt
    the most recent failure propagates.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: Backoff configuration (defaults to :class:`RetryPolicy`).
        is_retryable: Classifies a failure as worth another attempt.
        on_retry: Called with ``(attempt, error, delay)`` before sleeping.
        cancel_event: When set, pending and future attempts are abandoned
            with :class:`AbortedError`.

    Raises:
        AbortedError: If *cancel_event* is set before the operation succeeds.
    """
    policy = policy or RetryPolicy()
    last_error: BaseException | None = None
    for attempt in range(policy.max_attempts):
        if cancel_event is not None and cancel_event.is_set():
            raise AbortedError("Operation aborted")
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            if not is_retryable(exc) or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for_attempt(attempt)
            if on_retry:
                on_retry(attempt, exc, delay)
            logger.warning(
                "Operation failed (attempt %d/%d), retrying in %.1fs: %s",
                attempt + 1,
                policy.max_attempts,
                delay,
                exc,
            )
            await _sleep_or_abort(delay, cancel_event)
    raise last_error  # type: ignore[misc]


class ReconnectBackoff:
    """Delay tracker for reconnecting a long-lived stream.

    Starts at *floor*, doubles after every consecutive failure up to
    *ceiling*, and returns to *floor* on :meth:`reset`.
    """

    def __init__(self, floor: float = 1.0, ceiling: float = 30.0) -> None:
        if floor <= 0:
            raise ValueError(f"floor must be > 0, got {floor}")
        if ceiling < floor:
            raise ValueError(f"ceiling ({ceiling}) must be >= floor ({floor})")
        self.floor = floor
        self.ceiling = ceiling
        self._failures = 0

    @property
    def current(self) -> float:
        """Delay that the next :meth:`next_delay` call will return."""
        return backoff_delay(self._failures, self.floor, self.ceiling)

    def next_delay(self) -> float:
        """Return the delay for this failure and advance the backoff."""
        delay = self.current
        if delay < self.ceiling:
            self._failures += 1
        return delay

    def reset(self) -> None:
        """Return to the floor after a successful connection."""
        self._failures = 0
