"""
Adaptive flow control for calls against the remote platform.

Provides:
- RateLimitConfig: tunable pacing parameters
- RateLimitStats: counters for monitoring
- RateAdjustmentEvent: audit trail entry for pacing changes
- RateLimiter: paces calls and adapts to rate-exceeded signals
- with_rate_limit_retry: retries an operation across rate-exceeded signals

All waiting happens through an injectable ``sleep`` coroutine and all timing
through an injectable ``clock``, so the limiter can be driven by a fake clock
in tests.

Example:
    >>> limiter = RateLimiter(RateLimitConfig(batch_delay=1.0))
    >>> await limiter.acquire()
    >>> result = await with_rate_limit_retry(
    ...     lambda: client.create_destination("title"), limiter, "create_destination"
    ... )
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, fields, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from dialog_migrator.constants import (
    DEFAULT_BATCH_DELAY,
    DEFAULT_MAX_BATCH_DELAY,
    DEFAULT_MAX_REQUESTS_PER_MINUTE,
    DEFAULT_MIN_BATCH_DELAY,
    DEFAULT_RATE_EXCEEDED_THRESHOLD,
    DEFAULT_RECOVERY_WINDOW,
    REQUESTS_PER_MINUTE_WINDOW,
    SLOWDOWN_FACTOR,
    SPEEDUP_FACTOR,
)
from dialog_migrator.exceptions import RateExceededError
from dialog_migrator.types import RateExceededEvent
from dialog_migrator.utils.formatting import now_iso
from dialog_migrator.utils.logging import log_with_context

T = TypeVar("T")

CountdownCallback = Callable[[int, str], None]

REASON_RATE_EXCEEDED = "rate-exceeded"
REASON_RECOVERED = "recovered"


@dataclass
class RateLimitConfig:
    """
    Pacing parameters of the limiter.

    Attributes:
        batch_delay: Current minimum interval between grants, in seconds
        max_requests_per_minute: Ceiling on grants in any 60 second window (0 disables)
        rate_exceeded_threshold: Longest platform wait, in seconds, worth sitting through
        adaptive_enabled: Whether rate-exceeded signals change the pacing interval
        min_batch_delay: Lower bound for the adaptive interval
        max_batch_delay: Upper bound for the adaptive interval
    """

    batch_delay: float = DEFAULT_BATCH_DELAY
    max_requests_per_minute: int = DEFAULT_MAX_REQUESTS_PER_MINUTE
    rate_exceeded_threshold: float = DEFAULT_RATE_EXCEEDED_THRESHOLD
    adaptive_enabled: bool = True
    min_batch_delay: float = DEFAULT_MIN_BATCH_DELAY
    max_batch_delay: float = DEFAULT_MAX_BATCH_DELAY

    def __post_init__(self) -> None:
        if self.min_batch_delay < 0:
            raise ValueError(
                f"min_batch_delay must be >= 0, got {self.min_batch_delay}"
            )
        if self.min_batch_delay > self.max_batch_delay:
            raise ValueError(
                f"min_batch_delay ({self.min_batch_delay}) must not exceed "
                f"max_batch_delay ({self.max_batch_delay})"
            )
        if not self.min_batch_delay <= self.batch_delay <= self.max_batch_delay:
            raise ValueError(
                f"batch_delay must be between {self.min_batch_delay} and "
                f"{self.max_batch_delay}, got {self.batch_delay}"
            )
        if self.max_requests_per_minute < 0:
            raise ValueError(
                f"max_requests_per_minute must be >= 0, got {self.max_requests_per_minute}"
            )


@dataclass
class RateLimitStats:
    """
    Limiter counters.

    Attributes:
        total_requests: Grants handed out by acquire()
        rate_exceeded_count: Rate-exceeded signals recorded
        total_wait_seconds: Sum of the waits those signals asked for
        current_delay: Pacing interval at the time of the snapshot
        requests_per_minute: Grants within the last 60 seconds
    """

    total_requests: int = 0
    rate_exceeded_count: int = 0
    total_wait_seconds: float = 0.0
    current_delay: float = DEFAULT_BATCH_DELAY
    requests_per_minute: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "rate_exceeded_count": self.rate_exceeded_count,
            "total_wait_seconds": self.total_wait_seconds,
            "current_delay": self.current_delay,
            "requests_per_minute": self.requests_per_minute,
        }


@dataclass(frozen=True)
class RateAdjustmentEvent:
    """One change of the pacing interval."""

    timestamp: str
    previous_delay: float
    new_delay: float
    reason: str


class RateLimiter:
    """
    Paces calls to the remote platform and adapts to rate-exceeded signals.

    ``acquire()`` enforces a minimum interval between grants (and an optional
    requests-per-minute ceiling). ``record_rate_exceeded()`` slows the interval
    down multiplicatively; once no signal has been seen for ``recovery_window``
    seconds, the next ``acquire()`` speeds it back up. The interval always
    stays within ``[min_batch_delay, max_batch_delay]`` when adaptive mode
    changes it.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        recovery_window: float = DEFAULT_RECOVERY_WINDOW,
        slowdown_factor: float = SLOWDOWN_FACTOR,
        speedup_factor: float = SPEEDUP_FACTOR,
        on_rate_exceeded: Optional[CountdownCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the limiter.

        Args:
            config: Pacing parameters; defaults are used when omitted
            recovery_window: Quiet period, in seconds, after which pacing speeds up
            slowdown_factor: Multiplier applied on each rate-exceeded signal
            speedup_factor: Multiplier applied on recovery
            on_rate_exceeded: Called once per second during an induced wait
                with ``(seconds_remaining, operation_name)``
            clock: Monotonic time source
            sleep: Coroutine used for every wait
        """
        self._config = replace(config) if config is not None else RateLimitConfig()
        self._initial_delay = self._config.batch_delay
        self.recovery_window = recovery_window
        self.slowdown_factor = slowdown_factor
        self.speedup_factor = speedup_factor
        self.on_rate_exceeded = on_rate_exceeded
        self._clock = clock
        self._sleep = sleep

        self._last_grant: Optional[float] = None
        self._last_rate_exceeded_at: Optional[float] = None
        self._grant_times: deque[float] = deque()
        self._events: list[RateExceededEvent] = []
        self._adjustments: list[RateAdjustmentEvent] = []
        self._total_requests = 0
        self._rate_exceeded_count = 0
        self._total_wait_seconds = 0.0
        self._interrupted = asyncio.Event()

    # ------------------------------------------------------------------
    # Pacing
    # ------------------------------------------------------------------

    async def acquire(self) -> None:
        """Wait until the next call is allowed. The first call never waits."""
        self._maybe_recover()

        wait = self._required_wait(self._clock())
        while wait > 0:
            log_with_context(
                logging.DEBUG,
                f"Pacing: waiting {wait:.2f}s before next call",
                component="rate_limiter",
            )
            await self._sleep(wait)
            wait = self._required_wait(self._clock())

        now = self._clock()
        self._last_grant = now
        self._grant_times.append(now)
        self._total_requests += 1

    def _required_wait(self, now: float) -> float:
        waits = [0.0]

        if self._last_grant is not None:
            waits.append(self._config.batch_delay - (now - self._last_grant))

        ceiling = self._config.max_requests_per_minute
        if ceiling > 0:
            self._prune_grants(now)
            if len(self._grant_times) >= ceiling:
                waits.append(self._grant_times[0] + REQUESTS_PER_MINUTE_WINDOW - now)

        return max(waits)

    def _prune_grants(self, now: float) -> None:
        while self._grant_times and now - self._grant_times[0] >= REQUESTS_PER_MINUTE_WINDOW:
            self._grant_times.popleft()

    def _maybe_recover(self) -> None:
        if not self._config.adaptive_enabled or self._last_rate_exceeded_at is None:
            return

        now = self._clock()
        if now - self._last_rate_exceeded_at < self.recovery_window:
            return

        # Restart the window so recovery happens once per quiet period
        self._last_rate_exceeded_at = now
        self._adjust(self._config.batch_delay * self.speedup_factor, REASON_RECOVERED)

    # ------------------------------------------------------------------
    # Rate-exceeded handling
    # ------------------------------------------------------------------

    def record_rate_exceeded(
        self, seconds: float, operation: str = "unknown"
    ) -> RateExceededEvent:
        """
        Record a rate-exceeded signal from the platform.

        Args:
            seconds: Wait the platform asked for
            operation: Name of the call that was throttled

        Returns:
            The recorded event
        """
        event = RateExceededEvent(
            timestamp=now_iso(), seconds=seconds, operation=operation
        )
        self._events.append(event)
        self._rate_exceeded_count += 1
        self._total_wait_seconds += seconds
        self._last_rate_exceeded_at = self._clock()

        log_with_context(
            logging.WARNING,
            f"Rate exceeded on {operation}: platform asked to wait {seconds}s",
            operation=operation,
            component="rate_limiter",
        )

        if self._config.adaptive_enabled:
            self._adjust(
                self._config.batch_delay * self.slowdown_factor, REASON_RATE_EXCEEDED
            )

        return event

    async def wait_rate_exceeded(self, seconds: float, operation: str = "unknown") -> None:
        """
        Sit through a platform-induced wait, ticking the countdown callback.

        The callback fires once per second with the whole seconds remaining,
        counting down to 1. After :meth:`interrupt_waits` the wait ends at
        once, and later waits return immediately.
        """
        if seconds <= 0:
            return

        if self.on_rate_exceeded is None:
            await self._sleep_unless_interrupted(seconds, operation)
            return

        ticks = math.ceil(seconds)
        for remaining in range(ticks, 0, -1):
            self.on_rate_exceeded(remaining, operation)
            elapsed = ticks - remaining
            if not await self._sleep_unless_interrupted(min(1.0, seconds - elapsed), operation):
                return

    async def _sleep_unless_interrupted(self, seconds: float, operation: str) -> bool:
        """Sleep, racing the interrupt. Returns False when interrupted."""
        if not self._interrupted.is_set():
            sleeper = asyncio.ensure_future(self._sleep(seconds))
            stopper = asyncio.ensure_future(self._interrupted.wait())
            try:
                await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                sleeper.cancel()
                stopper.cancel()
            if sleeper.done() and not sleeper.cancelled():
                sleeper.result()

        if self._interrupted.is_set():
            log_with_context(
                logging.WARNING,
                f"Stopped waiting on {operation}: shutdown requested",
                operation=operation,
            )
            return False
        return True

    def interrupt_waits(self) -> None:
        """End the induced wait in progress and skip every later one."""
        self._interrupted.set()

    @property
    def waits_interrupted(self) -> bool:
        return self._interrupted.is_set()

    def _adjust(self, proposed: float, reason: str) -> None:
        previous = self._config.batch_delay
        new_delay = min(
            max(proposed, self._config.min_batch_delay), self._config.max_batch_delay
        )
        if new_delay == previous:
            return

        self._config.batch_delay = new_delay
        self._adjustments.append(
            RateAdjustmentEvent(
                timestamp=now_iso(),
                previous_delay=previous,
                new_delay=new_delay,
                reason=reason,
            )
        )
        log_with_context(
            logging.INFO,
            f"Pacing interval {previous:.2f}s -> {new_delay:.2f}s ({reason})",
            component="rate_limiter",
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> RateLimitStats:
        now = self._clock()
        recent = sum(
            1 for t in self._grant_times if now - t < REQUESTS_PER_MINUTE_WINDOW
        )
        return RateLimitStats(
            total_requests=self._total_requests,
            rate_exceeded_count=self._rate_exceeded_count,
            total_wait_seconds=self._total_wait_seconds,
            current_delay=self._config.batch_delay,
            requests_per_minute=recent,
        )

    def get_config(self) -> RateLimitConfig:
        return replace(self._config)

    def set_config(self, **changes: Any) -> None:
        """Assign the given config fields; nothing else changes."""
        known = {f.name for f in fields(RateLimitConfig)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown rate limit setting(s): {sorted(unknown)}")
        for name, value in changes.items():
            setattr(self._config, name, value)

    def get_events(self) -> tuple[RateExceededEvent, ...]:
        return tuple(self._events)

    def get_adjustments(self) -> tuple[RateAdjustmentEvent, ...]:
        return tuple(self._adjustments)

    def reset(self) -> None:
        """Forget all history and restore the initial pacing interval."""
        self._config.batch_delay = self._initial_delay
        self._last_grant = None
        self._last_rate_exceeded_at = None
        self._grant_times.clear()
        self._events.clear()
        self._adjustments.clear()
        self._total_requests = 0
        self._rate_exceeded_count = 0
        self._total_wait_seconds = 0.0
        self._interrupted.clear()


async def with_rate_limit_retry(
    operation: Callable[[], Awaitable[T]],
    limiter: RateLimiter,
    operation_name: str = "operation",
    max_retries: Optional[int] = None,
) -> T:
    """
    Run ``operation`` under the limiter, retrying across rate-exceeded signals.

    Every attempt first acquires the limiter. A ``RateExceededError`` is
    recorded, waited out in full (with the countdown callback), and the
    operation is called again. Any other exception propagates immediately.

    Args:
        operation: Zero-argument coroutine function to call
        limiter: Shared limiter
        operation_name: Name used in logs and recorded events
        max_retries: Cap on consecutive retries; None retries indefinitely

    Returns:
        Whatever ``operation`` returns

    Raises:
        RateExceededError: When ``max_retries`` is exhausted, or when a shutdown
            interrupted the wait before the next attempt
    """
    retries = 0
    while True:
        await limiter.acquire()
        try:
            return await operation()
        except RateExceededError as e:
            limiter.record_rate_exceeded(e.seconds, operation_name)
            if max_retries is not None and retries >= max_retries:
                log_with_context(
                    logging.ERROR,
                    f"Giving up on {operation_name} after {retries} rate-exceeded retries",
                    operation=operation_name,
                )
                raise
            retries += 1
            log_with_context(
                logging.INFO,
                f"Retrying {operation_name} in {e.seconds}s (retry {retries})",
                operation=operation_name,
            )
            await limiter.wait_rate_exceeded(e.seconds, operation_name)
            if limiter.waits_interrupted:
                raise
