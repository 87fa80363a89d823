"""Retry policy, circuit breaker and rate limiter for calls to external services.

These are plain objects passed into the components that need them. The breaker
keeps its own state and reads time from an injected clock, so tests can drive
it through a scripted failure sequence without sleeping.

States:
    - CLOSED: Normal operation, all requests pass through
    - OPEN: Provider is failing, requests fail fast without calling it
    - HALF_OPEN: Cooldown elapsed, the next request tests the provider
"""

import asyncio
import enum
import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional

from .clock import Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with additive jitter."""
    max_attempts: int = 5
    base_delay: float = 0.5  # seconds
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Return the delay to wait after the given failed attempt (1-based).

        Args:
            attempt: Number of the attempt that just failed.
            rng: Optional random source for the jitter component.

        Returns:
            Delay in seconds.
        """
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if self.jitter > 0:
            delay += (rng or random).uniform(0, self.jitter)
        return delay

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts


class CircuitState(str, enum.Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    failure_window: float = 60.0  # seconds
    recovery_timeout: float = 30.0  # seconds


class CircuitBreaker:
    """Circuit breaker counting consecutive transient failures within a window."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.clock = clock or Clock()
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the cooldown has passed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock.monotonic() - self._opened_at >= self.config.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit {self.name} half-open after cooldown")
        return self._state

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit {self.name} closed after successful call")
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._opened_at = None

    def record_failure(self) -> None:
        now = self.clock.monotonic()
        if self.state == CircuitState.HALF_OPEN:
            self._open(now)
            return

        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.config.failure_window:
            self._failures.popleft()

        if len(self._failures) >= self.config.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._failures.clear()
        logger.warning(
            f"Circuit {self.name} opened; short-circuiting calls for "
            f"{self.config.recovery_timeout}s"
        )

    def get_status(self) -> Dict[str, Any]:
        """Return the breaker state for health endpoints."""
        return {
            "name": self.name,
            "state": self.state.value,
            "recent_failures": len(self._failures),
            "failure_threshold": self.config.failure_threshold,
            "recovery_timeout": self.config.recovery_timeout,
        }


class RateLimiter:
    """Sliding-window limiter shared by every caller of one external channel.

    ``acquire`` waits until fewer than ``max_calls`` calls were granted in the
    last ``period`` seconds.
    """

    def __init__(self, max_calls: int, period: float = 1.0, clock: Optional[Clock] = None):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        self.max_calls = max_calls
        self.period = period
        self.clock = clock or Clock()
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def per_second(cls, rate: float, clock: Optional[Clock] = None) -> "RateLimiter":
        if rate >= 1:
            return cls(max_calls=int(rate), period=1.0, clock=clock)
        return cls(max_calls=1, period=1.0 / rate, clock=clock)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self.clock.monotonic()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                await self.clock.sleep(self.period - (now - self._calls[0]))
