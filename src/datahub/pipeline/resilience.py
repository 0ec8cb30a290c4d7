"""Retry and circuit-breaker discipline for outbound calls.

:func:`retry_async` re-runs a failing coroutine with capped exponential
backoff.  :class:`CircuitBreaker` stops calling an endpoint that keeps
failing.  Breakers are shared across every run in the process through a
:class:`CircuitBreakerRegistry`, keyed by adapter code plus
``scheme://host`` so that all paths on one failing host trip together.

Breaker state is updated without a lock.  Every state transition bumps a
monotonic generation counter; a caller is admitted with the generation
it observed and its outcome is only applied if that generation is still
current.  Outcomes from calls admitted before a transition are dropped.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlsplit

from datahub.pipeline.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT = 30.0


@dataclass
class RetryPolicy:
    """Configuration for retrying a failing operation.

    ``retries`` counts re-attempts, so ``retries=0`` executes once.

    Raises:
        ValueError: If any constraint is violated (negative retries or
            delays, non-positive multiplier, or max_delay < initial_delay).
    """

    retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError(f"retries must be >= 0, got {self.retries}")
        if self.initial_delay < 0:
            raise ValueError(
                f"initial_delay must be >= 0, got {self.initial_delay}"
            )
        if self.multiplier <= 0:
            raise ValueError(f"multiplier must be > 0, got {self.multiplier}")
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be "
                f">= initial_delay ({self.initial_delay})"
            )

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def delays(self) -> list[float]:
        """Return the sleep before each re-attempt, in order."""
        result: list[float] = []
        delay = self.initial_delay
        for _ in range(self.retries):
            result.append(min(delay, self.max_delay))
            delay *= self.multiplier
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        """Build a policy from a definition mapping.

        Accepts snake_case or camelCase keys; delays are in seconds
        unless given with an ``*Ms`` key.
        """
        def pick(*names: str) -> Any:
            for name in names:
                if name in data:
                    return data[name]
            return None

        kwargs: dict[str, Any] = {}
        retries = pick("retries", "maxRetries", "max_retries")
        if retries is not None:
            kwargs["retries"] = int(retries)
        initial = pick("initial_delay", "initialDelay")
        if initial is None and "initialDelayMs" in data:
            initial = float(data["initialDelayMs"]) / 1000.0
        if initial is not None:
            kwargs["initial_delay"] = float(initial)
        maximum = pick("max_delay", "maxDelay")
        if maximum is None and "maxDelayMs" in data:
            maximum = float(data["maxDelayMs"]) / 1000.0
        if maximum is not None:
            kwargs["max_delay"] = float(maximum)
        multiplier = pick("multiplier", "backoffMultiplier")
        if multiplier is not None:
            kwargs["multiplier"] = float(multiplier)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "retries": self.retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "multiplier": self.multiplier,
        }


RetryCallback = Callable[[int, Exception, float], Any]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: RetryCallback | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Invoke *operation*, retrying on failure according to *policy*.

    After each failure the call sleeps ``min(delay, max_delay)``, then
    multiplies ``delay`` by the policy multiplier.  Once retries are
    exhausted the last error is re-raised unchanged.

    Args:
        operation: Zero-argument coroutine factory to invoke.
        policy: Retry configuration.
        on_retry: Called as ``(attempt, exc, delay)`` before each sleep,
            where *attempt* is the 1-based number of the failed attempt.
        retry_on: Exception types that trigger a retry; anything else
            propagates immediately.
        sleep: Awaitable sleep function.

    Returns:
        The result of the first successful invocation.
    """
    delay = policy.initial_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            if attempt > policy.retries:
                raise
            wait = min(delay, policy.max_delay)
            logger.warning(
                "Attempt %d/%d failed, retrying in %.2fs: %s",
                attempt,
                policy.max_attempts,
                wait,
                exc,
            )
            if on_retry is not None:
                outcome = on_retry(attempt, exc, wait)
                if asyncio.iscoroutine(outcome):
                    await outcome
            await sleep(wait)
            delay *= policy.multiplier


class CircuitState(str, enum.Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def circuit_key(code: str, url: str) -> str:
    """Build a breaker key from an adapter code and a target URL.

    Only the scheme and host (with an explicit port) take part, so
    every path on one host shares a breaker.
    """
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return f"{code}:{parts.scheme}://{host}"


class CircuitBreaker:
    """Failure-counting breaker for one (adapter, host) pair.

    Args:
        key: Breaker key, used in logs and errors.
        failure_threshold: Consecutive failures that open the circuit.
        reset_timeout: Seconds the circuit stays open before a single
            half-open trial call is admitted.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        key: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(
                f"failure_threshold must be >= 1, got {failure_threshold}"
            )
        self.key = key
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._generation = 0
        self._failures = 0
        self._opened_at = 0.0
        self._trial_started_at = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def failures(self) -> int:
        return self._failures

    def _transition(self, state: CircuitState) -> int:
        self._state = state
        self._generation += 1
        return self._generation

    def acquire(self) -> int:
        """Admit a call, returning the generation token for its outcome.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a
                trial call already in flight.
        """
        now = self._clock()
        if self._state == CircuitState.CLOSED:
            return self._generation

        if self._state == CircuitState.OPEN:
            elapsed = now - self._opened_at
            if elapsed < self.reset_timeout:
                raise CircuitOpenError(
                    self.key, retry_after=self.reset_timeout - elapsed
                )
            token = self._transition(CircuitState.HALF_OPEN)
            self._trial_started_at = now
            logger.info("Circuit %s half-open, admitting trial call", self.key)
            return token

        # HALF_OPEN: one trial at a time; a trial that never reports back
        # is abandoned after another reset window.
        if now - self._trial_started_at < self.reset_timeout:
            raise CircuitOpenError(self.key, retry_after=0.0)
        token = self._transition(CircuitState.HALF_OPEN)
        self._trial_started_at = now
        return token

    def record_success(self, token: int) -> None:
        """Apply a successful outcome admitted under *token*."""
        if token != self._generation:
            return
        if self._state == CircuitState.HALF_OPEN:
            self._failures = 0
            self._transition(CircuitState.CLOSED)
            logger.info("Circuit %s closed after successful trial", self.key)
        elif self._state == CircuitState.CLOSED:
            self._failures = 0

    def record_failure(self, token: int) -> bool:
        """Apply a failed outcome admitted under *token*.

        Returns:
            ``True`` if this failure opened the circuit.
        """
        if token != self._generation:
            return False
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return True
        if self._state == CircuitState.CLOSED:
            self._failures += 1
            if self._failures >= self.failure_threshold:
                self._open()
                return True
        return False

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)
        logger.warning(
            "Circuit %s opened after %d failure(s); rejecting calls for %.1fs",
            self.key,
            self._failures,
            self.reset_timeout,
        )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* through the breaker.

        Raises:
            CircuitOpenError: Without invoking *operation* when the
                circuit rejects the call.
        """
        token = self.acquire()
        try:
            result = await operation()
        except Exception:
            self.record_failure(token)
            raise
        self.record_success(token)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "state": self._state.value,
            "failures": self._failures,
            "generation": self._generation,
        }


class CircuitBreakerRegistry:
    """Process-wide map of breakers, created lazily per key."""

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                key,
                failure_threshold=self._failure_threshold,
                reset_timeout=self._reset_timeout,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    def for_target(self, code: str, url: str) -> CircuitBreaker:
        return self.get(circuit_key(code, url))

    def snapshot(self) -> list[dict[str, Any]]:
        return [b.to_dict() for b in self._breakers.values()]
