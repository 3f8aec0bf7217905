"""Retry with exponential backoff and per-backend circuit breaking.

Responsibilities:
- Retry transient backend failures with capped, jittered exponential backoff.
- Fail fast on terminal failures.
- Short-circuit calls to a backend after repeated failed calls.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import random
from time import monotonic
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from ..config import CircuitBreakerPolicy, RetryPolicy
from ..errors import CircuitOpenError, SynthesisProviderError

_T = TypeVar("_T")


def backoff_delay(
    policy: RetryPolicy,
    retry_number: int,
    random_fn: Callable[[], float] = random.random,
) -> float:
    """Return the sleep before retry `retry_number` (1-based), in seconds."""

    exponential = policy.base_delay_s * (policy.multiplier ** (retry_number - 1))
    return min(exponential, policy.max_delay_s) + random_fn() * policy.jitter_s


@dataclass(slots=True)
class CircuitBreaker:
    """Consecutive-failure circuit breaker for one backend.

    Closed: calls pass. Open: calls fail with `CircuitOpenError` until the
    cooldown elapses. Half-open: exactly one trial call passes; its outcome
    closes or re-opens the breaker.
    """

    name: str
    policy: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)
    clock: Callable[[], float] = monotonic
    consecutive_failures: int = 0
    open: bool = False
    cooldown_until: float = 0.0
    _trial_in_flight: bool = False

    @property
    def state(self) -> str:
        if not self.open:
            return "closed"
        if self.clock() >= self.cooldown_until:
            return "half_open"
        return "open"

    def before_call(self) -> None:
        """Admit a call or raise `CircuitOpenError` without touching the backend."""

        if not self.open:
            return
        remaining = self.cooldown_until - self.clock()
        if remaining > 0:
            raise CircuitOpenError(self.name, remaining)
        if self._trial_in_flight:
            raise CircuitOpenError(self.name, 0.0)
        self._trial_in_flight = True
        logger.info("[circuit] {} half-open; admitting one trial call", self.name)

    def record_success(self) -> None:
        if self.open:
            logger.info("[circuit] {} closed after successful trial", self.name)
        self.consecutive_failures = 0
        self.open = False
        self.cooldown_until = 0.0
        self._trial_in_flight = False

    def release_trial(self) -> None:
        """Free a half-open trial slot without recording an outcome."""

        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        trial_failed = self._trial_in_flight
        self._trial_in_flight = False
        if trial_failed or self.consecutive_failures >= self.policy.failure_threshold:
            self.open = True
            self.cooldown_until = self.clock() + self.policy.cooldown_s
            logger.warning(
                "[circuit] {} open after {} consecutive failures; cooldown {}s",
                self.name,
                self.consecutive_failures,
                self.policy.cooldown_s,
            )


@dataclass(slots=True)
class CircuitBreakerRegistry:
    """Lazily created breakers keyed by backend name."""

    policy: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)
    clock: Callable[[], float] = monotonic
    _breakers: dict[str, CircuitBreaker] = field(default_factory=dict)

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, policy=self.policy, clock=self.clock)
            self._breakers[name] = breaker
        return breaker


async def call_with_retry(
    operation: Callable[[], Awaitable[_T]],
    *,
    policy: RetryPolicy,
    breaker: CircuitBreaker,
    sleeper: Callable[[float], Awaitable[object]] = asyncio.sleep,
    random_fn: Callable[[], float] = random.random,
    on_retry: Callable[[int, SynthesisProviderError, float], None] | None = None,
) -> _T:
    """Run `operation` under the breaker, retrying retryable provider failures.

    The breaker records one outcome per call, after retries are exhausted. Any
    exception counts as a failed call; cancellation and interrupts only release
    a half-open trial slot.

    Raises:
        CircuitOpenError: If the breaker is open; `operation` is not invoked.
        SynthesisProviderError: The last failure when retries are exhausted or
            the failure is terminal.
    """

    breaker.before_call()
    attempt = 0
    try:
        while True:
            attempt += 1
            try:
                result = await operation()
                break
            except SynthesisProviderError as exc:
                if not exc.retryable or attempt >= policy.max_attempts:
                    raise
                delay = backoff_delay(policy, attempt, random_fn)
                logger.warning(
                    "[retry] {} attempt {}/{} failed ({}); retrying in {:.2f}s",
                    breaker.name,
                    attempt,
                    policy.max_attempts,
                    exc.failure_kind,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await sleeper(delay)
    except Exception:
        breaker.record_failure()
        raise
    except BaseException:
        breaker.release_trial()
        raise
    breaker.record_success()
    return result
