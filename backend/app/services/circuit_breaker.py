"""Circuit breaker for calls to unreliable dependencies."""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict

from app.core.exceptions import CircuitBreakerOpenError

logger = structlog.get_logger()

T = TypeVar("T")


class CircuitState(str, Enum):
    """Breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerState(BaseModel):
    """Read-only snapshot of a breaker, as returned by ``CircuitBreaker.stats()``."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None = None
    next_attempt_time: float | None = None


class CircuitBreaker:
    """
    Three-state circuit breaker (CLOSED, OPEN, HALF_OPEN).

    CLOSED passes calls through and counts consecutive failures; reaching
    ``failure_threshold`` opens the breaker. OPEN rejects calls without invoking
    the operation until ``reset_timeout`` seconds have passed since the last
    failure. The next call is then admitted as a probe and the breaker is
    HALF_OPEN: one probe may be in flight at a time, ``success_threshold``
    consecutive successes close it, any failure re-opens it.

    Args:
        name: Dependency name used in logs
        failure_threshold: Consecutive failures that open the breaker
        success_threshold: Consecutive HALF_OPEN successes that close it
        reset_timeout: Seconds to stay OPEN before admitting a probe
        call_timeout: Per-call timeout in seconds (None for no bound); a
            timeout counts as a failure
        clock: Monotonic time source
        on_state_change: Callback ``(name, old_state, new_state)``
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 30.0,
        call_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("Circuit breaker thresholds must be at least 1")
        if reset_timeout < 0:
            raise ValueError("reset_timeout must not be negative")

        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self.clock = clock
        self.on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._next_attempt_time: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` through the breaker.

        Raises:
            CircuitBreakerOpenError: If the call was short-circuited
            Exception: Whatever the operation raised (after being counted)
        """
        is_probe = self._admit()
        try:
            if self.call_timeout is not None:
                result = await asyncio.wait_for(operation(), timeout=self.call_timeout)
            else:
                result = await operation()
        except Exception as e:
            self._record_failure(e)
            raise
        else:
            self._record_success()
            return result
        finally:
            if is_probe:
                self._probe_in_flight = False

    async def execute_with_fallback(
        self, operation: Callable[[], Awaitable[T]], fallback: Any = None
    ) -> T | Any:
        """
        Run ``operation`` and return ``fallback`` instead of raising.

        A short-circuit and an operation failure both yield the fallback
        (an empty list when none is given).
        """
        try:
            return await self.execute(operation)
        except CircuitBreakerOpenError:
            logger.warning("circuit_breaker.short_circuited", breaker=self.name, state=self._state.value)
        except Exception as e:
            logger.warning(
                "circuit_breaker.fallback_used",
                breaker=self.name,
                state=self._state.value,
                error=str(e),
                error_type=type(e).__name__,
            )
        return [] if fallback is None else fallback

    def stats(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            next_attempt_time=self._next_attempt_time,
        )

    def reset(self) -> None:
        """Force the breaker CLOSED and clear its counters."""
        self._transition(CircuitState.CLOSED)
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        self._next_attempt_time = None
        self._probe_in_flight = False

    def _admit(self) -> bool:
        """Check whether a call may proceed; returns True when it is a HALF_OPEN probe."""
        if self._state == CircuitState.OPEN:
            if self._next_attempt_time is not None and self.clock() < self._next_attempt_time:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    details=f"next attempt in {self._next_attempt_time - self.clock():.1f}s",
                )
            self._success_count = 0
            self._transition(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker '{self.name}' is half-open with a probe in flight"
                )
            self._probe_in_flight = True
            return True

        return False

    def _record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._failure_count = 0
                self._success_count = 0
                self._next_attempt_time = None
                self._transition(CircuitState.CLOSED)
        else:
            self._failure_count = 0

    def _record_failure(self, error: Exception) -> None:
        self._last_failure_time = self.clock()
        self._failure_count += 1

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._success_count = 0
            self._next_attempt_time = self._last_failure_time + self.reset_timeout
            self._transition(CircuitState.OPEN)
            logger.warning(
                "circuit_breaker.opened",
                breaker=self.name,
                failure_count=self._failure_count,
                error=str(error),
                retry_in_seconds=self.reset_timeout,
            )

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(
            "circuit_breaker.state_changed",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
        )
        if self.on_state_change is not None:
            self.on_state_change(self.name, old_state, new_state)
