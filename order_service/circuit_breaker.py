"""
Circuit breaker for synchronous collaborator calls.

  - CLOSED: calls pass through; outcomes are kept in a rolling window of the
    last ``window_size`` calls and the breaker trips once at least
    ``minimum_calls`` are recorded and the failure rate reaches the threshold
  - OPEN: calls are short-circuited to the fallback without touching the
    dependency, so latency stays bounded however unhealthy it is
  - HALF_OPEN: after ``reset_timeout`` exactly one trial call goes through;
    success closes the circuit, failure re-opens it and restarts the timeout
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from order_service.metrics import CIRCUIT_CALLS, CIRCUIT_STATE
from shared.errors import CircuitBreakerOpenError, DependencyUnavailableError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}

StateListener = Callable[[CircuitState, CircuitState], None]
Fallback = Callable[[BaseException, tuple, dict], Awaitable[Any]]


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        call_timeout: float,
        reset_timeout: float,
        failure_rate_threshold: float = 0.5,
        window_size: int = 10,
        minimum_calls: int = 5,
        fallback: Fallback | None = None,
        excluded_exceptions: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 0 < failure_rate_threshold <= 1:
            raise ValueError("failure_rate_threshold must be in (0, 1]")
        if minimum_calls > window_size:
            raise ValueError("minimum_calls cannot exceed window_size")

        self.name = name
        self.call_timeout = call_timeout
        self.reset_timeout = reset_timeout
        self.failure_rate_threshold = failure_rate_threshold
        self.minimum_calls = minimum_calls
        self.fallback = fallback
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock

        self._outcomes: deque[bool] = deque(maxlen=window_size)
        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._listeners: list[StateListener] = []
        CIRCUIT_STATE.labels(name).set(_STATE_GAUGE_VALUES[CircuitState.CLOSED])

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        return self._outcomes.count(False) / len(self._outcomes)

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        CIRCUIT_STATE.labels(self.name).set(_STATE_GAUGE_VALUES[new_state])
        logger.info(
            "Circuit breaker %s: %s -> %s",
            self.name,
            old_state.value,
            new_state.value,
            extra={"breaker": self.name, "failure_rate": round(self.failure_rate, 2)},
        )
        for listener in self._listeners:
            listener(old_state, new_state)

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def _acquire(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def _record_success(self, trial: bool) -> None:
        CIRCUIT_CALLS.labels(self.name, "success").inc()
        if trial:
            self._outcomes.clear()
            self._transition(CircuitState.CLOSED)
            return
        self._outcomes.append(True)

    def _record_failure(self, trial: bool) -> None:
        CIRCUIT_CALLS.labels(self.name, "failure").inc()
        if trial:
            self._trip()
            return
        self._outcomes.append(False)
        if (
            self._state == CircuitState.CLOSED
            and len(self._outcomes) >= self.minimum_calls
            and self.failure_rate >= self.failure_rate_threshold
        ):
            logger.warning(
                "Circuit breaker %s OPENED at failure rate %.0f%%",
                self.name,
                self.failure_rate * 100,
            )
            self._trip()

    def _trip(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Run ``func`` under the breaker and return its result.

        Rejected calls and failed calls go to the fallback when one is
        configured; otherwise rejection raises CircuitBreakerOpenError and a
        failure re-raises (timeouts as DependencyUnavailableError).
        """
        if not self._acquire():
            CIRCUIT_CALLS.labels(self.name, "rejected").inc()
            logger.debug("Circuit breaker %s rejected call", self.name)
            error = CircuitBreakerOpenError(self.name)
            if self.fallback is not None:
                return await self.fallback(error, args, kwargs)
            raise error

        trial = self._state == CircuitState.HALF_OPEN
        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
        except self.excluded_exceptions:
            self._record_success(trial)
            raise
        except asyncio.TimeoutError as exc:
            self._record_failure(trial)
            error = DependencyUnavailableError(
                f"{self.name} did not respond within {self.call_timeout}s"
            )
            if self.fallback is not None:
                return await self.fallback(error, args, kwargs)
            raise error from exc
        except Exception as exc:
            self._record_failure(trial)
            if self.fallback is not None:
                return await self.fallback(exc, args, kwargs)
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._record_success(trial)
        return result
