"""
Circuit breaker for LLM backends.

One breaker per backend client:
- Opens when the error rate over the rolling window reaches the threshold
  (and at least ``min_requests_for_threshold`` calls were seen)
- Stays open for ``open_duration_seconds``, rejecting calls immediately
- Half-open afterwards: a limited number of trial calls decide whether the
  circuit closes again or reopens

A rejected call raises ``CircuitBreakerOpenError``; backend clients translate
that into a retryable dispatch failure.
"""
import time
from collections import deque
from contextlib import asynccontextmanager
from enum import Enum
from threading import Lock
from typing import AsyncIterator, Callable, Optional, Tuple, Type

from dispatch_ai.core.logging import get_logger
from dispatch_ai.core.metrics import record_circuit_state

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreakerOpenError(Exception):
    """Raised when the circuit is open and the call is rejected."""


class CircuitBreaker:
    """
    Rolling-window circuit breaker.

    Thread-safe: state is guarded by a ``threading.Lock`` so breakers can be
    shared by every task in the process.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,  # 50% error rate
        time_window_seconds: float = 60,
        open_duration_seconds: float = 30,
        min_requests_for_threshold: int = 5,
        half_open_max_trials: int = 1,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.time_window_seconds = time_window_seconds
        self.open_duration_seconds = open_duration_seconds
        self.min_requests_for_threshold = min_requests_for_threshold
        self.half_open_max_trials = half_open_max_trials
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._request_history: deque = deque()  # (timestamp, success: bool)
        self._opened_at: Optional[float] = None
        self._half_open_in_flight = 0

        record_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._update_state()
            return self._state

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        record_circuit_state(self.name, state.value)

    def _update_state(self) -> None:
        """Drop expired history and move OPEN to HALF_OPEN once the cool-down ends."""
        now = self._clock()
        cutoff_time = now - self.time_window_seconds
        while self._request_history and self._request_history[0][0] < cutoff_time:
            self._request_history.popleft()

        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and (now - self._opened_at) >= self.open_duration_seconds:
                self._set_state(CircuitState.HALF_OPEN)
                self._half_open_in_flight = 0
                logger.info(
                    "circuit_breaker_half_open",
                    circuit_breaker=self.name,
                    state="half_open",
                )

    def _open(self, now: float, **fields) -> None:
        self._set_state(CircuitState.OPEN)
        self._opened_at = now
        self._request_history.clear()
        logger.warning("circuit_breaker_opened", circuit_breaker=self.name, **fields)

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitBreakerOpenError if the circuit is open, or half-open with
            all trial slots taken.
        """
        with self._lock:
            self._update_state()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is OPEN. Backend unavailable."
                )
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_max_trials:
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker {self.name} is HALF_OPEN. Trial in progress."
                    )
                self._half_open_in_flight += 1

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.CLOSED)
                self._opened_at = None
                self._half_open_in_flight = 0
                self._request_history.clear()
                logger.info("circuit_breaker_closed", circuit_breaker=self.name)
                return
            self._request_history.append((self._clock(), True))

    def record_failure(self) -> None:
        now = self._clock()
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = 0
                self._open(now, reason="half_open_trial_failed")
                return

            self._request_history.append((now, False))
            total = len(self._request_history)
            if self._state == CircuitState.CLOSED and total >= self.min_requests_for_threshold:
                failures = sum(1 for _, success in self._request_history if not success)
                error_rate = failures / total
                if error_rate >= self.failure_threshold:
                    self._open(now, error_rate=error_rate, failures=failures, total=total)

    @asynccontextmanager
    async def guard(self, excluded: Tuple[Type[BaseException], ...] = ()) -> AsyncIterator[None]:
        """
        Wrap one backend call.

        Usage:
            async with breaker.guard():
                ... stream from the backend ...

        Exceptions listed in ``excluded_exceptions`` (caller errors such as
        rejected requests) are re-raised without counting as failures, as are
        the per-call ``excluded`` types.
        """
        excluded = self.excluded_exceptions + tuple(excluded)
        self.before_call()
        try:
            yield
        except excluded:
            self._release_trial()
            raise
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            # Cancellation says nothing about backend health.
            self._release_trial()
            raise
        else:
            self.record_success()

    def _release_trial(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_in_flight > 0:
                self._half_open_in_flight -= 1

    def get_metrics(self) -> dict:
        """Snapshot for health endpoints."""
        with self._lock:
            self._update_state()
            failures = sum(1 for _, success in self._request_history if not success)
            total = len(self._request_history)
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total > 0 else 0.0,
                "opened_at": self._opened_at,
            }
