from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, Optional, TypeVar

from backend.polaris.config import get_settings
from backend.polaris.telemetry.metrics import set_circuit_breaker_state


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


class CircuitOpenError(RuntimeError):
    """Raised when a call is rejected because the circuit is open."""


class CircuitBreaker(Generic[T]):
    """Thread-safe circuit breaker guarding a downstream dependency.

    Supports a rolling failure window, open/half-open/closed states, and
    configurable thresholds. It performs no I/O itself; the reconciliation
    applier wraps entitlement store calls with it so that a store outage
    fails the remaining users fast instead of hammering the database.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int,
        rolling_window_seconds: float,
        recovery_timeout_seconds: float,
        success_threshold: int,
        target: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._target = target or name
        self._failure_threshold = failure_threshold
        self._rolling_window = rolling_window_seconds
        self._recovery_timeout = recovery_timeout_seconds
        self._success_threshold = success_threshold
        self._clock = clock

        self._state: CircuitState = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._failure_timestamps: Deque[float] = deque()
        self._success_count: int = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def current_state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _prune_failures(self, now: float) -> None:
        window_start = now - self._rolling_window
        while self._failure_timestamps and self._failure_timestamps[0] < window_start:
            self._failure_timestamps.popleft()

    def _transition(self, state: CircuitState, now: float) -> None:
        # Caller holds the lock.
        if state is self._state:
            return
        self._state = state
        self._success_count = 0
        self._opened_at = now if state is CircuitState.OPEN else None
        if state is CircuitState.CLOSED:
            self._failure_timestamps.clear()
        set_circuit_breaker_state(self._name, self._target, _STATE_GAUGE_VALUES[state])
        logger.info(
            "circuit_breaker_state_changed",
            extra={"breaker": self._name, "state": state.value},
        )

    def _before_call(self) -> None:
        now = self._clock()
        with self._lock:
            if self._state is CircuitState.OPEN:
                assert self._opened_at is not None
                if now - self._opened_at >= self._recovery_timeout:
                    # Allow a trial call.
                    self._transition(CircuitState.HALF_OPEN, now)
                else:
                    raise CircuitOpenError(f"circuit '{self._name}' is open")

    def record_success(self) -> None:
        now = self._clock()
        with self._lock:
            self._prune_failures(now)
            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self._success_threshold:
                    self._transition(CircuitState.CLOSED, now)

    def record_failure(self, exc: BaseException | None = None) -> None:
        now = self._clock()
        with self._lock:
            self._prune_failures(now)
            self._failure_timestamps.append(now)

            if self._state is CircuitState.HALF_OPEN:
                # Any failure immediately re-opens circuit.
                self._transition(CircuitState.OPEN, now)
            elif self._state is CircuitState.CLOSED:
                if len(self._failure_timestamps) >= self._failure_threshold:
                    self._transition(CircuitState.OPEN, now)

        if exc is not None:
            logger.warning(
                "circuit_breaker_failure",
                extra={
                    "breaker": self._name,
                    "state": self.current_state.value,
                    "error_type": exc.__class__.__name__,
                },
            )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a synchronous function under circuit breaker control."""
        self._before_call()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            self.record_failure(exc)
            raise
        else:
            self.record_success()
            return result

    async def call_async(
        self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Execute an async function under circuit breaker control."""
        self._before_call()
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            self.record_failure(exc)
            raise
        else:
            self.record_success()
            return result


_BREAKERS: Dict[str, CircuitBreaker[Any]] = {}
_BREAKERS_LOCK = threading.Lock()


def _default_breaker_params() -> dict:
    settings = get_settings()
    return {
        "failure_threshold": settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        "rolling_window_seconds": float(settings.CIRCUIT_BREAKER_ROLLING_WINDOW),
        "recovery_timeout_seconds": float(settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT),
        "success_threshold": settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
    }


def get_circuit_breaker(
    name: str,
    **overrides: float | int,
) -> CircuitBreaker[Any]:
    """Get or create a named CircuitBreaker instance.

    The breaker is configured from global settings, with optional overrides.
    """
    if name in _BREAKERS:
        return _BREAKERS[name]

    with _BREAKERS_LOCK:
        if name in _BREAKERS:
            return _BREAKERS[name]
        params = _default_breaker_params()
        params.update(overrides)
        breaker: CircuitBreaker[Any] = CircuitBreaker(
            name=name,
            failure_threshold=int(params["failure_threshold"]),
            rolling_window_seconds=float(params["rolling_window_seconds"]),
            recovery_timeout_seconds=float(params["recovery_timeout_seconds"]),
            success_threshold=int(params["success_threshold"]),
        )
        _BREAKERS[name] = breaker
        return breaker
