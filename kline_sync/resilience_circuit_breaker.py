"""
Per data source breaker around exchange REST calls.

A source that keeps rejecting kline requests is tripped OPEN so the pager
fails fast with CircuitOpenError. Gap filling treats that as "try later"
and leaves the gap's retry budget untouched; the budget is only spent on
requests that actually reached the exchange.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class SourceCircuit:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    trial_requests: int = 0
    trips: int = 0
    last_error: str | None = None


class SourceCircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 60,
        half_open_max_attempts: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.half_open_max_attempts = half_open_max_attempts
        self._clock = clock
        self._circuits: dict[str, SourceCircuit] = {}
        self._lock = Lock()

    def _circuit(self, source: str) -> SourceCircuit:
        return self._circuits.setdefault(source, SourceCircuit())

    def allow(self, source: str) -> bool:
        """Whether a kline request to `source` may go out now.

        After the recovery timeout an OPEN circuit lets a limited number of
        trial requests through; the first outcome decides CLOSED or OPEN.
        """
        with self._lock:
            circuit = self._circuit(source)
            if circuit.state == CircuitState.OPEN:
                if self._clock() - circuit.opened_at < self.recovery_timeout_seconds:
                    return False
                circuit.state = CircuitState.HALF_OPEN
                circuit.trial_requests = 0
            if circuit.state == CircuitState.HALF_OPEN:
                if circuit.trial_requests >= self.half_open_max_attempts:
                    return False
                circuit.trial_requests += 1
            return True

    def retry_after(self, source: str) -> float:
        """Seconds until an OPEN circuit admits a trial request, 0 otherwise."""
        with self._lock:
            circuit = self._circuit(source)
            if circuit.state != CircuitState.OPEN:
                return 0.0
            return max(0.0, self.recovery_timeout_seconds - (self._clock() - circuit.opened_at))

    def record_success(self, source: str):
        with self._lock:
            circuit = self._circuit(source)
            circuit.state = CircuitState.CLOSED
            circuit.consecutive_failures = 0
            circuit.trial_requests = 0
            circuit.opened_at = None

    def record_failure(self, source: str, error: str | None = None):
        with self._lock:
            circuit = self._circuit(source)
            circuit.consecutive_failures += 1
            circuit.last_error = error
            if circuit.state == CircuitState.HALF_OPEN or circuit.consecutive_failures >= self.failure_threshold:
                if circuit.state != CircuitState.OPEN:
                    circuit.trips += 1
                circuit.state = CircuitState.OPEN
                circuit.opened_at = self._clock()
                circuit.trial_requests = 0

    def state(self, source: str) -> CircuitState:
        with self._lock:
            return self._circuit(source).state

    def snapshot(self) -> dict[str, dict[str, int | float | str | None]]:
        now = self._clock()
        with self._lock:
            return {
                source: {
                    "state": circuit.state.value,
                    "consecutive_failures": circuit.consecutive_failures,
                    "trips": circuit.trips,
                    "last_error": circuit.last_error,
                    "retry_after_seconds": (
                        round(max(0.0, self.recovery_timeout_seconds - (now - circuit.opened_at)), 3)
                        if circuit.state == CircuitState.OPEN
                        else 0.0
                    ),
                }
                for source, circuit in self._circuits.items()
            }
