from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum


logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    retry_in_seconds: int | None = None


@dataclass(frozen=True)
class CircuitSnapshot:
    state: CircuitState
    consecutive_failures: int
    total_failures: int
    total_successes: int
    current_backoff_seconds: float
    retry_in_seconds: int | None

    def to_dict(self) -> dict:
        data = {
            "state": str(self.state),
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "current_backoff_seconds": self.current_backoff_seconds,
        }
        if self.retry_in_seconds is not None:
            data["retry_in_seconds"] = self.retry_in_seconds
        return data


class _Circuit:
    __slots__ = (
        "state",
        "consecutive_failures",
        "last_failure_at",
        "backoff",
        "total_failures",
        "total_successes",
        "probe_in_flight",
    )

    def __init__(self, backoff: float) -> None:
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.last_failure_at: float | None = None
        self.backoff = backoff
        self.total_failures = 0
        self.total_successes = 0
        self.probe_in_flight = False


class CircuitBreaker:
    """Per-source failure isolation with exponential backoff.

    After ``failure_threshold`` consecutive failures a source's circuit opens
    and every request is denied until the current backoff has elapsed since
    the last failure. Then exactly one probe is let through (half-open): a
    successful probe closes the circuit and resets the backoff, a failed one
    reopens it with the backoff doubled up to ``max_reset_timeout``.

    All circuit state lives behind one lock, so scheduler tasks and API
    threads may share a single breaker.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        reset_timeout_base: float = 30.0,
        max_reset_timeout: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if reset_timeout_base <= 0 or max_reset_timeout < reset_timeout_base:
            raise ValueError("invalid reset timeouts")
        self.failure_threshold = failure_threshold
        self.reset_timeout_base = reset_timeout_base
        self.max_reset_timeout = max_reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._circuits: dict[str, _Circuit] = {}

    def _circuit(self, source: str) -> _Circuit:
        circuit = self._circuits.get(source)
        if circuit is None:
            circuit = _Circuit(self.reset_timeout_base)
            self._circuits[source] = circuit
        return circuit

    def _remaining(self, circuit: _Circuit, now: float) -> float:
        if circuit.last_failure_at is None:
            return 0.0
        return circuit.backoff - (now - circuit.last_failure_at)

    def can_request(self, source: str) -> Decision:
        with self._lock:
            circuit = self._circuit(source)
            if circuit.state == CircuitState.CLOSED:
                return Decision(allowed=True, reason="circuit closed")

            if circuit.state == CircuitState.HALF_OPEN:
                if circuit.probe_in_flight:
                    return Decision(allowed=False, reason="probe in flight")
                circuit.probe_in_flight = True
                return Decision(allowed=True, reason="half-open probe")

            remaining = self._remaining(circuit, self._clock())
            if remaining <= 0:
                circuit.state = CircuitState.HALF_OPEN
                circuit.probe_in_flight = True
                logger.info("circuit %s half-open, allowing probe request", source)
                return Decision(allowed=True, reason="probe request")

            wait = max(1, math.ceil(remaining))
            return Decision(
                allowed=False,
                reason=f"circuit open, retry in {wait}s",
                retry_in_seconds=wait,
            )

    def on_success(self, source: str) -> None:
        with self._lock:
            circuit = self._circuit(source)
            circuit.consecutive_failures = 0
            circuit.total_successes += 1
            circuit.probe_in_flight = False
            if circuit.state != CircuitState.CLOSED:
                circuit.state = CircuitState.CLOSED
                circuit.backoff = self.reset_timeout_base
                logger.info("circuit %s closed, source recovered", source)

    def on_failure(self, source: str) -> None:
        with self._lock:
            circuit = self._circuit(source)
            circuit.consecutive_failures += 1
            circuit.total_failures += 1
            circuit.last_failure_at = self._clock()
            circuit.probe_in_flight = False

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.state = CircuitState.OPEN
                circuit.backoff = min(circuit.backoff * 2, self.max_reset_timeout)
                logger.warning(
                    "circuit %s open, probe failed, next retry in %ds",
                    source,
                    round(circuit.backoff),
                )
                return

            if (
                circuit.state == CircuitState.CLOSED
                and circuit.consecutive_failures >= self.failure_threshold
            ):
                circuit.state = CircuitState.OPEN
                logger.warning(
                    "circuit %s open after %d consecutive failures",
                    source,
                    circuit.consecutive_failures,
                )

    def status(self) -> dict[str, CircuitSnapshot]:
        with self._lock:
            now = self._clock()
            snapshots: dict[str, CircuitSnapshot] = {}
            for source, circuit in self._circuits.items():
                retry_in = None
                if circuit.state == CircuitState.OPEN:
                    retry_in = max(0, math.ceil(self._remaining(circuit, now)))
                snapshots[source] = CircuitSnapshot(
                    state=circuit.state,
                    consecutive_failures=circuit.consecutive_failures,
                    total_failures=circuit.total_failures,
                    total_successes=circuit.total_successes,
                    current_backoff_seconds=circuit.backoff,
                    retry_in_seconds=retry_in,
                )
            return snapshots
