"""Per-provider circuit breakers.

State is process-local and never persisted: each worker process decides on its own whether a vendor
looks healthy, and a restart starts every circuit closed.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict

log = logging.getLogger(__name__)

FAILURE_THRESHOLD = 5
RESET_TIMEOUT = 30.0


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitState:
    failures: int = 0
    last_failure: float = 0.0
    state: CircuitStatus = CircuitStatus.CLOSED
    probe_started: float = 0.0  # when the half-open probe was let through


class CircuitBreakerRegistry:
    def __init__(
        self,
        threshold: int = FAILURE_THRESHOLD,
        reset_timeout: float = RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self._circuits: Dict[str, CircuitState] = {}

    def get(self, provider: str) -> CircuitState:
        circuit = self._circuits.get(provider)
        if circuit is None:
            circuit = self._circuits[provider] = CircuitState()
        return circuit

    def allow(self, provider: str) -> bool:
        """True when a job for `provider` may be dispatched now.

        After the reset timeout an open circuit goes half-open and admits a single probe; further
        callers are refused until that probe reports back (or itself outlives the timeout).
        """
        circuit = self.get(provider)
        now = self.clock()
        if circuit.state == CircuitStatus.CLOSED:
            return True
        if circuit.state == CircuitStatus.OPEN:
            if now - circuit.last_failure < self.reset_timeout:
                return False
            circuit.state = CircuitStatus.HALF_OPEN
            circuit.probe_started = now
            log.info("Circuit half-open for %s, letting one probe through", provider)
            return True
        # half-open: a probe is already out
        if now - circuit.probe_started >= self.reset_timeout:
            circuit.probe_started = now
            return True
        return False

    def record_success(self, provider: str) -> None:
        circuit = self.get(provider)
        if circuit.state != CircuitStatus.CLOSED:
            log.info("Circuit closed for %s", provider)
        circuit.failures = 0
        circuit.state = CircuitStatus.CLOSED

    def record_failure(self, provider: str) -> None:
        circuit = self.get(provider)
        circuit.failures += 1
        circuit.last_failure = self.clock()
        if circuit.state == CircuitStatus.HALF_OPEN:
            circuit.state = CircuitStatus.OPEN
            log.warning("Circuit re-opened for %s, probe failed", provider)
        elif circuit.state == CircuitStatus.CLOSED and circuit.failures >= self.threshold:
            circuit.state = CircuitStatus.OPEN
            log.warning("Circuit OPEN for %s after %s consecutive failures", provider, circuit.failures)

    def snapshot(self) -> Dict[str, CircuitState]:
        return dict(self._circuits)
