"""
Circuit breaker tracking the health of a storage backend.
"""

from enum import Enum
from typing import Dict, Any, Optional

from shared.clock import Clock
from shared.logging import get_logger


class BackendId(Enum):
    """Storage tiers known to the gate."""
    DISTRIBUTED = "distributed"
    LOCAL = "local"


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, calls routed around the backend
    HALF_OPEN = "half_open"  # Cooldown elapsed, next call is a trial


class BackendHealth:
    """Consecutive-failure circuit breaker for one backend.

    Once ``consecutive_failures`` reaches ``failure_threshold`` the circuit is
    held open until ``now + cooldown_seconds``. A success at any point resets
    the count and closes the circuit.
    """

    def __init__(self,
                 backend_id: BackendId = BackendId.DISTRIBUTED,
                 failure_threshold: int = 3,
                 cooldown_seconds: float = 30.0,
                 clock: Optional[Clock] = None):
        self.backend_id = backend_id
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock or Clock()
        self.logger = get_logger(f"gate.circuit_breaker.{backend_id.value}")

        self.consecutive_failures = 0
        self.circuit_open_until: Optional[float] = None
        self._trips = 0

    @property
    def state(self) -> CircuitBreakerState:
        if self.circuit_open_until is None:
            return CircuitBreakerState.CLOSED
        if self.clock.now() < self.circuit_open_until:
            return CircuitBreakerState.OPEN
        return CircuitBreakerState.HALF_OPEN

    def allow_attempt(self) -> bool:
        """Whether the backend may be called right now."""
        return self.state != CircuitBreakerState.OPEN

    def record_success(self) -> None:
        if self.circuit_open_until is not None:
            self.logger.info(
                "Circuit breaker closed after successful call",
                failures=self.consecutive_failures,
            )
        self.consecutive_failures = 0
        self.circuit_open_until = None

    def record_failure(self) -> None:
        self.consecutive_failures += 1

        if self.consecutive_failures >= self.failure_threshold:
            self.circuit_open_until = self.clock.now() + self.cooldown_seconds
            self._trips += 1
            self.logger.warning(
                "Circuit breaker opened due to failures",
                failure_count=self.consecutive_failures,
                threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
            )

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self.state == CircuitBreakerState.OPEN

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "backend": self.backend_id.value,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "circuit_open_until": self.circuit_open_until,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "trips": self._trips,
        }
