"""
CircuitBreaker - Stops calls to a backend that keeps failing.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Backend is failing, calls are blocked
- HALF_OPEN: One trial call is allowed to test recovery

Transitions:
- CLOSED → OPEN: failure_threshold failures inside rolling_window
- OPEN → HALF_OPEN: cool_down elapsed since the last transition
- HALF_OPEN → CLOSED: Trial call succeeded
- HALF_OPEN → OPEN: Trial call failed (cool-down restarts)

Every transition bumps a generation counter. Outcomes tagged with an older
generation belong to calls that started in a previous state and are ignored.
"""

import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from loguru import logger


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    rolling_window: float = 60.0  # Seconds a failure stays counted
    cool_down: float = 30.0  # Seconds before half-open


class CircuitBreaker:
    """
    Circuit breaker for a single backend.

    All methods are synchronous, so each check-and-transition runs without
    interleaving on the event loop.

    Usage:
        cb = CircuitBreaker("acme")

        if not cb.can_execute():
            raise CircuitOpenError("acme", cb.get_time_until_reset() or 0)

        try:
            result = await backend.search(query)
            cb.record_success()
        except BackendError:
            cb.record_failure()
            raise
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._last_failure_time: datetime | None = None
        self._transitioned_at: float | None = None
        self._opened_at: datetime | None = None
        self._trial_in_flight = False
        self._generation = 0

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        if self._state == CircuitState.OPEN and self._cool_down_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._transitioned_at = self._clock()
            self._generation += 1
            self._trial_in_flight = False
            logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")
        return self._state

    @property
    def generation(self) -> int:
        """Tag for a call, read right after ``can_execute`` admitted it."""
        return self._generation

    @property
    def failure_count(self) -> int:
        self._purge_failures()
        return len(self._failures)

    def can_execute(self) -> bool:
        """Check if a call is allowed. In HALF_OPEN this claims the trial slot."""
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return True

        if current_state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True

        return False

    def release_trial(self, generation: int | None = None) -> None:
        """Hand back the half-open trial slot when the trial produced no outcome."""
        if self._is_stale(generation):
            return
        if self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False

    def record_success(self, generation: int | None = None) -> None:
        """Record a successful call."""
        if self._is_stale(generation):
            self._log_stale("success", generation)
            return
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        elif self._state == CircuitState.CLOSED:
            self._failures.clear()

    def record_failure(self, generation: int | None = None) -> None:
        """Record a failed call."""
        if self._is_stale(generation):
            self._log_stale("failure", generation)
            return
        now = self._clock()
        self._failures.append(now)
        self._last_failure_time = datetime.now()

        if self._state == CircuitState.HALF_OPEN:
            self._open()
        elif self._state == CircuitState.CLOSED:
            if self.failure_count >= self.config.failure_threshold:
                self._open()

    def _is_stale(self, generation: int | None) -> bool:
        return generation is not None and generation != self._generation

    def _log_stale(self, outcome: str, generation: int | None) -> None:
        logger.debug(
            f"Circuit breaker '{self.service_id}' ignored {outcome} from generation "
            f"{generation} (now {self._generation}, {self._state.value})"
        )

    def _purge_failures(self) -> None:
        cutoff = self._clock() - self.config.rolling_window
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()

    def _cool_down_elapsed(self) -> bool:
        if self._transitioned_at is None:
            return True
        return self._clock() - self._transitioned_at >= self.config.cool_down

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._transitioned_at = self._clock()
        self._generation += 1
        self._opened_at = datetime.now()
        self._trial_in_flight = False
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {len(self._failures)} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._transitioned_at = self._clock()
        self._generation += 1
        self._opened_at = None
        self._trial_in_flight = False
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._transitioned_at = None
        self._generation += 1
        self._opened_at = None
        self._trial_in_flight = False
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or self._transitioned_at is None:
            return None

        remaining = self._transitioned_at + self.config.cool_down - self._clock()
        return max(0.0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }


class CircuitBreakerRegistry:
    """
    One circuit breaker per backend name.

    Usage:
        registry = CircuitBreakerRegistry()
        if registry.can_execute("acme"):
            ...
            registry.record_success("acme")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._configs: dict[str, CircuitBreakerConfig] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock

    def configure(self, service_id: str, config: CircuitBreakerConfig) -> None:
        """Set the config used when the breaker for ``service_id`` is created."""
        self._configs[service_id] = config
        if service_id in self._breakers:
            self._breakers[service_id].config = config

    def get(self, service_id: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_id not in self._breakers:
            self._breakers[service_id] = CircuitBreaker(
                service_id,
                self._configs.get(service_id, self._default_config),
                clock=self._clock,
            )
        return self._breakers[service_id]

    def can_execute(self, service_id: str) -> bool:
        return self.get(service_id).can_execute()

    def record_success(self, service_id: str, generation: int | None = None) -> None:
        self.get(service_id).record_success(generation)

    def record_failure(self, service_id: str, generation: int | None = None) -> None:
        self.get(service_id).record_failure(generation)

    def release_trial(self, service_id: str, generation: int | None = None) -> None:
        self.get(service_id).release_trial(generation)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            service_id: cb.get_status() for service_id, cb in self._breakers.items()
        }

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def reset(self, service_id: str) -> bool:
        """Reset a specific circuit breaker."""
        if service_id in self._breakers:
            self._breakers[service_id].reset()
            return True
        return False

    def get_open_circuits(self) -> list[str]:
        """Get list of services with open circuits."""
        return [
            service_id
            for service_id, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
