"""
CRM Bridge - Circuit Breaker
One breaker per entity kind in front of the Salesforce API.

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN   --(recovery_timeout elapsed)----------------> HALF_OPEN
    HALF_OPEN --(half_open_max_calls successes)--------> CLOSED
    HALF_OPEN --(any failure)--------------------------> OPEN

While OPEN the gateway skips the CRM entirely and the delivery is requeued.
The gateway reports outcomes itself (record_success / record_failure) since
a 4xx response must not count against the CRM's health.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..core.metrics import update_circuit_state

logger = logging.getLogger("crm_bridge.circuit_breaker")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    times_opened: int = 0
    last_failure_time: Optional[float] = None


class CircuitBreakerError(Exception):
    """The CRM was not called because the circuit is open"""

    def __init__(self, circuit_name: str, state: CircuitState, retry_after: float = 0.0):
        self.circuit_name = circuit_name
        self.state = state
        self.retry_after = retry_after
        super().__init__(f"Circuit '{circuit_name}' is {state.value}")


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._epoch = 0
        self._trials_in_flight = 0
        self._trial_successes = 0
        self._stats = CircuitStats()
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<CircuitBreaker {self.name} {self.state.value}>"

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooled_down():
            self._enter(CircuitState.HALF_OPEN)
        return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def cooldown_remaining(self) -> float:
        """Seconds until an OPEN circuit lets a trial call through; 0 otherwise"""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def _cooled_down(self) -> bool:
        return self._clock() - self._opened_at >= self.recovery_timeout

    # -------------------------------------------------------------------------
    # Outcome reporting
    # -------------------------------------------------------------------------

    def record_success(self):
        self._stats.total_calls += 1
        self._stats.successful_calls += 1
        self._stats.consecutive_failures = 0

        if self._state != CircuitState.HALF_OPEN:
            return
        self._trials_in_flight = max(0, self._trials_in_flight - 1)
        self._trial_successes += 1
        if self._trial_successes >= self.half_open_max_calls:
            self._enter(CircuitState.CLOSED)

    def record_failure(self):
        self._stats.total_calls += 1
        self._stats.failed_calls += 1
        self._stats.consecutive_failures += 1
        self._stats.last_failure_time = self._clock()

        # a failed trial call reopens immediately
        if self._state == CircuitState.HALF_OPEN:
            self._enter(CircuitState.OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and self._stats.consecutive_failures >= self.failure_threshold
        ):
            self._enter(CircuitState.OPEN)

    def _enter(self, new_state: CircuitState):
        old_state = self._state
        self._state = new_state
        self._epoch += 1

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._stats.times_opened += 1
        self._trials_in_flight = 0
        self._trial_successes = 0

        update_circuit_state(self.name, new_state.value)
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"Circuit '{self.name}': {old_state.value} -> {new_state.value}")

    # -------------------------------------------------------------------------
    # Guarded call
    # -------------------------------------------------------------------------

    async def _admit(self) -> Optional[int]:
        """Returns the half-open epoch when the call takes a trial slot"""
        async with self._lock:
            state = self.state
            if state == CircuitState.OPEN:
                self._stats.rejected_calls += 1
                raise CircuitBreakerError(self.name, state, self.cooldown_remaining())
            if state == CircuitState.HALF_OPEN:
                if self._trials_in_flight >= self.half_open_max_calls:
                    self._stats.rejected_calls += 1
                    raise CircuitBreakerError(self.name, state)
                self._trials_in_flight += 1
                return self._epoch
            return None

    def _release_slot(self, epoch: Optional[int]):
        # only the half-open period that granted the slot may take it back
        if epoch is not None and epoch == self._epoch and self._state == CircuitState.HALF_OPEN:
            self._trials_in_flight = max(0, self._trials_in_flight - 1)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await func if the circuit admits it.

        Raises:
            CircuitBreakerError: circuit open, or every half-open trial slot taken

        An exception from func is recorded as a failure and re-raised. A normal
        return is NOT recorded; the caller judges the response. A cancelled
        call records nothing and hands its trial slot back.
        """
        epoch = await self._admit()
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            self._release_slot(epoch)
            raise
        except Exception:
            self.record_failure()
            raise

    def reset(self):
        self._enter(CircuitState.CLOSED)
        self._stats = CircuitStats()

    def to_dict(self) -> Dict[str, Any]:
        stats = asdict(self._stats)
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": stats.pop("consecutive_failures"),
            "stats": stats,
        }
