"""
Circuit breaker for outbound gateway calls.

States:
- CLOSED: normal operation, calls pass through
- OPEN: too many consecutive failures, calls fail fast until the cooldown elapses
- HALF_OPEN: exactly one trial call decides whether to close or re-open
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from servicepay.core.errors import CircuitOpenError, GatewayUnavailableError

logger = logging.getLogger("servicepay.circuit")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    One breaker per external dependency, held by the client for that dependency.

    Only exceptions in ``failure_exceptions`` count as failures. Any other
    exception means the dependency answered (e.g. it refused a bad amount),
    so it counts as a success for breaker purposes and is re-raised.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        failure_exceptions: Tuple[Type[BaseException], ...] = (GatewayUnavailableError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_exceptions = failure_exceptions
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        self.stats: Dict[str, int] = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "blocked_calls": 0,
        }

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def before_call(self) -> None:
        """Admit or reject a call. Raises CircuitOpenError when rejected."""
        with self._lock:
            self.stats["total_calls"] += 1

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.recovery_timeout:
                    self.stats["blocked_calls"] += 1
                    raise CircuitOpenError(
                        "Payment service is temporarily unavailable. Please try again shortly.",
                        details={"retry_after_seconds": round(self.recovery_timeout - elapsed, 1)},
                    )
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info(f"Circuit {self.name} entering HALF_OPEN state")
                return

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.stats["blocked_calls"] += 1
                    raise CircuitOpenError(
                        "Payment service is recovering. Please try again shortly."
                    )
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self.stats["successful_calls"] += 1
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit {self.name} CLOSED after successful trial call")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self.stats["failed_calls"] += 1
            self._failure_count += 1
            self._trial_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._trip()
                logger.warning(f"Circuit {self.name} trial call failed, re-opening")
            elif self._failure_count >= self.failure_threshold and self._state == CircuitState.CLOSED:
                self._trip()
                logger.error(
                    f"Circuit {self.name} OPEN after {self._failure_count} consecutive failures"
                )

    def record_abandoned(self) -> None:
        """The call never finished (e.g. cancelled); no verdict on the dependency."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._trial_in_flight:
                self._trial_in_flight = False
                self._trip()
                logger.warning(f"Circuit {self.name} trial call abandoned, back to OPEN")

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute an async callable under breaker protection."""
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except self.failure_exceptions:
            self.record_failure()
            raise
        except Exception:
            self.record_success()
            raise
        except BaseException:
            self.record_abandoned()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
                "stats": dict(self.stats),
            }
