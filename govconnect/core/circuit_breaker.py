"""
Circuit Breaker

Three poll loops tick against the backend every 1-3 seconds. When the backend
is down the breaker opens and ticks fail fast with CircuitBreakerOpenError
instead of each waiting out a full request timeout.

All callers run on one event loop, so the breaker keeps plain attributes and
needs no locking.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, ClassVar, TypeVar

from govconnect.core.exceptions import CircuitBreakerOpenError
from govconnect.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
FailurePredicate = Callable[[Exception], bool]


class CircuitState(Enum):
    CLOSED = "closed"        # calls pass, failures are counted
    OPEN = "open"            # calls rejected until timeout_seconds elapse
    HALF_OPEN = "half_open"  # a few probe calls decide


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


class CircuitBreaker:
    """
    Named breaker, shared per service through `get_instance`.

    `is_failure` decides which exceptions count against the service. A 404
    for a missing session or a 409 for a conflicting takeover is an answer,
    not an outage.
    """

    _registry: ClassVar[dict[str, "CircuitBreaker"]] = {}

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        is_failure: FailurePredicate | None = None,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._is_failure = is_failure or (lambda exc: True)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._probe_calls = 0
        self._opened_at = 0.0

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        is_failure: FailurePredicate | None = None,
    ) -> "CircuitBreaker":
        breaker = cls._registry.get(service_name)
        if breaker is None:
            breaker = cls._registry[service_name] = cls(service_name, config, is_failure)
        return breaker

    @classmethod
    def reset_all(cls) -> None:
        """Forget every shared breaker (tests start from CLOSED)"""
        cls._registry.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state is CircuitState.HALF_OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        old_state, self._state = self._state, new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state is CircuitState.HALF_OPEN:
            self._probe_calls = 0
            self._probe_successes = 0
        else:
            self._failures = 0
        logger.info(
            f"Circuit '{self.service_name}' {old_state.value} -> {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            },
        )

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._probe_successes += 1
            if self._probe_successes >= self.config.success_threshold:
                self._move_to(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        self._failures += 1
        logger.warning(
            f"Circuit '{self.service_name}' failure {self._failures}/{self.config.failure_threshold}",
            extra_data={
                "service": self.service_name,
                "failure_count": self._failures,
                "error": str(error) if error else None,
            },
        )
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
            self._move_to(CircuitState.OPEN)

    def can_execute(self) -> bool:
        """Whether a call may go out now; claims a probe slot when half-open"""
        if self._state is CircuitState.OPEN:
            if self.get_retry_after() > 0:
                return False
            self._move_to(CircuitState.HALF_OPEN)
        if self._state is CircuitState.HALF_OPEN:
            if self._probe_calls >= self.config.half_open_max_calls:
                return False
            self._probe_calls += 1
        return True

    def get_retry_after(self) -> float:
        """Seconds until an open circuit lets a probe through"""
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (time.monotonic() - self._opened_at))

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await `func()` under the breaker.

        Raises:
            CircuitBreakerOpenError: circuit open, `func` not called
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())
        try:
            result = await func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_failure(exc):
                self.record_failure(exc)
            else:
                self.record_success()
            raise
        self.record_success()
        return result


def _counts_as_backend_failure(exc: Exception) -> bool:
    """5xx, timeouts and network errors; 4xx and `success: false` are answers."""
    status = getattr(exc, "http_status", None)
    return status is None or status >= 500


def get_backend_circuit_breaker() -> CircuitBreaker:
    """The breaker shared by every client of the channel/livechat backend"""
    from govconnect.core.config import settings

    return CircuitBreaker.get_instance(
        "backend",
        CircuitBreakerConfig(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.CIRCUIT_TIMEOUT_SECONDS,
        ),
        is_failure=_counts_as_backend_failure,
    )
