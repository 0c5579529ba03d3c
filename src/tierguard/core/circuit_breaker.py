"""Circuit breaker for counter store calls.

An asyncio-compatible circuit breaker that stops the decision engine from
hammering a counter store that keeps failing. It follows the classic circuit
breaker pattern with closed, open, and half-open states. Time is read from an
injected Clock so tests can step through the reset timeout.
"""

import asyncio
from typing import Any, Callable, Coroutine, Dict, Optional, Tuple, Type, TypeVar

import structlog

from tierguard.core.clock import Clock, SystemClock
from tierguard.core.exceptions import TierGuardError

logger = structlog.get_logger(__name__)

# Type variable for the wrapped function's return value
T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


class CircuitBreakerError(TierGuardError):
    """Raised instead of calling the protected function while the circuit is open."""

    def __init__(self, breaker_name: str, message: Optional[str] = None):
        self.breaker_name = breaker_name
        if message is None:
            message = f"Circuit breaker {breaker_name} is open"
        super().__init__(message, "circuit_open")


class CircuitBreaker:
    """Circuit breaker for async calls to an unreliable dependency.

    State Transitions:
    - CLOSED: All calls are allowed. After `failure_threshold` consecutive
      failures the state transitions to OPEN.
    - OPEN: All calls are refused for `reset_timeout` seconds. After the
      timeout, the state transitions to HALF-OPEN.
    - HALF-OPEN: Calls are let through again. The first success closes the
      circuit; a failure re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        name: str = "counter_store",
        clock: Optional[Clock] = None,
        expected_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        """Initializes the CircuitBreaker.

        Args:
            failure_threshold: The number of consecutive failures required
                to open the circuit.
            reset_timeout: The time in seconds to wait in the OPEN state
                before transitioning to HALF-OPEN.
            name: The name of the circuit breaker, used for logging.
            clock: Time source; its monotonic reading drives the timeout.
            expected_exceptions: Exception types counted as failures. Others
                propagate without touching the failure count.
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self.clock = clock or SystemClock()
        self.expected_exceptions = expected_exceptions

        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self.state = CLOSED
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        """Enter the context manager, checking if the circuit is open."""
        if not await self._allow_request():
            raise CircuitBreakerError(self.name)
        return self

    async def __aexit__(self, exc_type, exc_val, traceback):
        """Exit the context manager, updating state based on outcome."""
        if exc_type is None:
            await self._record_success()
        elif issubclass(exc_type, self.expected_exceptions):
            await self._record_failure()

    @property
    def is_open(self) -> bool:
        """Return True if the circuit is open."""
        if self.state == OPEN:
            if (
                self.last_failure_time is not None
                and self.clock.monotonic() - self.last_failure_time >= self.reset_timeout
            ):
                self.state = HALF_OPEN
                logger.info("circuit_breaker_half_open", breaker=self.name)
                return False
            return True
        return False

    async def _allow_request(self) -> bool:
        """Determine if a request should be allowed based on the current state."""
        async with self._lock:
            return not self.is_open

    async def _record_success(self) -> None:
        """Record a successful operation, closing the circuit if half-open."""
        async with self._lock:
            if self.state == HALF_OPEN:
                self.state = CLOSED
                self.last_failure_time = None
                logger.info("circuit_breaker_closed", breaker=self.name)
            self.failures = 0

    async def _record_failure(self) -> None:
        """Record a failure, opening the circuit if the threshold is reached."""
        async with self._lock:
            self.failures += 1
            self.last_failure_time = self.clock.monotonic()
            if self.state == HALF_OPEN or self.failures >= self.failure_threshold:
                if self.state != OPEN:
                    self.state = OPEN
                    logger.warning(
                        "circuit_breaker_opened",
                        breaker=self.name,
                        failures=self.failures,
                    )

    async def execute(self, func: Callable[..., Coroutine[Any, Any, T]], *args: Any, **kwargs: Any) -> T:
        """Execute an async function with circuit breaker protection.

        Args:
            func: The async function to execute.
            *args: Positional arguments for the function.
            **kwargs: Keyword arguments for the function.

        Returns:
            The result of the function execution.

        Raises:
            CircuitBreakerError: If the circuit is open.
            Exception: Propagates exceptions from the executed function.
        """
        if not await self._allow_request():
            raise CircuitBreakerError(self.name)

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions as e:
            await self._record_failure()
            logger.debug("circuit_breaker_failure_recorded", breaker=self.name, error=str(e))
            raise
        await self._record_success()
        return result

    def describe(self) -> Dict[str, Any]:
        """Current state for health reporting."""
        return {
            "name": self.name,
            "state": self.state,
            "failures": self.failures,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
        }
