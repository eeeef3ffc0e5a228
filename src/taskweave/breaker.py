"""Circuit breaker keyed by operation name.

State machine:
    CLOSED    -> failure_threshold failures (within the window) -> OPEN
    OPEN      -> reset timeout elapsed, next call               -> HALF_OPEN
    HALF_OPEN -> trial call succeeds                             -> CLOSED
    HALF_OPEN -> trial call fails                                -> OPEN

Only one trial call is admitted while HALF_OPEN; concurrent callers are
rejected with CircuitOpenError until it settles. Calls admitted before a
state change report into a stale generation and are ignored, so only the
trial call decides how HALF_OPEN ends. Breakers live for the lifetime of
the process in a registry keyed by name.
"""

import asyncio
import functools
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, NamedTuple, ParamSpec, TypeVar


P = ParamSpec("P")
T = TypeVar("T")

from taskweave.errors import CancellationError, CircuitOpenError
from taskweave.log_config import get_logger

if TYPE_CHECKING:
    from taskweave.config import BreakerConfig

logger = get_logger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT_SECONDS = 30.0


class BreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    """Inspectable state of one named circuit.

    Attributes:
        state: Current breaker state
        failure_count: Failures counted towards the threshold
        failure_threshold: Failures that trip the breaker
        reset_timeout_seconds: How long the breaker stays OPEN
        next_attempt_at: Clock reading after which a trial call is admitted
        trial_in_flight: Whether the single HALF_OPEN trial call is outstanding
        generation: Bumped on every state change; outcomes of calls admitted
            under an older generation are not counted
        failure_window_seconds: Only failures this recent count (None means
            consecutive failures, reset by any success)
        failure_times: Clock readings of counted failures (window mode)
    """

    failure_threshold: int
    reset_timeout_seconds: float
    failure_window_seconds: float | None = None
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    next_attempt_at: float = 0.0
    trial_in_flight: bool = False
    generation: int = 0
    failure_times: deque[float] = field(default_factory=deque)


class Admission(NamedTuple):
    """Ticket for one call admitted by the breaker.

    Attributes:
        generation: CircuitState.generation at admission
        trial: Whether the call is the HALF_OPEN trial call
    """

    generation: int
    trial: bool


class CircuitBreaker:
    """Fail-fast guard around a named async operation.

    Example:
        >>> breaker = create_circuit_breaker("quotes-api", failure_threshold=3)
        >>> quote = await breaker.execute(fetch_quote, "ACME")

    Attributes:
        name: Operation name (registry key)
        circuit: The CircuitState record
        excluded_errors: Exception types that never count as failures
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_seconds: float = DEFAULT_RESET_TIMEOUT_SECONDS,
        failure_window_seconds: float | None = None,
        excluded_errors: tuple[type[BaseException], ...] = (CancellationError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            msg = "failure_threshold must be at least 1"
            raise ValueError(msg)
        if reset_timeout_seconds < 0:
            msg = "reset_timeout_seconds must be non-negative"
            raise ValueError(msg)

        self.name = name
        self.circuit = CircuitState(
            failure_threshold=failure_threshold,
            reset_timeout_seconds=reset_timeout_seconds,
            failure_window_seconds=failure_window_seconds,
        )
        self.excluded_errors = excluded_errors
        self._clock = clock

        self.total_calls = 0
        self.rejected_calls = 0
        self.total_failures = 0

    @classmethod
    def from_config(cls, name: str, config: "BreakerConfig") -> "CircuitBreaker":
        return cls(
            name,
            failure_threshold=config.failure_threshold,
            reset_timeout_seconds=config.reset_timeout_seconds,
            failure_window_seconds=config.failure_window_seconds,
        )

    @property
    def state(self) -> BreakerState:
        return self.circuit.state

    def _transition_to(self, new_state: BreakerState) -> None:
        circuit = self.circuit
        old_state = circuit.state
        circuit.state = new_state
        circuit.generation += 1

        if new_state is BreakerState.OPEN:
            circuit.next_attempt_at = self._clock() + circuit.reset_timeout_seconds
            circuit.trial_in_flight = False
        elif new_state is BreakerState.CLOSED:
            circuit.failure_count = 0
            circuit.failure_times.clear()
            circuit.trial_in_flight = False

        logger.info(
            "circuit_state_changed",
            circuit=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=circuit.failure_count,
        )

    def _before_call(self) -> Admission:
        """Admit or reject a call. Runs synchronously before any await."""
        circuit = self.circuit

        if circuit.state is BreakerState.OPEN:
            now = self._clock()
            if now < circuit.next_attempt_at:
                self.rejected_calls += 1
                raise CircuitOpenError(self.name, circuit.next_attempt_at - now)
            self._transition_to(BreakerState.HALF_OPEN)

        trial = False
        if circuit.state is BreakerState.HALF_OPEN:
            if circuit.trial_in_flight:
                self.rejected_calls += 1
                raise CircuitOpenError(self.name, 0.0)
            circuit.trial_in_flight = True
            trial = True

        self.total_calls += 1
        return Admission(circuit.generation, trial)

    def _is_stale(self, admission: Admission) -> bool:
        return admission.generation != self.circuit.generation

    def _on_success(self, admission: Admission) -> None:
        if self._is_stale(admission):
            return
        if admission.trial:
            self._transition_to(BreakerState.CLOSED)
        elif self.circuit.failure_window_seconds is None:
            self.circuit.failure_count = 0

    def _on_failure(self, error: BaseException, admission: Admission) -> None:
        circuit = self.circuit
        self.total_failures += 1

        if self._is_stale(admission):
            logger.debug(
                "circuit_stale_failure_ignored",
                circuit=self.name,
                state=circuit.state.value,
                error_type=type(error).__name__,
            )
            return

        if admission.trial:
            logger.warning("circuit_trial_failed", circuit=self.name, error=str(error))
            self._transition_to(BreakerState.OPEN)
            return

        if circuit.failure_window_seconds is not None:
            now = self._clock()
            circuit.failure_times.append(now)
            horizon = now - circuit.failure_window_seconds
            while circuit.failure_times and circuit.failure_times[0] < horizon:
                circuit.failure_times.popleft()
            circuit.failure_count = len(circuit.failure_times)
        else:
            circuit.failure_count += 1

        logger.debug(
            "circuit_failure_recorded",
            circuit=self.name,
            failure_count=circuit.failure_count,
            failure_threshold=circuit.failure_threshold,
            error_type=type(error).__name__,
        )

        if circuit.failure_count >= circuit.failure_threshold:
            self._transition_to(BreakerState.OPEN)

    def _release(self, admission: Admission) -> None:
        # A cancelled or excluded trial call frees the slot for the next caller.
        if admission.trial and not self._is_stale(admission):
            self.circuit.trial_in_flight = False

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is OPEN, or HALF_OPEN with a
                trial call already outstanding (``func`` is not called)
        """
        admission = self._before_call()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self._release(admission)
            raise
        except Exception as e:
            if isinstance(e, self.excluded_errors):
                self._release(admission)
            else:
                self._on_failure(e, admission)
            raise
        else:
            self._on_success(admission)
            return result

    def wrap(self, func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        """Return a callable that runs ``func`` through this breaker."""

        @functools.wraps(func)
        async def guarded(*args: P.args, **kwargs: P.kwargs) -> T:
            return await self.execute(func, *args, **kwargs)

        return guarded

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        if self.circuit.state is not BreakerState.CLOSED:
            self._transition_to(BreakerState.CLOSED)
        self.circuit.failure_count = 0
        self.circuit.failure_times.clear()

    def get_stats(self) -> dict[str, Any]:
        circuit = self.circuit
        return {
            "name": self.name,
            "state": circuit.state.value,
            "failure_count": circuit.failure_count,
            "failure_threshold": circuit.failure_threshold,
            "total_calls": self.total_calls,
            "rejected_calls": self.rejected_calls,
            "total_failures": self.total_failures,
        }


class BreakerRegistry:
    """Process-wide breakers keyed by operation name."""

    def __init__(self) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, **options: Any) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use.

        Options passed for an existing breaker are ignored; a warning is
        logged when they differ from its configuration.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, **options)
            self._breakers[name] = breaker
            logger.debug("circuit_breaker_created", circuit=name)
            return breaker

        circuit = breaker.circuit
        mismatched = {
            key: value
            for key, value in options.items()
            if hasattr(circuit, key) and getattr(circuit, key) != value
        }
        if mismatched:
            logger.warning(
                "circuit_breaker_options_ignored",
                circuit=name,
                ignored=sorted(mismatched),
            )
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def remove(self, name: str) -> bool:
        return self._breakers.pop(name, None) is not None

    def names(self) -> list[str]:
        return list(self._breakers)

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def clear(self) -> None:
        self._breakers.clear()


_default_registry = BreakerRegistry()


def get_breaker_registry() -> BreakerRegistry:
    """Get the process-wide breaker registry."""
    return _default_registry


def create_circuit_breaker(
    name: str,
    *,
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    reset_timeout_seconds: float = DEFAULT_RESET_TIMEOUT_SECONDS,
    **options: Any,
) -> CircuitBreaker:
    """Get or create the process-wide breaker for ``name``."""
    return _default_registry.get_or_create(
        name,
        failure_threshold=failure_threshold,
        reset_timeout_seconds=reset_timeout_seconds,
        **options,
    )
