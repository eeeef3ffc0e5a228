"""Retry Logic with Exponential Backoff and Jitter.

This module provides bounded retry for async callables with exponential
backoff. Permanent failures short-circuit immediately; everything else is
retried until ``max_attempts`` is reached, after which the last error is
wrapped in ``RetryExhaustedError``. Backoff waits observe a cancellation
token so an abort cancels a pending retry without waiting out the delay.
"""

import functools
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar


P = ParamSpec("P")
T = TypeVar("T")

from taskweave.cancellation import CancellationToken, cancellable_sleep
from taskweave.errors import CancellationError, PermanentError, RetryExhaustedError, TransientError
from taskweave.log_config import get_logger

if TYPE_CHECKING:
    from taskweave.config import RetrySettings

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 0.1
DEFAULT_MAX_DELAY_SECONDS = 30.0


class FailureType(Enum):
    """Classification of failure types for retry decisions.

    Attributes:
        TRANSIENT: Explicitly retryable failures (TransientError, timeouts)
        PERMANENT: Failures that won't succeed on retry
        CANCELLED: Work skipped because a token aborted (never retried)
        UNKNOWN: Anything else (treated as transient)
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


def classify_error(
    error: BaseException,
    permanent_errors: tuple[type[BaseException], ...] = (),
) -> FailureType:
    """Classify an exception to determine if it's retryable.

    Args:
        error: The exception to classify
        permanent_errors: Extra exception types to treat as permanent

    Returns:
        FailureType indicating whether the error is retryable

    Example:
        >>> classify_error(PermanentError("bad input"))
        <FailureType.PERMANENT: 'permanent'>
    """
    if isinstance(error, CancellationError):
        return FailureType.CANCELLED
    if isinstance(error, PermanentError) or isinstance(error, permanent_errors):
        return FailureType.PERMANENT
    if isinstance(error, (TransientError, TimeoutError, ConnectionError)):
        return FailureType.TRANSIENT
    return FailureType.UNKNOWN


@dataclass
class RetryContext:
    """Per-invocation retry bookkeeping.

    Attributes:
        attempt: Number of the attempt currently running (1-based)
        max_attempts: Attempt budget
        base_delay_seconds: Backoff base
        max_delay_seconds: Backoff cap
        jitter: Whether random jitter is added to each delay
        last_error: Most recent failure, if any
        delays: Backoff delays actually waited, in order
    """

    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float
    jitter: bool
    attempt: int = 0
    last_error: BaseException | None = None
    delays: list[float] = field(default_factory=list)


class RetryPolicy:
    """Bounded retry with exponential backoff.

    Example:
        >>> policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.5)
        >>> fetch = policy.wrap(fetch_quote)
        >>> quote = await fetch("ACME")

    Attributes:
        max_attempts: Maximum number of execution attempts
        base_delay_seconds: Delay after the first failure
        max_delay_seconds: Upper bound for any single delay
        jitter: Add ``uniform(0, base_delay_seconds)`` to each delay
        permanent_errors: Extra exception types that are never retried
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        jitter: bool = True,
        permanent_errors: tuple[type[BaseException], ...] = (),
        rng: random.Random | None = None,
    ):
        """Initialize the retry policy.

        Raises:
            ValueError: If parameters are invalid
        """
        if max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if base_delay_seconds < 0:
            msg = "base_delay_seconds must be non-negative"
            raise ValueError(msg)
        if max_delay_seconds < base_delay_seconds:
            msg = "max_delay_seconds must be >= base_delay_seconds"
            raise ValueError(msg)

        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter
        self.permanent_errors = permanent_errors
        self._rng = rng or random.Random()

        self.total_calls = 0
        self.total_retries = 0
        self.exhausted = 0

    @classmethod
    def from_config(cls, settings: "RetrySettings") -> "RetryPolicy":
        """Create a RetryPolicy from validated configuration."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            jitter=settings.jitter,
        )

    def new_context(self) -> RetryContext:
        return RetryContext(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter=self.jitter,
        )

    def compute_delay(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1 for the first retry).

        ``min(base * 2^(n-1) + uniform(0, base), max)``; the jitter term is
        only added when ``jitter`` is enabled.
        """
        delay = self.base_delay_seconds * (2 ** (retry_number - 1))
        if self.jitter:
            delay += self._rng.uniform(0, self.base_delay_seconds)
        return min(delay, self.max_delay_seconds)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        token: CancellationToken | None = None,
        task_id: str | None = None,
        **kwargs: Any,
    ) -> T:
        """Execute an async function, retrying transient failures.

        Args:
            func: Async function to execute
            *args: Positional arguments to pass to func
            token: Cancellation token checked before each attempt and
                during each backoff wait
            task_id: Identifier used in log entries
            **kwargs: Keyword arguments to pass to func

        Returns:
            Result from the first successful attempt

        Raises:
            PermanentError: Re-raised unchanged, without retry
            CancellationError: If the token aborts
            RetryExhaustedError: If every attempt failed
        """
        context = self.new_context()
        self.total_calls += 1
        task_id = task_id or getattr(func, "__name__", "anonymous")

        while True:
            context.attempt += 1
            if token is not None:
                token.raise_if_aborted()

            try:
                logger.debug(
                    "retry_attempt_started",
                    task_id=task_id,
                    attempt=context.attempt,
                    max_attempts=context.max_attempts,
                )
                result = await func(*args, **kwargs)
            except Exception as e:
                context.last_error = e
                failure_type = classify_error(e, self.permanent_errors)

                logger.warning(
                    "retry_attempt_failed",
                    task_id=task_id,
                    attempt=context.attempt,
                    max_attempts=context.max_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                    failure_type=failure_type.value,
                )

                if failure_type in (FailureType.PERMANENT, FailureType.CANCELLED):
                    logger.info(
                        "retry_aborted",
                        task_id=task_id,
                        attempt=context.attempt,
                        failure_type=failure_type.value,
                    )
                    raise

                if context.attempt >= context.max_attempts:
                    self.exhausted += 1
                    logger.warning(
                        "retry_exhausted",
                        task_id=task_id,
                        total_attempts=context.attempt,
                        final_error=str(e),
                    )
                    raise RetryExhaustedError(context.attempt, e, task_id=task_id) from e

                delay = self.compute_delay(context.attempt)
                context.delays.append(delay)
                self.total_retries += 1

                logger.info(
                    "retry_backoff_delay",
                    task_id=task_id,
                    attempt=context.attempt,
                    delay_seconds=delay,
                    next_attempt=context.attempt + 1,
                )

                await cancellable_sleep(delay, token)
            else:
                if context.attempt > 1:
                    logger.info(
                        "retry_succeeded",
                        task_id=task_id,
                        total_attempts=context.attempt,
                    )
                return result

    def wrap(
        self,
        func: Callable[P, Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> Callable[P, Awaitable[T]]:
        """Return a callable that runs ``func`` under this policy."""

        task_id = getattr(func, "__name__", None)

        @functools.wraps(func)
        async def retrying(*args: P.args, **kwargs: P.kwargs) -> T:
            # Bind the caller's arguments first so a ``token`` keyword meant
            # for ``func`` is not taken as the policy's own token.
            call = functools.partial(func, *args, **kwargs)
            return await self.execute(call, token=token, task_id=task_id)

        return retrying

    def get_stats(self) -> dict[str, int]:
        return {
            "total_calls": self.total_calls,
            "total_retries": self.total_retries,
            "exhausted": self.exhausted,
        }


def with_retry(
    func: Callable[P, Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    jitter: bool = True,
    token: CancellationToken | None = None,
) -> Callable[P, Awaitable[T]]:
    """Wrap ``func`` so failures are retried with exponential backoff.

    Example:
        >>> fetch = with_retry(fetch_quote, max_attempts=5, base_delay_seconds=0.2)
        >>> quote = await fetch("ACME")
    """
    policy = RetryPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=base_delay_seconds,
        max_delay_seconds=max_delay_seconds,
        jitter=jitter,
    )
    return policy.wrap(func, token=token)
