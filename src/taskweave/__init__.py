"""Single-process task orchestration for asyncio.

This package contains the building blocks for running async work under
concurrency limits: a FIFO concurrency pool, retry with exponential
backoff, named circuit breakers, debounce/throttle gates, single-flight
memoization and cooperative cancellation tokens.
"""

from taskweave.breaker import (
    BreakerRegistry,
    BreakerState,
    CircuitBreaker,
    CircuitState,
    create_circuit_breaker,
    get_breaker_registry,
)
from taskweave.cancellation import (
    CancellationHandle,
    CancellationSource,
    CancellationToken,
    LinkedToken,
    cancellable_sleep,
    create_cancellation_token,
    linked_token,
    with_timeout,
)
from taskweave.errors import (
    CancellationError,
    CapacityExceededError,
    CircuitOpenError,
    OrchestrationError,
    PermanentError,
    PoolClosedError,
    RetryExhaustedError,
    SupersededError,
    TaskTimeoutError,
    TransientError,
)
from taskweave.future import Deferred
from taskweave.memo import CacheEntry, MemoCache, memoize
from taskweave.orchestrator import OutcomeStatus, TaskOrchestrator, TaskOutcome, compose
from taskweave.pool import ConcurrencyPool, PoolState, create_pool
from taskweave.rate_gate import Debouncer, SupersedePolicy, Throttler, debounce, throttle
from taskweave.retry import FailureType, RetryContext, RetryPolicy, classify_error, with_retry
from taskweave.task import Task, TaskState

__all__ = [
    "BreakerRegistry",
    "BreakerState",
    "CacheEntry",
    "CancellationError",
    "CancellationHandle",
    "CancellationSource",
    "CancellationToken",
    "CapacityExceededError",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ConcurrencyPool",
    "Debouncer",
    "Deferred",
    "FailureType",
    "LinkedToken",
    "MemoCache",
    "OrchestrationError",
    "OutcomeStatus",
    "PermanentError",
    "PoolClosedError",
    "PoolState",
    "RetryContext",
    "RetryExhaustedError",
    "RetryPolicy",
    "SupersedePolicy",
    "SupersededError",
    "Task",
    "TaskOrchestrator",
    "TaskOutcome",
    "TaskState",
    "TaskTimeoutError",
    "Throttler",
    "TransientError",
    "cancellable_sleep",
    "classify_error",
    "compose",
    "create_cancellation_token",
    "create_circuit_breaker",
    "create_pool",
    "debounce",
    "get_breaker_registry",
    "linked_token",
    "memoize",
    "throttle",
    "with_retry",
    "with_timeout",
]
