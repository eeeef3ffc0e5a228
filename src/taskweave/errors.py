"""Error taxonomy for the orchestration core.

Every wrapper either lets the underlying exception through unchanged or
raises one of the types below with the original preserved as ``__cause__``.
"""


class OrchestrationError(Exception):
    """Base class for all errors raised by taskweave.

    Attributes:
        message: Human readable description
        task_id: Optional identifier of the task that caused the error
    """

    def __init__(self, message: str, task_id: str | None = None):
        """Initialize the exception with a descriptive message.

        Args:
            message: Description of the error
            task_id: Optional task ID that caused the error
        """
        super().__init__(message)
        self.message = message
        self.task_id = task_id


class TransientError(OrchestrationError):
    """A failure that may succeed if the operation is attempted again."""


class PermanentError(OrchestrationError):
    """A failure that will not succeed on retry (never retried)."""


class RetryExhaustedError(OrchestrationError):
    """Raised when every retry attempt has failed.

    Attributes:
        attempts: Number of attempts that were made
        cause: The last error observed
    """

    def __init__(self, attempts: int, cause: BaseException, task_id: str | None = None):
        super().__init__(
            f"Retry exhausted after {attempts} attempts: {cause}",
            task_id=task_id,
        )
        self.attempts = attempts
        self.cause = cause


class CircuitOpenError(OrchestrationError):
    """Raised when a circuit breaker rejects a call without invoking it.

    Attributes:
        circuit_name: Name of the breaker that rejected the call
        retry_after: Seconds until the breaker will admit a trial call (0 while a
            trial call is already outstanding)
    """

    def __init__(self, circuit_name: str, retry_after: float):
        super().__init__(f"Circuit '{circuit_name}' is open. Retry after {retry_after:.2f}s")
        self.circuit_name = circuit_name
        self.retry_after = retry_after


class CapacityExceededError(OrchestrationError):
    """Raised by ``submit`` when the pool queue is at ``max_queue_length``."""

    def __init__(self, max_queue_length: int, task_id: str | None = None):
        super().__init__(
            f"Pool queue is full (max_queue_length={max_queue_length})",
            task_id=task_id,
        )
        self.max_queue_length = max_queue_length


class PoolClosedError(OrchestrationError):
    """Raised by ``submit`` after the pool has been shut down."""


class CancellationError(OrchestrationError):
    """Raised when work is skipped because its cancellation token aborted.

    Attributes:
        reason: Optional reason passed to ``abort()``
    """

    def __init__(self, reason: str | None = None, task_id: str | None = None):
        super().__init__(f"Operation cancelled: {reason or 'aborted'}", task_id=task_id)
        self.reason = reason


class SupersededError(CancellationError):
    """Raised to debounce callers replaced by a newer call."""


class TaskTimeoutError(TransientError, TimeoutError):
    """Raised when a per-call deadline expires (retryable by default)."""

    def __init__(self, timeout_seconds: float, task_id: str | None = None):
        super().__init__(f"Operation timed out after {timeout_seconds}s", task_id=task_id)
        self.timeout_seconds = timeout_seconds


__all__ = [
    "CancellationError",
    "CapacityExceededError",
    "CircuitOpenError",
    "OrchestrationError",
    "PermanentError",
    "PoolClosedError",
    "RetryExhaustedError",
    "SupersededError",
    "TaskTimeoutError",
    "TransientError",
]
