"""Composition of the orchestration primitives.

``compose`` stacks wrappers around a callable in the fixed order
retry -> circuit breaker -> memoization -> rate gate (innermost to
outermost). ``TaskOrchestrator`` builds those pieces from an
``OrchestrationConfig`` and runs batches of tasks through one pool.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from taskweave.breaker import BreakerRegistry, CircuitBreaker, get_breaker_registry
from taskweave.cancellation import CancellationSource, CancellationToken, linked_token
from taskweave.config import BreakerConfig, MemoConfig, OrchestrationConfig
from taskweave.errors import CancellationError, CapacityExceededError, OrchestrationError
from taskweave.future import Deferred
from taskweave.log_config import get_logger
from taskweave.memo import memoize as build_memo
from taskweave.pool import ConcurrencyPool
from taskweave.rate_gate import debounce, throttle
from taskweave.retry import RetryPolicy
from taskweave.task import Task

logger = get_logger(__name__)


def compose(
    func: Callable[..., Awaitable[Any]],
    *,
    retry: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
    memo: dict[str, Any] | None = None,
    debounce_seconds: float | None = None,
    throttle_seconds: float | None = None,
    token: CancellationToken | None = None,
) -> Callable[..., Awaitable[Any]]:
    """Wrap ``func`` in the requested layers, innermost first.

    Args:
        func: The actual work
        retry: Retry policy applied directly around ``func``
        breaker: Circuit breaker around the retried call (one exhausted
            retry sequence counts as one breaker failure)
        memo: Options for ``memoize`` (``ttl_seconds``, ``key_fn``, ...)
        debounce_seconds: Outermost debounce gate
        throttle_seconds: Outermost throttle gate
        token: Cancellation token shared by the retry and gate layers

    Raises:
        ValueError: If both debounce_seconds and throttle_seconds are given
    """
    if debounce_seconds is not None and throttle_seconds is not None:
        msg = "choose either debounce_seconds or throttle_seconds, not both"
        raise ValueError(msg)

    wrapped = func
    if retry is not None:
        wrapped = retry.wrap(wrapped, token=token)
    if breaker is not None:
        wrapped = breaker.wrap(wrapped)
    if memo is not None:
        wrapped = build_memo(wrapped, **memo)
    if debounce_seconds is not None:
        wrapped = debounce(wrapped, debounce_seconds, token=token)
    elif throttle_seconds is not None:
        wrapped = throttle(wrapped, throttle_seconds, token=token)
    return wrapped


class OutcomeStatus(Enum):
    """Final status of a task run by ``run_all``."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskOutcome:
    """Structured outcome of one task in a batch.

    Attributes:
        task_id: Key of the task in the submitted mapping
        status: Completed, failed or cancelled
        duration_seconds: Time from submission to settlement
        result: Return value of a completed task
        error: Exception of a failed or cancelled task
    """

    task_id: str
    status: OutcomeStatus
    duration_seconds: float
    result: Any = None
    error: BaseException | None = None


class TaskOrchestrator:
    """Runs tasks through a shared pool with configured resilience layers.

    Example:
        >>> orchestrator = TaskOrchestrator.from_config(get_config())
        >>> fetch = orchestrator.guard(fetch_quote, name="quotes-api", memoize=True)
        >>> outcomes = await orchestrator.run_all({
        ...     "acme": lambda: fetch("ACME"),
        ...     "initech": lambda: fetch("INTC"),
        ... })

    Attributes:
        pool: ConcurrencyPool shared by every submitted task
        retry_policy: Policy used by ``guard(..., retry=True)``
        breakers: Registry breakers are looked up in by name
        breaker_config: Settings for breakers created by ``guard``
        memo_config: Settings for caches created by ``guard``
    """

    def __init__(
        self,
        pool: ConcurrencyPool,
        retry_policy: RetryPolicy | None = None,
        breakers: BreakerRegistry | None = None,
        breaker_config: BreakerConfig | None = None,
        memo_config: MemoConfig | None = None,
    ):
        self.pool = pool
        self.retry_policy = retry_policy or RetryPolicy()
        self.breakers = breakers or get_breaker_registry()
        self.breaker_config = breaker_config or BreakerConfig()
        self.memo_config = memo_config or MemoConfig()

        logger.info(
            "task_orchestrator_initialized",
            max_concurrency=pool.max_concurrency,
            retry_attempts=self.retry_policy.max_attempts,
        )

    @classmethod
    def from_config(
        cls,
        config: OrchestrationConfig,
        breakers: BreakerRegistry | None = None,
        configure_logging: bool = False,
    ) -> "TaskOrchestrator":
        """Build an orchestrator (pool, retry policy, breaker settings) from configuration.

        Args:
            config: Loaded configuration
            breakers: Breaker registry (default: the process-wide one)
            configure_logging: Also apply the configured logging level and
                renderer (leave False when the host application owns logging)
        """
        if configure_logging:
            config.configure_logging()
        return cls(
            pool=ConcurrencyPool.from_config(config.pool),
            retry_policy=RetryPolicy.from_config(config.retry),
            breakers=breakers,
            breaker_config=config.breaker,
            memo_config=config.memo,
        )

    def breaker(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for ``name`` using the configured settings."""
        return self.breakers.get_or_create(
            name,
            failure_threshold=self.breaker_config.failure_threshold,
            reset_timeout_seconds=self.breaker_config.reset_timeout_seconds,
            failure_window_seconds=self.breaker_config.failure_window_seconds,
        )

    def guard(
        self,
        func: Callable[..., Awaitable[Any]],
        *,
        name: str | None = None,
        retry: bool = True,
        memoize: bool = False,
        token: CancellationToken | None = None,
    ) -> Callable[..., Awaitable[Any]]:
        """Wrap ``func`` with the configured retry, breaker and memo layers.

        Args:
            func: The actual work
            name: Breaker name; no breaker is applied when omitted
            retry: Apply the orchestrator's retry policy
            memoize: Apply single-flight memoization with the memo settings
            token: Token observed during retry backoff
        """
        memo = None
        if memoize:
            memo = {
                "ttl_seconds": self.memo_config.ttl_seconds,
                "cache_errors": self.memo_config.cache_errors,
                "max_entries": self.memo_config.max_entries,
            }
        return compose(
            func,
            retry=self.retry_policy if retry else None,
            breaker=self.breaker(name) if name else None,
            memo=memo,
            token=token,
        )

    def submit(
        self,
        work: Task[Any] | Callable[[], Awaitable[Any]],
        token: CancellationToken | None = None,
    ) -> asyncio.Future:
        """Submit one task to the shared pool."""
        return self.pool.submit(work, token)

    async def run_all(
        self,
        tasks: dict[str, Callable[[], Awaitable[Any]]],
        token: CancellationToken | None = None,
        critical_task_ids: set[str] | None = None,
    ) -> list[TaskOutcome]:
        """Run a batch of tasks through the pool and collect every outcome.

        A failing task never prevents the others from running, unless it is
        listed in ``critical_task_ids``: then the rest of the batch is
        cancelled (queued tasks never start) and OrchestrationError is raised.

        Args:
            tasks: Mapping of task IDs to zero-argument async callables
            token: Cancels every queued task of the batch when aborted
            critical_task_ids: Tasks whose failure aborts the whole batch

        Returns:
            One TaskOutcome per task, in the mapping's order

        Raises:
            OrchestrationError: If a critical task fails
        """
        if not tasks:
            logger.warning("run_all_called_with_empty_tasks")
            return []

        critical_task_ids = critical_task_ids or set()
        batch = CancellationSource()
        batch_token, unlink = linked_token(token, batch.token)
        try:
            return await self._run_batch(tasks, batch, batch_token, critical_task_ids)
        except asyncio.CancelledError:
            # queued tasks must not outlive the caller's interest in them
            batch.abort("batch cancelled")
            raise
        finally:
            unlink()

    async def _run_batch(
        self,
        tasks: dict[str, Callable[[], Awaitable[Any]]],
        batch: CancellationSource,
        batch_token: CancellationToken,
        critical_task_ids: set[str],
    ) -> list[TaskOutcome]:
        logger.info("batch_started", total_tasks=len(tasks), critical_tasks=len(critical_task_ids))

        started_at = time.monotonic()
        settled_at: dict[str, float] = {}
        futures: dict[str, asyncio.Future] = {}
        for task_id, work in tasks.items():
            try:
                future = self.pool.submit(Task(run=work, id=task_id), batch_token)
            except CapacityExceededError as e:
                rejected: Deferred = Deferred()
                rejected.reject(e)
                future = rejected.future
            future.add_done_callback(lambda _, tid=task_id: settled_at.setdefault(tid, time.monotonic()))
            futures[task_id] = future

        critical_failure: TaskOutcome | None = None
        watched = {futures[task_id]: task_id for task_id in critical_task_ids if task_id in futures}
        pending = set(watched)
        while pending and critical_failure is None:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                if future.exception() is not None:
                    task_id = watched[future]
                    critical_failure = self._outcome(task_id, future, time.monotonic() - started_at)
                    batch.abort(f"critical task '{task_id}' failed")
                    break

        await asyncio.gather(*futures.values(), return_exceptions=True)
        outcomes = [
            self._outcome(task_id, future, settled_at.get(task_id, time.monotonic()) - started_at)
            for task_id, future in futures.items()
        ]

        summary = {status.value: 0 for status in OutcomeStatus}
        for outcome in outcomes:
            summary[outcome.status.value] += 1
        logger.info("batch_completed", total_tasks=len(tasks), **summary)

        if critical_failure is not None:
            logger.error(
                "critical_task_failed",
                task_id=critical_failure.task_id,
                error=str(critical_failure.error),
            )
            msg = f"Critical task '{critical_failure.task_id}' failed: {critical_failure.error}"
            raise OrchestrationError(msg, task_id=critical_failure.task_id) from critical_failure.error

        return outcomes

    @staticmethod
    def _outcome(task_id: str, future: asyncio.Future, duration: float) -> TaskOutcome:
        error = future.exception()
        if error is None:
            return TaskOutcome(task_id, OutcomeStatus.COMPLETED, duration, result=future.result())
        status = OutcomeStatus.CANCELLED if isinstance(error, CancellationError) else OutcomeStatus.FAILED
        return TaskOutcome(task_id, status, duration, error=error)

    def get_stats(self) -> dict[str, Any]:
        """Get pool, retry and breaker statistics."""
        return {
            "pool": self.pool.get_stats(),
            "retry": self.retry_policy.get_stats(),
            "breakers": self.breakers.get_all_stats(),
        }
