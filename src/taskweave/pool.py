"""Concurrency pool with FIFO admission and cooperative cancellation.

The pool runs at most ``max_concurrency`` tasks at once and queues the rest
in submission order. All bookkeeping (the running count and the queue)
happens in synchronous admission and completion handlers on the event
loop, so no locks are needed: no two handlers can interleave mid-update.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskweave.cancellation import CancellationToken
from taskweave.errors import CancellationError, CapacityExceededError, PoolClosedError
from taskweave.future import Deferred
from taskweave.log_config import bound_context, get_logger
from taskweave.task import Task, TaskState, as_task

if TYPE_CHECKING:
    from taskweave.config import PoolConfig

logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 10


@dataclass(eq=False)
class PoolEntry:
    """A submitted task together with its caller-facing future.

    Attributes:
        task: The submitted task
        deferred: Settled with the task's outcome
        token: Effective cancellation token (None for non-cancellable tasks)
        unsubscribe: Removes the abort listener registered while queued
    """

    task: Task[Any]
    deferred: Deferred
    token: CancellationToken | None = None
    unsubscribe: Callable[[], None] | None = None

    def detach(self) -> None:
        if self.unsubscribe is not None:
            self.unsubscribe()
            self.unsubscribe = None


@dataclass
class PoolState:
    """Inspectable pool bookkeeping.

    Invariants: ``0 <= running <= max_concurrency``, and ``queue`` never
    holds an entry whose token has aborted.
    """

    max_concurrency: int
    max_queue_length: int | None = None
    running: int = 0
    queue: deque[PoolEntry] = field(default_factory=deque)


class ConcurrencyPool:
    """Bounded-concurrency executor for async tasks.

    Example:
        >>> pool = create_pool(max_concurrency=3)
        >>> token, abort = create_cancellation_token()
        >>> future = pool.submit(lambda: fetch_quote("ACME"), token)
        >>> quote = await future

    Attributes:
        state: PoolState with the running count and the queue
        active_tasks: IDs of tasks currently running
    """

    def __init__(
        self,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_queue_length: int | None = None,
    ):
        """Initialize the pool.

        Raises:
            ValueError: If max_concurrency < 1 or max_queue_length < 0
        """
        if max_concurrency < 1:
            msg = f"max_concurrency must be at least 1, got {max_concurrency}"
            raise ValueError(msg)
        if max_queue_length is not None and max_queue_length < 0:
            msg = f"max_queue_length must be non-negative, got {max_queue_length}"
            raise ValueError(msg)

        self.state = PoolState(max_concurrency=max_concurrency, max_queue_length=max_queue_length)
        self.active_tasks: set[str] = set()
        self._workers: set[asyncio.Task] = set()
        self._idle: asyncio.Event | None = None
        self._closed = False
        # identities of Task objects currently queued or running
        self._admitted: set[int] = set()

        self._stats = {
            "submitted": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "rejected": 0,
        }

        logger.info(
            "pool_initialized",
            max_concurrency=max_concurrency,
            max_queue_length=max_queue_length,
        )

    @classmethod
    def from_config(cls, config: "PoolConfig") -> "ConcurrencyPool":
        return cls(max_concurrency=config.max_concurrency, max_queue_length=config.max_queue_length)

    @property
    def max_concurrency(self) -> int:
        return self.state.max_concurrency

    @property
    def running(self) -> int:
        return self.state.running

    @property
    def queued(self) -> int:
        return len(self.state.queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(
        self,
        work: Task[Any] | Callable[[], Awaitable[Any]],
        token: CancellationToken | None = None,
    ) -> asyncio.Future:
        """Admit a task, starting it now or queuing it behind earlier ones.

        Must be called from a coroutine or callback on the running loop.

        Args:
            work: A Task or a zero-argument async callable
            token: Cancellation token; aborting it while the task is queued
                removes it and rejects its future with CancellationError

        Returns:
            Future settled with the task's result or error

        Raises:
            CapacityExceededError: If the queue is at max_queue_length
            PoolClosedError: If the pool has been shut down
            ValueError: If the Task is already in the pool or has already run
        """
        task = as_task(work)
        if self._closed:
            msg = "Pool is shut down"
            raise PoolClosedError(msg, task_id=task.id)
        if task.state is not TaskState.PENDING or id(task) in self._admitted:
            msg = f"Task {task.id} was already submitted (state: {task.state.value})"
            logger.error("pool_duplicate_submission", task_id=task.id, task_state=task.state.value)
            raise ValueError(msg)

        entry = PoolEntry(task=task, deferred=Deferred(), token=token if task.cancellable else None)
        self._stats["submitted"] += 1

        if entry.token is not None and entry.token.aborted:
            self._cancel(entry, entry.token.reason)
            return entry.deferred.future

        state = self.state
        if state.running < state.max_concurrency:
            self._admitted.add(id(task))
            self._start(entry)
            return entry.deferred.future

        if state.max_queue_length is not None and len(state.queue) >= state.max_queue_length:
            self._stats["rejected"] += 1
            task.mark_settled()
            logger.warning(
                "pool_queue_full",
                task_id=task.id,
                queued=len(state.queue),
                max_queue_length=state.max_queue_length,
            )
            raise CapacityExceededError(state.max_queue_length, task_id=task.id)

        state.queue.append(entry)
        self._admitted.add(id(task))
        if entry.token is not None:
            entry.unsubscribe = entry.token.on_abort(lambda: self._evict(entry))
        entry.deferred.future.add_done_callback(lambda _: self._on_caller_done(entry))

        logger.debug(
            "pool_task_queued",
            task_id=task.id,
            queued=len(state.queue),
            running=state.running,
        )
        return entry.deferred.future

    def _start(self, entry: PoolEntry) -> None:
        entry.detach()
        entry.task.mark_running()
        self.state.running += 1
        self.active_tasks.add(entry.task.id)
        if self._idle is not None:
            self._idle.clear()

        worker = asyncio.ensure_future(self._run(entry))
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

    async def _run(self, entry: PoolEntry) -> None:
        task = entry.task
        with bound_context(task_id=task.id):
            # The token may have aborted (or the caller given up) between
            # admission and the worker's first step.
            if entry.token is not None and entry.token.aborted:
                self._stats["cancelled"] += 1
                entry.deferred.reject(CancellationError(entry.token.reason, task_id=task.id))
                logger.info("pool_task_cancelled", reason=entry.token.reason)
                self._on_settled(entry)
                return
            if entry.deferred.settled:
                self._stats["cancelled"] += 1
                logger.debug("pool_task_withdrawn")
                self._on_settled(entry)
                return

            logger.debug("pool_task_started", running=self.state.running, queued=len(self.state.queue))
            try:
                result = await task.run()
            except asyncio.CancelledError:
                # Only reached when the worker itself is cancelled (loop teardown).
                self._stats["cancelled"] += 1
                entry.deferred.reject(CancellationError("pool worker cancelled", task_id=task.id))
                raise
            except Exception as e:
                self._stats["failed"] += 1
                logger.warning("pool_task_failed", error=str(e), error_type=type(e).__name__)
                entry.deferred.reject(e)
            else:
                self._stats["completed"] += 1
                logger.debug("pool_task_completed")
                entry.deferred.resolve(result)
            finally:
                self._on_settled(entry)

    def _release(self, entry: PoolEntry) -> None:
        entry.task.mark_settled()
        self._admitted.discard(id(entry.task))

    def _on_settled(self, entry: PoolEntry) -> None:
        self._release(entry)
        self.active_tasks.discard(entry.task.id)
        self.state.running -= 1
        self._drain()

    def _drain(self) -> None:
        state = self.state
        while state.running < state.max_concurrency and state.queue:
            entry = state.queue.popleft()
            if entry.token is not None and entry.token.aborted:
                self._cancel(entry, entry.token.reason)
                continue
            if entry.deferred.settled:
                self._withdraw(entry)
                continue
            self._start(entry)

        if state.running == 0 and not state.queue and self._idle is not None:
            self._idle.set()

    def _evict(self, entry: PoolEntry) -> None:
        """Abort listener for a queued entry."""
        try:
            self.state.queue.remove(entry)
        except ValueError:
            return
        self._cancel(entry, entry.token.reason if entry.token is not None else None)
        self._drain()

    def _on_caller_done(self, entry: PoolEntry) -> None:
        # The caller cancelled the returned future while the task was queued.
        if entry.task.state is TaskState.PENDING and entry in self.state.queue:
            self.state.queue.remove(entry)
            self._withdraw(entry)
            self._drain()

    def _withdraw(self, entry: PoolEntry) -> None:
        entry.detach()
        self._release(entry)
        self._stats["cancelled"] += 1
        logger.debug("pool_task_withdrawn", task_id=entry.task.id)

    def _cancel(self, entry: PoolEntry, reason: str | None) -> None:
        entry.detach()
        self._release(entry)
        self._stats["cancelled"] += 1
        entry.deferred.reject(CancellationError(reason, task_id=entry.task.id))
        logger.info("pool_task_cancelled", task_id=entry.task.id, reason=reason)

    async def join(self) -> None:
        """Wait until nothing is running or queued."""
        if self.state.running == 0 and not self.state.queue:
            return
        if self._idle is None:
            self._idle = asyncio.Event()
        await self._idle.wait()

    async def shutdown(self, cancel_queued: bool = True) -> None:
        """Stop accepting work.

        Args:
            cancel_queued: Reject queued tasks with CancellationError (True)
                or let them run to completion (False). Running tasks are
                always awaited, never interrupted.
        """
        self._closed = True
        logger.info(
            "pool_shutdown",
            running=self.state.running,
            queued=len(self.state.queue),
            cancel_queued=cancel_queued,
        )
        if cancel_queued:
            while self.state.queue:
                self._cancel(self.state.queue.popleft(), "pool shut down")
        await self.join()

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics.

        Returns:
            Dictionary with running/queued counts and lifetime counters
            (submitted, completed, failed, cancelled, rejected)
        """
        return {
            "max_concurrency": self.state.max_concurrency,
            "running": self.state.running,
            "queued": len(self.state.queue),
            **self._stats,
        }


def create_pool(max_concurrency: int, max_queue_length: int | None = None) -> ConcurrencyPool:
    """Create a ConcurrencyPool."""
    return ConcurrencyPool(max_concurrency=max_concurrency, max_queue_length=max_queue_length)
