"""Task records submitted to the concurrency pool.

A Task wraps a zero-argument async callable with an identifier and a
lifecycle state. Exactly one of PENDING (queued), RUNNING or SETTLED
describes a task at any time, and transitions only move forward.
"""

import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar


T = TypeVar("T")

from taskweave.log_config import get_logger

logger = get_logger(__name__)

_task_ids = itertools.count(1)


def next_task_id() -> str:
    return f"task-{next(_task_ids)}"


class TaskState(Enum):
    """Task lifecycle state.

    Attributes:
        PENDING: Created or waiting in the pool queue
        RUNNING: Admitted by the pool, work in progress
        SETTLED: Finished (success, failure or cancellation)
    """

    PENDING = "pending"
    RUNNING = "running"
    SETTLED = "settled"


@dataclass
class Task(Generic[T]):
    """A deferred unit of work.

    Attributes:
        run: Zero-argument callable returning an awaitable
        id: Unique identifier (generated when omitted)
        cancellable: If False the task ignores the token passed to submit
        name: Optional human readable label for logs
        state: Current lifecycle state
    """

    run: Callable[[], Awaitable[T]]
    id: str = field(default_factory=next_task_id)
    cancellable: bool = True
    name: str | None = None
    state: TaskState = TaskState.PENDING

    def mark_running(self) -> None:
        """Transition PENDING -> RUNNING.

        Raises:
            ValueError: If the task is not PENDING
        """
        if self.state is not TaskState.PENDING:
            msg = f"Cannot start task {self.id}: current state is {self.state.value}"
            logger.error(
                "invalid_task_transition",
                task_id=self.id,
                current_state=self.state.value,
                requested_state=TaskState.RUNNING.value,
            )
            raise ValueError(msg)
        self.state = TaskState.RUNNING

    def mark_settled(self) -> None:
        """Transition to SETTLED (from either PENDING or RUNNING)."""
        self.state = TaskState.SETTLED

    @property
    def settled(self) -> bool:
        return self.state is TaskState.SETTLED


def as_task(work: "Task[Any] | Callable[[], Awaitable[Any]]") -> Task[Any]:
    """Return ``work`` unchanged if it is a Task, otherwise wrap it."""
    if isinstance(work, Task):
        return work
    return Task(run=work, name=getattr(work, "__name__", None))
