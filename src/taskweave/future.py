"""Explicit future handle with first-class resolve/reject.

Components that hand a future back to callers (the pool, the rate gates,
the memo cache) create it through ``Deferred`` instead of capturing
``set_result``/``set_exception`` in closures.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar


T = TypeVar("T")


def _mark_retrieved(future: asyncio.Future) -> None:
    # Keeps asyncio from warning about errors delivered to futures that
    # nobody awaited (e.g. a debounce caller that dropped its handle).
    if not future.cancelled():
        future.exception()


@dataclass(slots=True)
class Deferred(Generic[T]):
    """A pending result that is settled exactly once.

    Attributes:
        future: The underlying asyncio future handed to callers
    """

    future: asyncio.Future[T] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
    )

    def __post_init__(self) -> None:
        self.future.add_done_callback(_mark_retrieved)

    @property
    def settled(self) -> bool:
        """Whether the future already has a result, an error or was cancelled."""
        return self.future.done()

    def resolve(self, value: T) -> bool:
        """Settle with a value. Returns False if already settled."""
        if self.future.done():
            return False
        self.future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        """Settle with an error. Returns False if already settled."""
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True

    def settle_from(self, source: asyncio.Future[Any]) -> bool:
        """Copy the outcome of a finished future (cancellation included)."""
        if source.cancelled():
            return self.future.cancel()
        error = source.exception()
        if error is not None:
            return self.reject(error)
        return self.resolve(source.result())


def settle_all(waiters: list[Deferred], source: asyncio.Future[Any]) -> None:
    """Settle every waiter with the outcome of ``source``."""
    for waiter in waiters:
        waiter.settle_from(source)


def reject_all(waiters: list[Deferred], error: BaseException) -> None:
    """Reject every waiter with the same error."""
    for waiter in waiters:
        waiter.reject(error)
