"""Cooperative cancellation tokens.

A ``CancellationSource`` is owned by the code that issues work and is the
only thing able to abort. Its ``token`` is handed (read-only) to every
wrapper in a call chain. Wrappers check the token at their suspension
points; running work is never interrupted, it has to observe the token
itself.

Example:
    >>> token, abort = create_cancellation_token()
    >>> future = pool.submit(task, token)
    >>> abort("user navigated away")  # queued task never starts
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import NamedTuple, ParamSpec, TypeVar


P = ParamSpec("P")
T = TypeVar("T")

from taskweave.errors import CancellationError, TaskTimeoutError
from taskweave.log_config import get_logger

logger = get_logger(__name__)

AbortListener = Callable[[], None]


class CancellationToken:
    """Read-only view of an abort signal.

    Attributes:
        aborted: Whether abort has been requested
        reason: Reason passed to ``abort()`` (None until aborted)
    """

    __slots__ = ("_aborted", "_listeners", "_reason")

    def __init__(self) -> None:
        self._aborted = False
        self._reason: str | None = None
        self._listeners: list[AbortListener] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def on_abort(self, callback: AbortListener) -> Callable[[], None]:
        """Register a listener called once when the token aborts.

        A listener registered after abort runs immediately.

        Args:
            callback: Zero-argument callable

        Returns:
            Function that removes the listener (no-op once it has fired)
        """
        if self._aborted:
            callback()
            return lambda: None

        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def raise_if_aborted(self) -> None:
        """Raise CancellationError if abort has been requested."""
        if self._aborted:
            raise CancellationError(self._reason)

    async def wait(self) -> None:
        """Suspend until the token aborts."""
        if self._aborted:
            return
        waiter = asyncio.get_running_loop().create_future()
        unsubscribe = self.on_abort(lambda: waiter.done() or waiter.set_result(None))
        try:
            await waiter
        finally:
            unsubscribe()

    def _abort(self, reason: str | None) -> bool:
        if self._aborted:
            return False
        self._aborted = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                # One broken listener must not stop the others from
                # observing the abort.
                logger.exception("abort_listener_failed", reason=reason)
        return True

    def __repr__(self) -> str:
        return f"CancellationToken(aborted={self._aborted}, reason={self._reason!r})"


class CancellationSource:
    """Owner side of a cancellation token.

    Attributes:
        token: The token to share with wrappers and tasks
    """

    __slots__ = ("_timer", "token")

    def __init__(self) -> None:
        self.token = CancellationToken()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def aborted(self) -> bool:
        return self.token.aborted

    def abort(self, reason: str | None = None) -> None:
        """Abort the token. Calling it again has no further effect."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.token._abort(reason):  # noqa: SLF001
            logger.debug("cancellation_requested", reason=reason)

    def abort_after(self, delay_seconds: float, reason: str = "deadline exceeded") -> None:
        """Schedule an abort on the running loop after ``delay_seconds``."""
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(delay_seconds, self.abort, reason)


class CancellationHandle(NamedTuple):
    """Pair returned by ``create_cancellation_token``."""

    token: CancellationToken
    abort: Callable[..., None]


def create_cancellation_token() -> CancellationHandle:
    """Create a token together with the function that aborts it.

    Example:
        >>> token, abort = create_cancellation_token()
        >>> abort()
        >>> abort()  # idempotent
        >>> token.aborted
        True
    """
    source = CancellationSource()
    return CancellationHandle(source.token, source.abort)


class LinkedToken(NamedTuple):
    """Pair returned by ``linked_token``."""

    token: CancellationToken
    unlink: Callable[[], None]


def linked_token(*tokens: CancellationToken | None) -> LinkedToken:
    """Create a token that aborts when any of ``tokens`` aborts.

    The linked token keeps a listener on every parent until it aborts or
    ``unlink`` is called. Call ``unlink`` once the linked token is no longer
    needed so long-lived parents do not accumulate listeners.

    Example:
        >>> batch_token, unlink = linked_token(request_token, deadline.token)
        >>> try:
        ...     await pool.submit(task, batch_token)
        ... finally:
        ...     unlink()
    """
    source = CancellationSource()
    unsubscribers: list[Callable[[], None]] = []

    def unlink() -> None:
        while unsubscribers:
            unsubscribers.pop()()

    for token in tokens:
        if token is None:
            continue
        unsubscribers.append(token.on_abort(lambda t=token: source.abort(t.reason)))
    source.token.on_abort(unlink)
    return LinkedToken(source.token, unlink)


async def cancellable_sleep(delay_seconds: float, token: CancellationToken | None = None) -> None:
    """Sleep for ``delay_seconds`` unless the token aborts first.

    Raises:
        CancellationError: If the token is aborted before or during the wait
    """
    if token is None:
        await asyncio.sleep(delay_seconds)
        return

    token.raise_if_aborted()
    loop = asyncio.get_running_loop()
    waiter = loop.create_future()

    def _wake() -> None:
        if not waiter.done():
            waiter.set_result(None)

    def _cancel() -> None:
        if not waiter.done():
            waiter.set_exception(CancellationError(token.reason))

    handle = loop.call_later(delay_seconds, _wake)
    unsubscribe = token.on_abort(_cancel)
    try:
        await waiter
    finally:
        handle.cancel()
        unsubscribe()


def with_timeout(
    func: Callable[P, Awaitable[T]],
    timeout_seconds: float,
) -> Callable[P, Awaitable[T]]:
    """Wrap ``func`` with a per-call deadline.

    Raises:
        TaskTimeoutError: If a call does not finish within ``timeout_seconds``
            (a TransientError, so retry policies retry it)
    """

    @functools.wraps(func)
    async def timed(*args: P.args, **kwargs: P.kwargs) -> T:
        deadline = asyncio.timeout(timeout_seconds)
        try:
            async with deadline:
                return await func(*args, **kwargs)
        except TimeoutError as e:
            # Only our own deadline is converted; a TimeoutError raised by
            # the wrapped call itself passes through unchanged.
            if not deadline.expired():
                raise
            logger.warning("call_timed_out", timeout_seconds=timeout_seconds)
            raise TaskTimeoutError(timeout_seconds) from e

    return timed
