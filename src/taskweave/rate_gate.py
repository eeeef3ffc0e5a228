"""Debounce and throttle gates for async callables.

The two modes are separate contracts:

* ``Debouncer`` waits for ``delay_seconds`` of silence and then runs the
  wrapped function once with the arguments of the last call.
* ``Throttler`` runs the wrapped function at most once per
  ``interval_seconds``, optionally on the leading and/or trailing edge.

Both return a future from every call, so ``await gate(...)`` works, and the
timer starts (or restarts) when the call is made, not when it is awaited.
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from taskweave.cancellation import CancellationToken
from taskweave.errors import CancellationError, SupersededError
from taskweave.future import Deferred, reject_all, settle_all
from taskweave.log_config import get_logger

logger = get_logger(__name__)

# Strong references to running invocations; the event loop only keeps weak ones.
_background_tasks: set[asyncio.Task] = set()


class SupersedePolicy(Enum):
    """What happens to debounce callers replaced by a newer call.

    Attributes:
        RESOLVE_TOGETHER: Every caller in the window shares the final result
        REJECT_SUPERSEDED: Earlier callers reject with SupersededError
    """

    RESOLVE_TOGETHER = "resolve_together"
    REJECT_SUPERSEDED = "reject_superseded"


def _spawn(
    func: Callable[..., Awaitable[Any]],
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
    waiters: list[Deferred],
) -> asyncio.Task:
    """Start ``func`` and settle ``waiters`` with its outcome."""
    task = asyncio.ensure_future(func(*args, **kwargs))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(lambda done: settle_all(waiters, done))
    return task


class Debouncer:
    """Trailing-edge debounce around an async function.

    Example:
        >>> search = debounce(run_search, 0.3)
        >>> results = await search("py")   # only the last keystroke runs

    Attributes:
        delay_seconds: Silence required before the call runs
        supersede: SupersedePolicy for callers replaced by a newer call
        invocations: How many times the wrapped function has run
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        delay_seconds: float,
        *,
        supersede: SupersedePolicy = SupersedePolicy.RESOLVE_TOGETHER,
        token: CancellationToken | None = None,
    ):
        if delay_seconds < 0:
            msg = "delay_seconds must be non-negative"
            raise ValueError(msg)

        self._func = func
        self.delay_seconds = delay_seconds
        self.supersede = supersede
        self._token = token
        self._timer: asyncio.TimerHandle | None = None
        self._waiters: list[Deferred] = []
        self._args: tuple[Any, ...] = ()
        self._kwargs: dict[str, Any] = {}
        self.invocations = 0
        functools.update_wrapper(self, func, updated=())

        if token is not None:
            token.on_abort(self.cancel)

    @property
    def pending(self) -> int:
        """Number of callers waiting for the next execution."""
        return len(self._waiters)

    def __call__(self, *args: Any, **kwargs: Any) -> asyncio.Future:
        deferred: Deferred = Deferred()
        if self._token is not None and self._token.aborted:
            deferred.reject(CancellationError(self._token.reason))
            return deferred.future

        if self._timer is not None:
            self._timer.cancel()

        if self.supersede is SupersedePolicy.REJECT_SUPERSEDED and self._waiters:
            reject_all(self._waiters, SupersededError("superseded by a newer call"))
            self._waiters = []

        self._args, self._kwargs = args, kwargs
        self._waiters.append(deferred)
        self._timer = asyncio.get_running_loop().call_later(self.delay_seconds, self._fire)

        logger.debug("debounce_call_deferred", pending=len(self._waiters), delay_seconds=self.delay_seconds)
        return deferred.future

    def _fire(self) -> None:
        self._timer = None
        waiters, self._waiters = self._waiters, []
        args, kwargs = self._args, self._kwargs
        self._args, self._kwargs = (), {}

        if self._token is not None and self._token.aborted:
            reject_all(waiters, CancellationError(self._token.reason))
            return

        self.invocations += 1
        logger.debug("debounce_fired", coalesced_calls=len(waiters))
        _spawn(self._func, args, kwargs, waiters)

    def flush(self) -> None:
        """Run the pending call now instead of waiting for the timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire()

    def cancel(self) -> None:
        """Drop the pending call; its callers reject with CancellationError."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._waiters:
            reason = self._token.reason if self._token is not None else None
            reject_all(self._waiters, CancellationError(reason or "debounce cancelled"))
            logger.debug("debounce_cancelled", dropped_calls=len(self._waiters))
            self._waiters = []


class Throttler:
    """Run an async function at most once per interval.

    With ``leading`` a call made after the interval has elapsed runs
    immediately. With ``trailing`` calls made mid-interval are coalesced into
    one run at the next boundary, using the latest arguments. A mid-interval
    call with ``trailing=False`` receives the result of the most recent run.

    Attributes:
        interval_seconds: Minimum spacing between runs
        leading: Run on the leading edge
        trailing: Run on the trailing edge
        invocations: How many times the wrapped function has run
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        interval_seconds: float,
        *,
        leading: bool = True,
        trailing: bool = True,
        token: CancellationToken | None = None,
    ):
        if interval_seconds < 0:
            msg = "interval_seconds must be non-negative"
            raise ValueError(msg)
        if not leading and not trailing:
            msg = "at least one of leading or trailing must be enabled"
            raise ValueError(msg)

        self._func = func
        self.interval_seconds = interval_seconds
        self.leading = leading
        self.trailing = trailing
        self._token = token
        self._last_run_at: float | None = None
        self._last_run: asyncio.Future | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._waiters: list[Deferred] = []
        self._args: tuple[Any, ...] = ()
        self._kwargs: dict[str, Any] = {}
        self.invocations = 0
        functools.update_wrapper(self, func, updated=())

        if token is not None:
            token.on_abort(self.cancel)

    def __call__(self, *args: Any, **kwargs: Any) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        deferred: Deferred = Deferred()

        if self._token is not None and self._token.aborted:
            deferred.reject(CancellationError(self._token.reason))
            return deferred.future

        now = loop.time()
        elapsed = None if self._last_run_at is None else now - self._last_run_at
        interval_open = elapsed is None or elapsed >= self.interval_seconds

        if self.leading and interval_open and self._timer is None:
            self._run(now, args, kwargs, [deferred])
            return deferred.future

        if self.trailing:
            self._args, self._kwargs = args, kwargs
            self._waiters.append(deferred)
            if self._timer is None:
                wait = self.interval_seconds if elapsed is None else max(0.0, self.interval_seconds - elapsed)
                self._timer = loop.call_later(wait, self._fire_trailing)
            logger.debug("throttle_call_coalesced", pending=len(self._waiters))
            return deferred.future

        # leading only, mid-interval: share the most recent run
        logger.debug("throttle_call_dropped")
        if self._last_run.done():
            deferred.settle_from(self._last_run)
        else:
            self._last_run.add_done_callback(deferred.settle_from)
        return deferred.future

    def _run(
        self,
        now: float,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        waiters: list[Deferred],
    ) -> None:
        self._last_run_at = now
        self.invocations += 1
        self._last_run = _spawn(self._func, args, kwargs, waiters)

    def _fire_trailing(self) -> None:
        self._timer = None
        waiters, self._waiters = self._waiters, []
        args, kwargs = self._args, self._kwargs
        self._args, self._kwargs = (), {}
        if not waiters:
            return
        if self._token is not None and self._token.aborted:
            reject_all(waiters, CancellationError(self._token.reason))
            return
        logger.debug("throttle_trailing_fired", coalesced_calls=len(waiters))
        self._run(asyncio.get_running_loop().time(), args, kwargs, waiters)

    def cancel(self) -> None:
        """Drop the scheduled trailing run; its callers reject with CancellationError."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._waiters:
            reason = self._token.reason if self._token is not None else None
            reject_all(self._waiters, CancellationError(reason or "throttle cancelled"))
            self._waiters = []


def debounce(
    func: Callable[..., Awaitable[Any]],
    delay_seconds: float,
    *,
    supersede: SupersedePolicy = SupersedePolicy.RESOLVE_TOGETHER,
    token: CancellationToken | None = None,
) -> Debouncer:
    """Wrap ``func`` so it only runs after ``delay_seconds`` of silence."""
    return Debouncer(func, delay_seconds, supersede=supersede, token=token)


def throttle(
    func: Callable[..., Awaitable[Any]],
    interval_seconds: float,
    *,
    leading: bool = True,
    trailing: bool = True,
    token: CancellationToken | None = None,
) -> Throttler:
    """Wrap ``func`` so it runs at most once per ``interval_seconds``."""
    return Throttler(func, interval_seconds, leading=leading, trailing=trailing, token=token)
