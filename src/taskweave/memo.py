"""Memoization with single-flight deduplication and TTL.

Concurrent calls with the same key share one in-flight invocation; a
successful result is then served from the cache until its TTL expires.
Failures are evicted immediately unless ``cache_errors`` is enabled.
"""

import asyncio
import functools
import json
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any

from taskweave.errors import CancellationError
from taskweave.future import Deferred
from taskweave.log_config import get_logger

logger = get_logger(__name__)

KeyFn = Callable[..., Hashable]


def stable_key(*args: Any, **kwargs: Any) -> str:
    """Default key: JSON of the positional and (sorted) keyword arguments.

    Values JSON can't encode fall back to ``repr``.

    Example:
        >>> stable_key("ACME", currency="USD") == stable_key("ACME", currency="USD")
        True
    """
    return json.dumps([list(args), kwargs], sort_keys=True, default=repr, separators=(",", ":"))


@dataclass
class CacheEntry:
    """One cached result (or in-flight call) for a key.

    Attributes:
        key: Cache key
        value: Result of the last successful call
        error: Cached error (only with cache_errors=True)
        created_at: Clock reading when the entry last settled
        ttl_seconds: Lifetime after settlement (None means no expiry)
        in_flight: Future shared by callers while a call is outstanding
    """

    key: Hashable
    created_at: float
    ttl_seconds: float | None
    value: Any = None
    error: BaseException | None = None
    has_value: bool = False
    in_flight: asyncio.Future | None = None

    def is_expired(self, now: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return now - self.created_at >= self.ttl_seconds


class MemoCache:
    """Single-flight, TTL-bounded memoization of an async function.

    Example:
        >>> get_quote = memoize(fetch_quote, ttl_seconds=5.0)
        >>> a, b = await asyncio.gather(get_quote("ACME"), get_quote("ACME"))
        >>> # fetch_quote ran once

    Attributes:
        ttl_seconds: Lifetime of a successful result
        cache_errors: Cache failures too, instead of evicting them
        stale_while_revalidate: Serve an expired value while one background
            refresh runs
        max_entries: LRU bound on the number of keys (None is unbounded)
        invocations: How many times the wrapped function has run
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        *,
        ttl_seconds: float | None = None,
        key_fn: KeyFn | None = None,
        cache_errors: bool = False,
        stale_while_revalidate: bool = False,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds is not None and ttl_seconds < 0:
            msg = "ttl_seconds must be non-negative"
            raise ValueError(msg)
        if max_entries is not None and max_entries < 1:
            msg = "max_entries must be at least 1"
            raise ValueError(msg)

        self._func = func
        self.ttl_seconds = ttl_seconds
        self.key_fn = key_fn or stable_key
        self.cache_errors = cache_errors
        self.stale_while_revalidate = stale_while_revalidate
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Hashable, CacheEntry] = OrderedDict()
        self._refreshes: set[asyncio.Task] = set()

        self.invocations = 0
        self.hits = 0
        self.misses = 0
        self.deduplicated = 0
        functools.update_wrapper(self, func, updated=())

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        key = self.key_fn(*args, **kwargs)
        entry = self._entries.get(key)
        now = self._clock()

        if entry is not None and entry.in_flight is not None:
            if entry.has_value:
                # background refresh of a stale entry
                self.hits += 1
                return entry.value
            self.deduplicated += 1
            logger.debug("memo_call_joined", key=str(key))
            return await asyncio.shield(entry.in_flight)

        if entry is not None:
            if not entry.is_expired(now):
                self.hits += 1
                self._entries.move_to_end(key)
                if entry.error is not None:
                    raise entry.error.with_traceback(None)
                return entry.value

            if self.stale_while_revalidate and entry.has_value:
                self.hits += 1
                logger.debug("memo_serving_stale", key=str(key))
                self._start_refresh(entry, args, kwargs)
                return entry.value

            self._evict(key)

        self.misses += 1
        entry = CacheEntry(key=key, created_at=now, ttl_seconds=self.ttl_seconds)
        self._store(entry)
        return await self._invoke(entry, self._claim(entry), args, kwargs)

    def _claim(self, entry: CacheEntry) -> Deferred:
        """Mark ``entry`` in flight before anything can await."""
        deferred: Deferred = Deferred()
        entry.in_flight = deferred.future
        self.invocations += 1
        return deferred

    async def _invoke(
        self,
        entry: CacheEntry,
        deferred: Deferred,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        try:
            value = await self._func(*args, **kwargs)
        except asyncio.CancelledError:
            # The owning caller went away; joined callers must not hang.
            self._discard(entry)
            deferred.reject(CancellationError("memoized call cancelled"))
            raise
        except Exception as e:
            if self.cache_errors:
                entry.error = e
                entry.value, entry.has_value = None, False
                entry.created_at = self._clock()
            else:
                self._discard(entry)
                logger.debug("memo_error_evicted", key=str(entry.key), error_type=type(e).__name__)
            deferred.reject(e)
            raise
        else:
            entry.value = value
            entry.error = None
            entry.has_value = True
            entry.created_at = self._clock()
            deferred.resolve(value)
            return value
        finally:
            entry.in_flight = None

    def _start_refresh(self, entry: CacheEntry, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        deferred = self._claim(entry)

        async def refresh() -> None:
            try:
                await self._invoke(entry, deferred, args, kwargs)
            except Exception as e:
                logger.warning("memo_refresh_failed", key=str(entry.key), error=str(e))

        task = asyncio.ensure_future(refresh())
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    def _store(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            oldest_key, oldest = next(iter(self._entries.items()))
            if oldest.in_flight is not None:
                # never evict a call other callers are joined to
                break
            self._evict(oldest_key)

    def _discard(self, entry: CacheEntry) -> None:
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]

    def _evict(self, key: Hashable) -> None:
        self._entries.pop(key, None)
        logger.debug("memo_entry_evicted", key=str(key))

    def invalidate(self, *args: Any, **kwargs: Any) -> bool:
        """Drop the settled entry for these arguments. Returns True if one existed."""
        key = self.key_fn(*args, **kwargs)
        entry = self._entries.get(key)
        if entry is None or entry.in_flight is not None:
            return False
        self._evict(key)
        return True

    def clear(self) -> None:
        """Drop every settled entry; in-flight calls are left alone."""
        for key in [k for k, e in self._entries.items() if e.in_flight is None]:
            del self._entries[key]

    def entry(self, *args: Any, **kwargs: Any) -> CacheEntry | None:
        """Inspect the entry for these arguments."""
        return self._entries.get(self.key_fn(*args, **kwargs))

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "invocations": self.invocations,
            "hits": self.hits,
            "misses": self.misses,
            "deduplicated": self.deduplicated,
        }


def memoize(
    func: Callable[..., Awaitable[Any]],
    *,
    ttl_seconds: float | None = None,
    key_fn: KeyFn | None = None,
    cache_errors: bool = False,
    **options: Any,
) -> MemoCache:
    """Wrap ``func`` with single-flight memoization.

    Args:
        func: Async function to memoize
        ttl_seconds: How long a successful result is served (None: forever)
        key_fn: Builds the cache key from the call arguments
        cache_errors: Replay failures until TTL instead of evicting them
        **options: ``stale_while_revalidate``, ``max_entries``, ``clock``
    """
    return MemoCache(func, ttl_seconds=ttl_seconds, key_fn=key_fn, cache_errors=cache_errors, **options)
