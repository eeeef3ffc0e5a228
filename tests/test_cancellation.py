"""Unit tests for cooperative cancellation tokens."""

import asyncio
from unittest.mock import Mock

import pytest

from taskweave.cancellation import (
    CancellationSource,
    cancellable_sleep,
    create_cancellation_token,
    linked_token,
    with_timeout,
)
from taskweave.errors import CancellationError, TaskTimeoutError, TransientError


class TestCancellationToken:
    """Tests for token state and listeners."""

    def test_new_token_is_not_aborted(self):
        """Test that a fresh token is not aborted."""
        token, _ = create_cancellation_token()

        assert token.aborted is False
        assert token.reason is None
        token.raise_if_aborted()

    def test_abort_sets_flag_and_reason(self):
        """Test that abort marks the token and records the reason."""
        token, abort = create_cancellation_token()

        abort("user left")

        assert token.aborted is True
        assert token.reason == "user left"
        with pytest.raises(CancellationError, match="user left"):
            token.raise_if_aborted()

    def test_abort_is_idempotent(self):
        """Test that a second abort neither fails nor re-notifies listeners."""
        token, abort = create_cancellation_token()
        listener = Mock()
        token.on_abort(listener)

        abort("first")
        abort("second")

        listener.assert_called_once_with()
        assert token.reason == "first"

    def test_listener_registered_after_abort_runs_immediately(self):
        """Test that late listeners still observe the abort."""
        token, abort = create_cancellation_token()
        abort()
        listener = Mock()

        token.on_abort(listener)

        listener.assert_called_once_with()

    def test_unsubscribe_removes_listener(self):
        """Test that an unsubscribed listener is not called."""
        token, abort = create_cancellation_token()
        listener = Mock()
        unsubscribe = token.on_abort(listener)

        unsubscribe()
        abort()

        listener.assert_not_called()

    def test_failing_listener_does_not_block_others(self):
        """Test that every listener is notified even if one raises."""
        token, abort = create_cancellation_token()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        token.on_abort(broken)
        token.on_abort(healthy)

        abort()

        healthy.assert_called_once_with()

    def test_handle_unpacks_to_token_and_abort(self):
        """Test that the handle exposes named fields too."""
        handle = create_cancellation_token()

        handle.abort()

        assert handle.token.aborted is True


class TestCancellationSource:
    """Tests for the owner side of a token."""

    @pytest.mark.asyncio
    async def test_abort_after_fires_on_schedule(self):
        """Test that abort_after aborts the token once the delay elapses."""
        source = CancellationSource()

        source.abort_after(0.02)
        assert source.aborted is False
        await asyncio.sleep(0.05)

        assert source.token.aborted is True
        assert source.token.reason == "deadline exceeded"

    @pytest.mark.asyncio
    async def test_wait_returns_after_abort(self):
        """Test that wait() resumes once the token aborts."""
        source = CancellationSource()
        asyncio.get_running_loop().call_later(0.01, source.abort)

        await asyncio.wait_for(source.token.wait(), timeout=1.0)

        assert source.aborted is True

    def test_linked_token_follows_any_parent(self):
        """Test that a linked token aborts with either parent."""
        first, abort_first = create_cancellation_token()
        second, _ = create_cancellation_token()

        linked, _ = linked_token(first, None, second)
        abort_first("parent gone")

        assert linked.aborted is True
        assert linked.reason == "parent gone"

    def test_unlink_detaches_from_parents(self):
        """Test that an unlinked token no longer follows its parents."""
        parent, abort_parent = create_cancellation_token()

        linked, unlink = linked_token(parent)
        unlink()
        abort_parent("too late")

        assert linked.aborted is False
        assert parent._listeners == []  # noqa: SLF001

    def test_linked_abort_releases_other_parents(self):
        """Test that once one parent aborts the others keep no listener."""
        first, abort_first = create_cancellation_token()
        second, _ = create_cancellation_token()

        linked_token(first, second)
        abort_first()

        assert second._listeners == []  # noqa: SLF001

    def test_already_aborted_parent_aborts_linked_token(self):
        """Test that linking to an aborted token yields an aborted token."""
        parent, abort_parent = create_cancellation_token()
        other, _ = create_cancellation_token()
        abort_parent("expired")

        linked, _ = linked_token(parent, other)

        assert linked.aborted is True
        assert linked.reason == "expired"
        assert other._listeners == []  # noqa: SLF001


class TestCancellableSleep:
    """Tests for sleeping with a token."""

    @pytest.mark.asyncio
    async def test_sleep_completes_without_abort(self):
        """Test that the sleep finishes normally when nothing aborts."""
        token, _ = create_cancellation_token()

        await cancellable_sleep(0.01, token)

    @pytest.mark.asyncio
    async def test_abort_interrupts_sleep(self):
        """Test that aborting wakes the sleeper with CancellationError."""
        token, abort = create_cancellation_token()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, abort, "stop")
        start = loop.time()

        with pytest.raises(CancellationError):
            await cancellable_sleep(5.0, token)

        assert loop.time() - start < 1.0

    @pytest.mark.asyncio
    async def test_sleep_with_aborted_token_fails_fast(self):
        """Test that an already aborted token raises before sleeping."""
        token, abort = create_cancellation_token()
        abort()

        with pytest.raises(CancellationError):
            await cancellable_sleep(5.0, token)


class TestWithTimeout:
    """Tests for per-call deadlines."""

    @pytest.mark.asyncio
    async def test_fast_call_passes_through(self):
        """Test that a call within the deadline returns its value."""

        async def quick() -> str:
            return "done"

        assert await with_timeout(quick, 1.0)() == "done"

    @pytest.mark.asyncio
    async def test_slow_call_raises_transient_timeout(self):
        """Test that an expired deadline raises TaskTimeoutError."""

        async def slow() -> None:
            await asyncio.sleep(1.0)

        with pytest.raises(TaskTimeoutError) as exc_info:
            await with_timeout(slow, 0.01)()

        assert isinstance(exc_info.value, TransientError)
        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout_seconds == 0.01

    @pytest.mark.asyncio
    async def test_timeout_raised_by_work_is_not_converted(self):
        """Test that the work's own TimeoutError passes through unchanged."""

        async def failing() -> None:
            msg = "upstream timed out"
            raise TimeoutError(msg)

        with pytest.raises(TimeoutError, match="upstream timed out") as exc_info:
            await with_timeout(failing, 1.0)()

        assert not isinstance(exc_info.value, TaskTimeoutError)
