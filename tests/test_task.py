"""Unit tests for task records and deferred futures."""

import asyncio

import pytest

from taskweave.future import Deferred
from taskweave.task import Task, TaskState, as_task


async def noop():
    return None


class TestTask:
    """Tests for the task lifecycle."""

    def test_generated_ids_are_unique(self):
        """Test that tasks without an explicit id get distinct ids."""
        first = Task(run=noop)
        second = Task(run=noop)

        assert first.id != second.id
        assert first.id.startswith("task-")

    def test_lifecycle_moves_forward(self):
        """Test PENDING -> RUNNING -> SETTLED."""
        task = Task(run=noop, id="report")
        assert task.state is TaskState.PENDING

        task.mark_running()
        assert task.state is TaskState.RUNNING

        task.mark_settled()
        assert task.settled is True

    def test_cannot_start_twice(self):
        """Test that a task can only be started from PENDING."""
        task = Task(run=noop, id="report")
        task.mark_running()

        with pytest.raises(ValueError, match="Cannot start task report"):
            task.mark_running()

    def test_as_task_wraps_callables(self):
        """Test that plain callables are wrapped and tasks pass through."""
        task = Task(run=noop)

        assert as_task(task) is task
        wrapped = as_task(noop)
        assert wrapped.run is noop
        assert wrapped.name == "noop"
        assert wrapped.cancellable is True


class TestDeferred:
    """Tests for the explicit future handle."""

    @pytest.mark.asyncio
    async def test_resolve_once(self):
        """Test that only the first settlement wins."""
        deferred: Deferred = Deferred()

        assert deferred.resolve(1) is True
        assert deferred.resolve(2) is False
        assert deferred.reject(RuntimeError("late")) is False
        assert await deferred.future == 1

    @pytest.mark.asyncio
    async def test_reject(self):
        """Test that reject delivers the error to awaiters."""
        deferred: Deferred = Deferred()
        deferred.reject(RuntimeError("failed"))

        assert deferred.settled is True
        with pytest.raises(RuntimeError, match="failed"):
            await deferred.future

    @pytest.mark.asyncio
    async def test_settle_from_copies_outcome(self):
        """Test copying the outcome of another future."""
        source = asyncio.get_running_loop().create_future()
        source.set_result("copied")
        deferred: Deferred = Deferred()

        deferred.settle_from(source)

        assert await deferred.future == "copied"

    @pytest.mark.asyncio
    async def test_settle_from_cancelled_source(self):
        """Test that a cancelled source cancels the deferred future too."""
        source = asyncio.get_running_loop().create_future()
        source.cancel()
        deferred: Deferred = Deferred()

        assert deferred.settle_from(source) is True

        assert deferred.future.cancelled()
        with pytest.raises(asyncio.CancelledError):
            await deferred.future
