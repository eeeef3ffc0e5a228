"""Unit and integration tests for composition and the TaskOrchestrator class.

Tests cover wrapper ordering, batch execution through the shared pool,
structured outcomes, and early termination on critical failures.
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from taskweave.breaker import BreakerRegistry, BreakerState, CircuitBreaker
from taskweave.cancellation import create_cancellation_token
from taskweave.config import OrchestrationConfig
from taskweave.errors import (
    CancellationError,
    CapacityExceededError,
    CircuitOpenError,
    OrchestrationError,
    RetryExhaustedError,
    TransientError,
)
from taskweave.orchestrator import OutcomeStatus, TaskOrchestrator, compose
from taskweave.pool import ConcurrencyPool
from taskweave.retry import RetryPolicy


def fast_retry(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0.001, jitter=False)


@pytest.fixture
def orchestrator() -> TaskOrchestrator:
    """Create an orchestrator with a small pool and its own breaker registry."""
    return TaskOrchestrator(
        ConcurrencyPool(max_concurrency=2),
        retry_policy=fast_retry(),
        breakers=BreakerRegistry(),
    )


class TestCompose:
    """Tests for stacking wrappers."""

    @pytest.mark.asyncio
    async def test_retry_sequence_counts_as_one_breaker_failure(self):
        """Test that retry sits inside the breaker."""
        work = AsyncMock(side_effect=TransientError("down"))
        breaker = CircuitBreaker("inventory", failure_threshold=2)
        guarded = compose(work, retry=fast_retry(3), breaker=breaker)

        with pytest.raises(RetryExhaustedError):
            await guarded()

        assert work.call_count == 3
        assert breaker.circuit.failure_count == 1
        assert breaker.state is BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits_retry(self):
        """Test that an open breaker rejects before any attempt."""
        work = AsyncMock(side_effect=TransientError("down"))
        breaker = CircuitBreaker("inventory", failure_threshold=1, reset_timeout_seconds=60.0)
        guarded = compose(work, retry=fast_retry(2), breaker=breaker)

        with pytest.raises(RetryExhaustedError):
            await guarded()
        with pytest.raises(CircuitOpenError):
            await guarded()

        assert work.call_count == 2

    @pytest.mark.asyncio
    async def test_memo_deduplicates_guarded_calls(self):
        """Test that memoization wraps the retried, guarded call."""
        release = asyncio.Event()
        calls = 0

        async def fetch(symbol):
            nonlocal calls
            calls += 1
            await release.wait()
            return symbol

        guarded = compose(fetch, retry=fast_retry(), memo={"ttl_seconds": 60.0})

        pending = [asyncio.ensure_future(guarded("ACME")) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(*pending) == ["ACME"] * 5
        assert calls == 1

    @pytest.mark.asyncio
    async def test_debounce_is_outermost(self):
        """Test that a debounced composition runs once per burst."""
        work = AsyncMock(return_value="saved")
        guarded = compose(work, retry=fast_retry(), debounce_seconds=0.02)

        results = await asyncio.gather(guarded(1), guarded(2), guarded(3))

        assert results == ["saved"] * 3
        work.assert_called_once_with(3)

    @pytest.mark.asyncio
    async def test_throttle_composition(self):
        """Test that a throttled composition runs the leading call immediately."""
        work = AsyncMock(return_value="ok")
        guarded = compose(work, throttle_seconds=1.0)

        assert await asyncio.wait_for(guarded(), timeout=0.5) == "ok"

    def test_debounce_and_throttle_are_exclusive(self):
        """Test that choosing both gates raises ValueError."""
        with pytest.raises(ValueError, match="either debounce_seconds or throttle_seconds"):
            compose(AsyncMock(), debounce_seconds=0.1, throttle_seconds=0.1)


class TestTaskOrchestratorInit:
    """Tests for TaskOrchestrator construction."""

    def test_from_config(self):
        """Test that configuration drives the pool and retry policy."""
        config = OrchestrationConfig.from_dict(
            {
                "pool": {"max_concurrency": 3},
                "retry": {"max_attempts": 4, "base_delay_seconds": 0.2, "max_delay_seconds": 1.0},
                "breaker": {"failure_threshold": 2},
            },
        )

        orchestrator = TaskOrchestrator.from_config(config, breakers=BreakerRegistry())

        assert orchestrator.pool.max_concurrency == 3
        assert orchestrator.retry_policy.max_attempts == 4
        assert orchestrator.breaker("inventory").circuit.failure_threshold == 2

    def test_from_config_can_configure_logging(self):
        """Test that from_config applies the logging settings on request."""
        config = OrchestrationConfig(logging_level="ERROR", json_logs=True)

        TaskOrchestrator.from_config(config, breakers=BreakerRegistry(), configure_logging=True)

        assert logging.getLogger().level == logging.ERROR

    def test_from_config_leaves_logging_alone_by_default(self):
        """Test that host applications keep control of logging by default."""
        root = logging.getLogger()
        previous = root.level
        root.setLevel(logging.CRITICAL)
        try:
            TaskOrchestrator.from_config(OrchestrationConfig(logging_level="DEBUG"), breakers=BreakerRegistry())

            assert root.level == logging.CRITICAL
        finally:
            root.setLevel(previous)

    def test_breakers_are_shared_by_name(self, orchestrator: TaskOrchestrator):
        """Test that guard reuses the breaker registered under a name."""
        orchestrator.guard(AsyncMock(), name="inventory")
        orchestrator.guard(AsyncMock(), name="inventory")

        assert orchestrator.breakers.names() == ["inventory"]


class TestGuard:
    """Tests for guarded callables."""

    @pytest.mark.asyncio
    async def test_guard_retries_transient_failures(self, orchestrator: TaskOrchestrator):
        """Test that guarded calls use the orchestrator's retry policy."""
        work = AsyncMock(side_effect=[TransientError("blip"), "ok"])
        guarded = orchestrator.guard(work, name="inventory")

        assert await guarded() == "ok"
        assert work.call_count == 2

    @pytest.mark.asyncio
    async def test_guard_without_retry(self, orchestrator: TaskOrchestrator):
        """Test that retry=False passes the first failure through."""
        work = AsyncMock(side_effect=TransientError("blip"))
        guarded = orchestrator.guard(work, retry=False)

        with pytest.raises(TransientError):
            await guarded()
        assert work.call_count == 1

    @pytest.mark.asyncio
    async def test_guard_with_memoize(self, orchestrator: TaskOrchestrator):
        """Test that memoize=True caches results."""
        work = AsyncMock(return_value={"sku": "A1"})
        guarded = orchestrator.guard(work, memoize=True)

        await guarded("A1")
        await guarded("A1")

        assert work.call_count == 1


class TestRunAll:
    """Tests for batch execution."""

    @pytest.mark.asyncio
    async def test_empty_batch(self, orchestrator: TaskOrchestrator):
        """Test that an empty batch returns no outcomes."""
        assert await orchestrator.run_all({}) == []

    @pytest.mark.asyncio
    async def test_outcomes_in_submission_order(self, orchestrator: TaskOrchestrator):
        """Test that every task gets an outcome, failures included."""

        async def ok():
            return "done"

        async def broken():
            msg = "bad payload"
            raise ValueError(msg)

        outcomes = await orchestrator.run_all({"first": ok, "second": broken, "third": ok})

        assert [o.task_id for o in outcomes] == ["first", "second", "third"]
        assert [o.status for o in outcomes] == [
            OutcomeStatus.COMPLETED,
            OutcomeStatus.FAILED,
            OutcomeStatus.COMPLETED,
        ]
        assert outcomes[0].result == "done"
        assert isinstance(outcomes[1].error, ValueError)
        assert all(o.duration_seconds >= 0 for o in outcomes)

    @pytest.mark.asyncio
    async def test_batch_respects_pool_bound(self, orchestrator: TaskOrchestrator):
        """Test that a batch never runs more than max_concurrency tasks at once."""
        running = 0
        peak = 0

        async def work():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.005)
            running -= 1

        await orchestrator.run_all({f"task-{i}": work for i in range(6)})

        assert peak == 2

    @pytest.mark.asyncio
    async def test_critical_failure_cancels_queued_tasks(self):
        """Test that a failing critical task aborts the rest of the batch."""
        orchestrator = TaskOrchestrator(ConcurrencyPool(max_concurrency=1), breakers=BreakerRegistry())
        started: list[str] = []

        async def critical():
            started.append("critical")
            msg = "schema migration failed"
            raise RuntimeError(msg)

        def follower(name: str):
            async def work():
                started.append(name)
                await asyncio.sleep(0.01)

            return work

        with pytest.raises(OrchestrationError, match="Critical task 'migrate' failed") as exc_info:
            await orchestrator.run_all(
                {"migrate": critical, "backfill": follower("backfill"), "report": follower("report")},
                critical_task_ids={"migrate"},
            )

        assert exc_info.value.task_id == "migrate"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        # backfill takes the freed slot before the batch aborts; report never starts
        assert "report" not in started
        assert started[0] == "critical"

    @pytest.mark.asyncio
    async def test_external_token_cancels_queued_tasks(self):
        """Test that aborting the caller's token cancels tasks still queued."""
        orchestrator = TaskOrchestrator(ConcurrencyPool(max_concurrency=1), breakers=BreakerRegistry())
        token, abort = create_cancellation_token()

        async def first():
            abort("deploy cancelled")
            return "first"

        async def second():
            return "second"

        outcomes = await orchestrator.run_all({"first": first, "second": second}, token=token)

        assert outcomes[0].status is OutcomeStatus.COMPLETED
        assert outcomes[1].status is OutcomeStatus.CANCELLED
        assert isinstance(outcomes[1].error, CancellationError)

    @pytest.mark.asyncio
    async def test_repeated_batches_leave_no_listeners_on_caller_token(self):
        """Test that a long-lived caller token does not collect batch listeners."""
        orchestrator = TaskOrchestrator(ConcurrencyPool(max_concurrency=2), breakers=BreakerRegistry())
        token, _ = create_cancellation_token()

        async def work():
            return "ok"

        for _ in range(5):
            outcomes = await orchestrator.run_all({"a": work, "b": work}, token=token)
            assert [o.status for o in outcomes] == [OutcomeStatus.COMPLETED, OutcomeStatus.COMPLETED]

        assert token._listeners == []  # noqa: SLF001

    @pytest.mark.asyncio
    async def test_cancelled_batch_cancels_queued_tasks(self):
        """Test that cancelling run_all stops tasks it left in the queue."""
        pool = ConcurrencyPool(max_concurrency=1)
        orchestrator = TaskOrchestrator(pool, breakers=BreakerRegistry())
        release = asyncio.Event()
        started: list[str] = []

        def factory(name: str):
            async def work():
                started.append(name)
                await release.wait()

            return work

        batch = asyncio.ensure_future(orchestrator.run_all({"a": factory("a"), "b": factory("b")}))
        await asyncio.sleep(0.01)
        batch.cancel()
        with pytest.raises(asyncio.CancelledError):
            await batch

        release.set()
        await pool.join()

        assert started == ["a"]

    @pytest.mark.asyncio
    async def test_capacity_rejection_is_reported(self):
        """Test that tasks refused by a full queue show up as failures."""
        orchestrator = TaskOrchestrator(
            ConcurrencyPool(max_concurrency=1, max_queue_length=1),
            breakers=BreakerRegistry(),
        )

        async def work():
            await asyncio.sleep(0)
            return "ok"

        outcomes = await orchestrator.run_all({"a": work, "b": work, "c": work})

        assert [o.status for o in outcomes] == [
            OutcomeStatus.COMPLETED,
            OutcomeStatus.COMPLETED,
            OutcomeStatus.FAILED,
        ]
        assert isinstance(outcomes[2].error, CapacityExceededError)

    @pytest.mark.asyncio
    async def test_get_stats(self, orchestrator: TaskOrchestrator):
        """Test that stats aggregate pool, retry and breaker counters."""

        async def ok():
            return 1

        await orchestrator.run_all({"a": ok})
        stats = orchestrator.get_stats()

        assert stats["pool"]["completed"] == 1
        assert "total_retries" in stats["retry"]
        assert stats["breakers"] == {}
