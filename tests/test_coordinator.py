"""Tests for TaskCoordinator fan-out/fan-in."""

import time

import pytest

zmq = pytest.importorskip("zmq")

import taskpipe
from taskpipe import TaskCoordinator, TaskDescriptor, TaskExecutor
from taskpipe.core import (
    ContextFault,
    ExecutorConfig,
    IsolationConfig,
    IsolationLevel,
    TaskError,
)
from tests import tasks


def thread_config() -> ExecutorConfig:
    return ExecutorConfig(
        isolation=IsolationConfig(default_level=IsolationLevel.THREAD),
        handshake_timeout_sec=30.0,
        poll_interval_ms=5,
    )


@pytest.fixture
def executor():
    executor = TaskExecutor(thread_config())
    yield executor
    executor.shutdown(wait=True, timeout=10.0)


@pytest.fixture
def coordinator(executor):
    return TaskCoordinator(executor)


# =============================================================================
# Results
# =============================================================================


class TestRunAll:
    """Tests for collecting results."""

    def test_results_in_entry_order(self, coordinator):
        """Test results follow entry order, not completion order."""
        future = coordinator.run_all([
            (tasks.sleep_then_return, 0.5, 1),
            (tasks.sleep_then_return, 0.0, 2),
        ])
        assert future.result(timeout=30) == [1, 2]

    def test_runs_concurrently(self, coordinator):
        start = time.monotonic()
        future = coordinator.run_all([(tasks.sleep_then_return, 0.5, i) for i in range(4)])
        assert future.result(timeout=30) == [0, 1, 2, 3]
        assert time.monotonic() - start < 1.9

    def test_empty(self, coordinator):
        assert coordinator.run_all([]).result(timeout=1) == []

    def test_entry_forms(self, coordinator):
        future = coordinator.run_all([
            TaskDescriptor.of(tasks.add, 1, 2),
            tasks.named_task,
            (tasks.add, 3, 4),
            "tests.named",
        ])
        assert future.result(timeout=30) == [3, "named", 7, "named"]

    def test_submit_all_returns_handles(self, coordinator):
        handles = coordinator.submit_all([(tasks.add, 1, 1), (tasks.add, 2, 2)])
        assert [h.result(timeout=30) for h in handles] == [2, 4]

    def test_stats(self, coordinator):
        coordinator.run_all([(tasks.add, 1, 1)]).result(timeout=30)
        with pytest.raises(TaskError):
            coordinator.run_all([(tasks.fail, "x")]).result(timeout=30)
        assert coordinator.get_stats() == {"batches": 2, "failed_batches": 1}


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Tests for rejection of the aggregate future."""

    def test_first_failure_rejects(self, coordinator):
        future = coordinator.run_all([
            (tasks.add, 1, 2),
            (tasks.fail, "broken"),
        ])
        with pytest.raises(TaskError) as exc_info:
            future.result(timeout=30)
        assert isinstance(exc_info.value.cause, ContextFault)
        assert exc_info.value.cause.error_type == "ValueError"

    def test_unregistered_entry_rejects(self, coordinator):
        future = coordinator.run_all([(tasks.add, 1, 2), lambda: None])
        with pytest.raises(TaskError):
            future.result(timeout=30)

    def test_siblings_keep_running_by_default(self, executor, coordinator):
        future = coordinator.run_all([
            (tasks.fail, "early"),
            (tasks.sleep_then_return, 0.5, "late"),
        ])
        with pytest.raises(TaskError):
            future.result(timeout=30)

        executor.shutdown(wait=True, terminate=False, timeout=30.0)
        stats = executor.get_stats()
        assert stats["completed"] == 1
        assert stats["failed"] == 1

    def test_cancel_on_failure(self, executor, coordinator):
        future = coordinator.run_all(
            [
                (tasks.fail, "early"),
                (tasks.sleep_then_return, 2.0, "late"),
            ],
            cancel_on_failure=True,
        )
        with pytest.raises(TaskError):
            future.result(timeout=30)

        executor.shutdown(wait=True, terminate=False, timeout=30.0)
        stats = executor.get_stats()
        assert stats["completed"] == 0
        assert stats["failed"] == 2


# =============================================================================
# Module-level entry point
# =============================================================================


class TestModuleRunAll:
    """Tests for taskpipe.run_all on the process-wide executor."""

    def test_run_all(self):
        executor = taskpipe.configure(thread_config())
        try:
            future = taskpipe.run_all([(tasks.add, 1, 2), (tasks.identity, "x")])
            assert future.result(timeout=30) == [3, "x"]
        finally:
            executor.shutdown(wait=True, timeout=10.0)
