"""Tests for TaskExecutor: launching, messaging and failure delivery."""

import asyncio
import os
import threading
import time

import numpy as np
import pytest

zmq = pytest.importorskip("zmq")

import taskpipe
from taskpipe import TaskDescriptor, TaskExecutor, TaskState
from taskpipe import executor as executor_module
from taskpipe.process import worker as worker_module
from taskpipe.core import (
    ContextFault,
    DecodeError,
    ExecutorConfig,
    IsolationConfig,
    IsolationLevel,
    TaskError,
    UnknownTaskError,
)
from taskpipe.ipc import EnvelopeType, MessageEnvelope, ZMQChannel
from tests import tasks


def make_config(level=IsolationLevel.THREAD, **kwargs) -> ExecutorConfig:
    return ExecutorConfig(
        isolation=IsolationConfig(default_level=level, overrides=kwargs.pop("overrides", {})),
        handshake_timeout_sec=30.0,
        poll_interval_ms=5,
        **kwargs,
    )


@pytest.fixture
def executor():
    executor = TaskExecutor(make_config())
    yield executor
    executor.shutdown(wait=True, timeout=10.0)


@pytest.fixture
def process_executor():
    executor = TaskExecutor(make_config(IsolationLevel.PROCESS))
    yield executor
    executor.shutdown(wait=True, timeout=10.0)


# =============================================================================
# Results
# =============================================================================


class TestResults:
    """Tests for values returned by task bodies."""

    def test_add(self, executor):
        handle = executor.submit(tasks.add, 1, 2)
        assert handle.result(timeout=30) == 3
        assert handle.state is TaskState.COMPLETED
        assert handle.done()

    def test_graph_identity_survives(self, executor):
        shared = []
        graph = {"items": [shared, shared]}
        graph["self"] = graph
        assert executor.submit(tasks.check_cycle, graph).result(timeout=30) is True

    def test_behavior_argument(self, executor):
        """Test registered classes arrive with their methods but no own methods."""
        result = executor.submit(tasks.describe_point, tasks.Point(3, 4)).result(timeout=30)
        assert result == {"type": "Point", "norm": 5.0, "own": ["x", "y"]}

    def test_behavior_tree_round_trip(self, executor):
        root = tasks.Node("root")
        child = root.add(tasks.Node("child"))
        child.add(tasks.Node("leaf"))

        result = executor.submit(tasks.identity, root).result(timeout=30)

        assert isinstance(result, tasks.Node)
        assert result is not root
        leaf = result.children[0].children[0]
        assert leaf.label == "leaf"
        assert leaf.depth() == 2
        assert result.children[0].parent is result

    def test_numpy_array(self, executor):
        array = np.arange(6, dtype=np.float32).reshape(2, 3)
        result = executor.submit(tasks.identity, array).result(timeout=30)
        np.testing.assert_array_equal(result, array)
        assert result.dtype == np.float32

    def test_unencodable_field_dropped(self, executor):
        result = executor.submit(tasks.returns_unencodable).result(timeout=30)
        assert result == {"kept": 1}

    def test_deeply_nested_tuple_argument(self, executor):
        """Test a deep tuple chain is submitted and returned without recursion."""
        chain = ()
        for i in range(5000):
            chain = (i, chain)

        handle = executor.submit(tasks.identity, chain)
        result = handle.result(timeout=60)

        current = result
        for i in reversed(range(5000)):
            assert current[0] == i
            current = current[1]
        assert current == ()

    def test_arguments_are_snapshotted(self, executor):
        """Test mutations after submit are not seen by the task."""
        values = [1, 2]
        handle = executor.submit(tasks.identity, values)
        values.append(3)
        assert handle.result(timeout=30) == [1, 2]


# =============================================================================
# Messages
# =============================================================================


class TestMessages:
    """Tests for the caller side of the message pipe."""

    def test_messages_before_result(self, executor):
        handle = executor.submit(tasks.greet, "bob")
        received = []
        handle.pipe.subscribe(received.append)

        assert handle.result(timeout=30) == "done"
        assert received == ["hello bob", {"step": 2}]

    def test_two_way_exchange(self, executor):
        handle = executor.submit(tasks.echo_until_stop)
        echoes = []

        def on_message(message):
            if message == "ready":
                handle.pipe.post([1, 2])
                handle.pipe.post({"k": "v"})
            else:
                echoes.append(message)
                if len(echoes) == 2:
                    handle.pipe.post("stop")

        handle.pipe.subscribe(on_message)

        assert handle.result(timeout=30) == [[1, 2], {"k": "v"}]
        assert echoes == [{"echo": [1, 2]}, {"echo": {"k": "v"}}]

    def test_messages_posted_before_running(self, executor):
        """Test caller messages queued during launch reach the task in order."""
        handle = executor.submit(tasks.echo_until_stop)
        handle.pipe.post("a")
        handle.pipe.post("stop")
        assert handle.result(timeout=30) == ["a"]

    def test_explicit_pass_pipe(self, executor):
        handle = executor.submit(tasks.greet_with_defaults)
        received = []
        handle.pipe.subscribe(received.append)
        assert handle.result(timeout=30) == "world"
        assert received == ["hi world"]

    def test_pipe_never_passed(self, executor):
        assert executor.submit(tasks.no_pipe).result(timeout=30) == 0
        assert executor.submit(tasks.no_pipe, 1, 2, 3).result(timeout=30) == 3

    def test_subscribe_after_teardown_gets_buffered_messages(self, executor):
        """Test messages received before teardown reach a late subscriber."""
        handle = executor.submit(tasks.greet, "bob")
        assert handle.result(timeout=30) == "done"
        executor.shutdown(wait=True, terminate=False, timeout=10.0)
        assert handle.pipe.closed

        received = []
        handle.pipe.subscribe(received.append)
        assert received == ["hello bob", {"step": 2}]

    def test_pipe_closed_after_settle(self, executor):
        handle = executor.submit(tasks.add, 1, 1)
        handle.result(timeout=30)
        executor.shutdown(wait=True, terminate=False, timeout=10.0)
        assert handle.pipe.closed


# =============================================================================
# Awaitables
# =============================================================================


class TestAwaitables:
    """Tests for bodies returning awaitables and for awaiting handles."""

    def test_coroutine_body(self, executor):
        assert executor.submit(tasks.async_add, 2, 3).result(timeout=30) == 5

    def test_future_body(self, executor):
        assert executor.submit(tasks.future_value, "v").result(timeout=30) == "v"

    def test_await_handle(self, executor):
        async def main():
            return await executor.submit(tasks.add, 20, 22)

        assert asyncio.run(main()) == 42


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Tests for failure delivery through the completion future."""

    def test_body_exception(self, executor):
        handle = executor.submit(tasks.fail, "bad input")

        with pytest.raises(TaskError) as exc_info:
            handle.result(timeout=30)

        error = exc_info.value
        assert error.task_name == taskpipe.task_spec_for(tasks.fail).name
        assert isinstance(error.cause, ContextFault)
        assert error.cause.error_type == "ValueError"
        assert "bad input" in str(error.cause)
        assert "ValueError" in error.cause.remote_traceback
        assert handle.state is TaskState.FAILED

    def test_unregistered_callable(self, executor):
        """Test submit never raises; the handle is rejected instead."""
        handle = executor.submit(lambda: 1)
        with pytest.raises(TaskError) as exc_info:
            handle.result(timeout=5)
        assert isinstance(exc_info.value.cause, UnknownTaskError)
        assert handle.state is TaskState.FAILED
        assert handle.pipe.closed

    def test_unknown_name(self, executor):
        handle = executor.submit("no.such.task")
        assert isinstance(handle.exception(timeout=5).cause, UnknownTaskError)

    def test_descriptor_with_extra_args(self, executor):
        descriptor = TaskDescriptor.of(tasks.add, 1, 2)
        handle = executor.submit(descriptor, 3)
        assert isinstance(handle.exception(timeout=5).cause, TypeError)

    def test_venv_without_path(self):
        executor = TaskExecutor(make_config(IsolationLevel.VENV))
        handle = executor.submit(tasks.add, 1, 2)
        error = handle.exception(timeout=10)
        assert isinstance(error, TaskError)
        assert isinstance(error.cause, ContextFault)
        assert "venv_path" in str(error.cause)

    def test_missing_interpreter(self, tmp_path):
        executor = TaskExecutor(make_config(IsolationLevel.VENV, venv_path=str(tmp_path)))
        error = executor.submit(tasks.add, 1, 2).exception(timeout=10)
        assert isinstance(error.cause, ContextFault)
        assert "not found" in str(error.cause)


# =============================================================================
# Submission forms
# =============================================================================


class TestSubmission:
    """Tests for the accepted submission forms."""

    def test_by_name(self, executor):
        assert executor.submit("tests.named").result(timeout=30) == "named"

    def test_by_descriptor(self, executor):
        descriptor = TaskDescriptor.of(tasks.add, 4, 5)
        assert descriptor.args == (4, 5)
        assert executor.submit(descriptor).result(timeout=30) == 9

    def test_descriptor_from_name(self):
        descriptor = TaskDescriptor.from_name("tests.named")
        assert descriptor.module == "tests.tasks"
        assert descriptor.args == ()

    def test_module_level_functions(self):
        taskpipe.configure(make_config())
        try:
            assert taskpipe.submit(tasks.add, 2, 2).result(timeout=30) == 4
            assert taskpipe.get_executor().get_stats()["submitted"] == 1
        finally:
            taskpipe.get_executor().shutdown(wait=True, timeout=10.0)


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for termination, shutdown and stats."""

    def test_terminate(self, executor):
        handle = executor.submit(tasks.sleep_then_return, 2.0, "late")
        time.sleep(0.2)
        handle.terminate()

        error = handle.exception(timeout=10)
        assert isinstance(error, TaskError)
        assert isinstance(error.cause, ContextFault)
        assert "terminated" in str(error.cause)

    def test_terminate_after_settle_is_noop(self, executor):
        handle = executor.submit(tasks.add, 1, 2)
        assert handle.result(timeout=30) == 3
        handle.terminate()
        assert handle.result() == 3

    def test_stats(self, executor):
        executor.submit(tasks.add, 1, 2).exception(timeout=30)
        executor.submit(tasks.fail, "x").exception(timeout=30)
        executor.submit(lambda: None)
        executor.shutdown(wait=True, terminate=False, timeout=10.0)

        assert executor.get_stats() == {
            "submitted": 3,
            "completed": 1,
            "failed": 2,
            "running": 0,
        }

    def test_shutdown_terminates_running(self):
        executor = TaskExecutor(make_config())
        handle = executor.submit(tasks.sleep_then_return, 2.0, 1)
        time.sleep(0.2)
        executor.shutdown(wait=True, timeout=10.0)
        assert isinstance(handle.exception(timeout=1), TaskError)
        assert executor.get_stats()["running"] == 0

    def test_context_manager_waits(self):
        with TaskExecutor(make_config()) as executor:
            handle = executor.submit(tasks.sleep_then_return, 0.1, "ok")
        assert handle.result(timeout=1) == "ok"

    def test_concurrent_handles_are_independent(self, executor):
        handles = [executor.submit(tasks.add, i, i) for i in range(5)]
        assert [h.result(timeout=30) for h in handles] == [0, 2, 4, 6, 8]


# =============================================================================
# Process isolation
# =============================================================================


class TestProcessIsolation:
    """Tests that need a worker subprocess."""

    def test_runs_in_another_process(self, process_executor):
        pid = process_executor.submit(tasks.get_pid).result(timeout=60)
        assert pid != os.getpid()

    def test_result_and_messages(self, process_executor):
        handle = process_executor.submit(tasks.greet, "proc")
        received = []
        handle.pipe.subscribe(received.append)
        assert handle.result(timeout=60) == "done"
        assert received == ["hello proc", {"step": 2}]

    def test_context_death(self, process_executor):
        handle = process_executor.submit(tasks.hard_exit, 3)
        error = handle.exception(timeout=60)
        assert isinstance(error, TaskError)
        assert isinstance(error.cause, ContextFault)
        assert error.cause.exit_code == 3
        assert error.cause.error_type is None

    def test_per_task_thread_override(self):
        name = taskpipe.task_spec_for(tasks.get_pid).name
        executor = TaskExecutor(
            make_config(IsolationLevel.PROCESS, overrides={name: IsolationLevel.THREAD})
        )
        try:
            assert executor.submit(tasks.get_pid).result(timeout=30) == os.getpid()
        finally:
            executor.shutdown(wait=True, timeout=10.0)

    def test_terminate_process(self, process_executor):
        handle = process_executor.submit(tasks.sleep_then_return, 30.0, 1)
        time.sleep(0.5)
        handle.terminate()
        assert isinstance(handle.exception(timeout=30), TaskError)
        process_executor.shutdown(wait=True, timeout=30.0)
        assert process_executor.get_stats()["running"] == 0


# =============================================================================
# Caller-side decode failures
# =============================================================================


class ScriptedWorker:
    """Stands in for ``run_worker``: answers the handshake, then sends one frame."""

    def __init__(self, frame: bytes):
        self.frame = frame
        self.received = []

    def __call__(self, address, poll_interval_ms=10, linger_sec=5.0, parent_pid=None):
        channel = ZMQChannel()
        channel.bind(address)
        try:
            deadline = time.monotonic() + 20.0
            while time.monotonic() < deadline:
                raw = channel.recv(timeout_ms=50)
                if raw is None:
                    continue
                envelope = MessageEnvelope.from_bytes(raw)
                self.received.append(envelope.type)
                if envelope.is_a(EnvelopeType.PING):
                    channel.send(MessageEnvelope.pong(os.getpid(), "test").to_bytes())
                elif envelope.is_a(EnvelopeType.RUN):
                    channel.send(self.frame)
                elif envelope.is_a(EnvelopeType.SHUTDOWN):
                    return 0
            return 1
        finally:
            channel.close()


class TestCallerDecodeFailures:
    """Tests for frames from the context that the caller cannot decode."""

    @pytest.mark.parametrize(
        "frame",
        [
            b'{"type": "result", "payload": {"version": 99}}',
            b'{"type": "result"}',
            b'{"type": "message", "payload": {"version": 1, "nodes": [["bogus", []]], "links": [], "root": ["ref", 0]}}',
            b"not json",
        ],
        ids=["bad-version", "missing-payload", "bad-message", "bad-frame"],
    )
    def test_rejects_with_decode_error(self, executor, monkeypatch, frame):
        worker = ScriptedWorker(frame)
        monkeypatch.setattr(worker_module, "run_worker", worker)

        handle = executor.submit(tasks.add, 1, 2)
        error = handle.exception(timeout=30)

        assert isinstance(error, TaskError)
        assert isinstance(error.cause, DecodeError)
        assert handle.state is TaskState.FAILED

        executor.shutdown(wait=True, terminate=False, timeout=10.0)
        assert worker.received == ["ping", "run", "shutdown"]

    def test_argument_encoding_failure_rejects(self, executor, monkeypatch):
        """Test submit returns a rejected handle instead of raising."""

        def broken_encode(value):
            raise RuntimeError("encoder broke")

        monkeypatch.setattr(executor_module, "encode", broken_encode)

        handle = executor.submit(tasks.add, 1, 2)
        error = handle.exception(timeout=5)

        assert isinstance(error, TaskError)
        assert isinstance(error.cause, RuntimeError)
        assert handle.state is TaskState.FAILED
