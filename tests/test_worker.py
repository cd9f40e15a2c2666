"""Tests for the worker side of the run protocol."""

import asyncio
import os
import threading
from concurrent.futures import Future

import pytest

zmq = pytest.importorskip("zmq")

import taskpipe
from taskpipe.codec import decode, encode
from taskpipe.ipc import (
    EnvelopeType,
    MessageEnvelope,
    ZMQChannel,
    generate_ipc_address,
    remove_ipc_file,
)
from taskpipe.process.worker import run_worker, settle
from tests import tasks


class WorkerHarness:
    """Runs ``run_worker`` on a thread and talks to it as the caller would."""

    def __init__(self, linger_sec: float = 5.0):
        self.address, self.ipc_file = generate_ipc_address(prefix="test-worker")
        self.exit_code = None
        self.thread = threading.Thread(target=self._run, args=(linger_sec,), daemon=True)
        self.channel = ZMQChannel()

    def _run(self, linger_sec):
        self.exit_code = run_worker(self.address, poll_interval_ms=5, linger_sec=linger_sec)

    def start(self):
        self.thread.start()
        self.channel.connect(self.address)

    def send(self, envelope):
        self.channel.send(envelope.to_bytes())

    def recv(self, timeout_ms=10000):
        raw = self.channel.recv(timeout_ms=timeout_ms)
        assert raw is not None, "worker did not answer in time"
        return MessageEnvelope.from_bytes(raw)

    def run(self, func, *args, pass_pipe=None):
        spec = taskpipe.task_spec_for(func)
        self.send(MessageEnvelope.run(spec.name, spec.module, encode(list(args)).to_dict(), pass_pipe))

    def close(self):
        if self.thread.is_alive():
            self.send(MessageEnvelope.shutdown())
            self.thread.join(timeout=10.0)
        self.channel.close()
        remove_ipc_file(self.ipc_file)


@pytest.fixture
def worker():
    harness = WorkerHarness()
    harness.start()
    yield harness
    harness.close()


# =============================================================================
# Handshake and lifecycle
# =============================================================================


class TestHandshake:
    """Tests for ping/pong and shutdown."""

    def test_pong_reports_pid_and_version(self, worker):
        worker.send(MessageEnvelope.ping())
        reply = worker.recv()
        assert reply.is_a(EnvelopeType.PONG)
        assert reply.body["pid"] == os.getpid()
        assert reply.body["version"] == taskpipe.__version__

    def test_shutdown_exits_cleanly(self, worker):
        worker.send(MessageEnvelope.shutdown())
        worker.thread.join(timeout=10.0)
        assert not worker.thread.is_alive()
        assert worker.exit_code == 0

    def test_unknown_envelope_ignored(self, worker):
        worker.channel.send(b'{"type": "bogus"}')
        worker.send(MessageEnvelope.ping())
        assert worker.recv().is_a(EnvelopeType.PONG)

    def test_exits_after_linger(self):
        """Test the worker exits on its own when shutdown never comes."""
        harness = WorkerHarness(linger_sec=0.1)
        harness.start()
        try:
            harness.run(tasks.add, 1, 2)
            assert harness.recv().is_a(EnvelopeType.RESULT)
            harness.thread.join(timeout=10.0)
            assert not harness.thread.is_alive()
            assert harness.exit_code == 0
        finally:
            harness.close()


# =============================================================================
# Running tasks
# =============================================================================


class TestRun:
    """Tests for the run envelope."""

    def test_result(self, worker):
        worker.run(tasks.add, 1, 2)
        reply = worker.recv()
        assert reply.is_a(EnvelopeType.RESULT)
        assert decode(reply.payload) == 3

    def test_fault_carries_type_and_traceback(self, worker):
        worker.run(tasks.fail, "boom")
        reply = worker.recv()
        assert reply.is_a(EnvelopeType.FAULT)
        assert reply.body["error"] == "boom"
        assert reply.body["error_type"] == "ValueError"
        assert "Traceback" in reply.body["traceback"]
        assert "raise ValueError(message)" in reply.body["traceback"]

    def test_unknown_task(self, worker):
        worker.send(MessageEnvelope.run("no.such.task", None, encode([]).to_dict()))
        reply = worker.recv()
        assert reply.is_a(EnvelopeType.FAULT)
        assert reply.body["error_type"] == "UnknownTaskError"

    def test_unimportable_module(self, worker):
        worker.send(MessageEnvelope.run("x", "no_such_module_xyz", encode([]).to_dict()))
        reply = worker.recv()
        assert reply.body["error_type"] == "ModuleNotFoundError"

    def test_arguments_must_be_a_list(self, worker):
        spec = taskpipe.task_spec_for(tasks.identity)
        worker.send(MessageEnvelope.run(spec.name, spec.module, encode({"a": 1}).to_dict()))
        reply = worker.recv()
        assert reply.is_a(EnvelopeType.FAULT)
        assert reply.body["error_type"] == "TypeError"

    def test_coroutine_body(self, worker):
        worker.run(tasks.async_add, 2, 3)
        assert decode(worker.recv().payload) == 5

    def test_second_run_ignored(self, worker):
        worker.run(tasks.add, 1, 2)
        assert decode(worker.recv().payload) == 3
        worker.run(tasks.add, 5, 5)
        worker.send(MessageEnvelope.ping())
        assert worker.recv().is_a(EnvelopeType.PONG)


# =============================================================================
# Messages
# =============================================================================


class TestMessages:
    """Tests for message relay through the worker."""

    def test_messages_precede_result(self, worker):
        worker.run(tasks.greet, "bob")
        replies = [worker.recv() for _ in range(3)]
        assert [r.type for r in replies] == ["message", "message", "result"]
        assert decode(replies[0].payload) == "hello bob"
        assert decode(replies[1].payload) == {"step": 2}
        assert decode(replies[2].payload) == "done"

    def test_echo(self, worker):
        worker.run(tasks.echo_until_stop)
        assert decode(worker.recv().payload) == "ready"

        worker.send(MessageEnvelope.message(encode([1, 2]).to_dict()))
        echoed = worker.recv()
        assert echoed.is_a(EnvelopeType.MESSAGE)
        assert decode(echoed.payload) == {"echo": [1, 2]}

        worker.send(MessageEnvelope.message(encode("stop").to_dict()))
        result = worker.recv()
        assert result.is_a(EnvelopeType.RESULT)
        assert decode(result.payload) == [[1, 2]]

    def test_explicit_pass_pipe_false(self, worker):
        """Test the run envelope's flag overrides the arity rule."""
        worker.run(tasks.no_pipe, 1, 2, pass_pipe=False)
        assert decode(worker.recv().payload) == 2


# =============================================================================
# settle()
# =============================================================================


class TestSettle:
    """Tests for waiting on task return values."""

    def test_plain_value(self):
        assert settle(5) == 5

    def test_coroutine(self):
        async def compute():
            await asyncio.sleep(0)
            return "async"

        assert settle(compute()) == "async"

    def test_future(self):
        future = Future()
        threading.Timer(0.01, future.set_result, args=("later",)).start()
        assert settle(future) == "later"

    def test_failed_future(self):
        future = Future()
        future.set_exception(KeyError("k"))
        with pytest.raises(KeyError):
            settle(future)

    def test_awaitable_object(self):
        class Ready:
            def __await__(self):
                return (yield from asyncio.sleep(0, result="ready").__await__())

        assert settle(Ready()) == "ready"
