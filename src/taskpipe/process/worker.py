"""Isolated-context side of a task.

The worker binds the task channel, answers the handshake, receives the
``run`` envelope, decodes the bound arguments, resolves the task body from
the registry and invokes it while relaying pipe messages in both directions.
Exactly one ``result`` or ``fault`` envelope is sent per run.

Process contexts run this module as a script; thread contexts call
:func:`run_worker` on a daemon thread.

Usage:
    python -m taskpipe.process.worker --ipc-address ipc:///tmp/xxx.sock

Or via the entry point:
    taskpipe-worker --ipc-address ipc:///tmp/xxx.sock
"""

import argparse
import asyncio
import inspect
import logging
import os
import sys
import threading
import time
import traceback
from concurrent.futures import Future
from typing import Any, Optional

import zmq

from taskpipe.codec import decode, encode
from taskpipe.core.errors import ContextFault, DecodeError
from taskpipe.core.registry import get_task
from taskpipe.ipc import EnvelopeType, MessageEnvelope, ZMQChannel
from taskpipe.pipe import MessagePipe
from taskpipe.process.relay import ChannelRelay

logger = logging.getLogger(__name__)


def settle(value: Any) -> Any:
    """Wait for a task's return value to settle.

    Coroutines and other awaitables are run to completion on a fresh event
    loop; ``concurrent.futures.Future`` results are waited for. Anything
    else is returned as is.
    """
    if isinstance(value, Future):
        return value.result()
    if asyncio.iscoroutine(value):
        return asyncio.run(value)
    if inspect.isawaitable(value):
        async def _await():
            return await value
        return asyncio.run(_await())
    return value


class WorkerSession:
    """State of one worker: handshake, one run, shutdown.

    Args:
        channel: Bound channel.
        poll_interval_ms: Relay poll interval.
        linger_sec: How long to wait for ``shutdown`` after the outcome was
            sent before exiting anyway.
        parent_pid: Exit when the parent process goes away (process
            contexts only).
    """

    def __init__(
        self,
        channel: ZMQChannel,
        poll_interval_ms: int = 10,
        linger_sec: float = 5.0,
        parent_pid: Optional[int] = None,
    ):
        self._relay = ChannelRelay(
            channel,
            on_envelope=self._dispatch,
            on_idle=self._on_idle,
            poll_interval_ms=poll_interval_ms,
        )
        self._linger_sec = linger_sec
        self._parent_pid = parent_pid
        self._pipe: Optional[MessagePipe] = None
        self._task_name: Optional[str] = None
        self._settled = threading.Event()
        self._settle_lock = threading.Lock()
        self._settled_at: Optional[float] = None

    def serve(self) -> None:
        """Run until shutdown, linger expiry or parent exit."""
        self._relay.run()
        if self._pipe is not None:
            self._pipe.close()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _dispatch(self, envelope: MessageEnvelope) -> None:
        if envelope.is_a(EnvelopeType.PING):
            self._relay.send(MessageEnvelope.pong(os.getpid(), _version()))
            return

        if envelope.is_a(EnvelopeType.RUN):
            if self._task_name is not None:
                logger.warning(f"Ignoring second run request for '{envelope.body.get('task')}'")
                return
            self._start(envelope)
            return

        if envelope.is_a(EnvelopeType.MESSAGE):
            self._deliver(envelope)
            return

        if envelope.is_a(EnvelopeType.SHUTDOWN):
            logger.info("Received shutdown signal")
            self._relay.stop()
            return

        logger.warning(f"Unknown envelope type: {envelope.type}")

    def _deliver(self, envelope: MessageEnvelope) -> None:
        if self._pipe is None or self._settled.is_set():
            logger.debug("Dropped message outside of a running task")
            return
        try:
            message = decode(envelope.payload)
            self._pipe.post_incoming(message)
        except Exception as e:
            logger.error(f"Message delivery failed in task '{self._task_name}': {e}")
            self._report_fault(e)

    def _on_idle(self) -> None:
        if self._settled_at is not None:
            if time.monotonic() - self._settled_at > self._linger_sec:
                logger.info("No shutdown signal received, exiting")
                self._relay.stop()
        if self._parent_pid is not None and os.getppid() != self._parent_pid:
            logger.warning("Parent process went away, exiting")
            self._relay.stop()

    # ------------------------------------------------------------------
    # Running the body
    # ------------------------------------------------------------------

    def _start(self, envelope: MessageEnvelope) -> None:
        body = envelope.body
        self._task_name = str(body.get("task"))

        try:
            spec = get_task(self._task_name, body.get("module"))
            args = decode(body.get("args"))
            if not isinstance(args, list):
                raise TypeError(f"Bound arguments must decode to a list, got {type(args).__name__}")
        except Exception as e:
            logger.error(f"Cannot start task '{self._task_name}': {e}")
            self._report_fault(e)
            return

        pipe = MessagePipe()
        pipe.subscribe_outgoing(self._forward)
        self._pipe = pipe

        pass_pipe = body.get("pass_pipe")
        if pass_pipe is None:
            pass_pipe = spec.wants_pipe(len(args))
        if pass_pipe:
            args.insert(0, pipe)

        logger.info(f"Running task '{spec.name}'")
        thread = threading.Thread(
            target=self._invoke,
            args=(spec.func, args),
            name=f"taskpipe-body-{spec.name}",
            daemon=True,
        )
        thread.start()

    def _forward(self, message: Any) -> None:
        self._relay.send(MessageEnvelope.message(encode(message).to_dict()))

    def _invoke(self, func, args) -> None:
        # Thread boundary: everything the body raises becomes a fault.
        try:
            value = settle(func(*args))
            envelope = MessageEnvelope.result(encode(value).to_dict())
        except BaseException as e:
            logger.error(f"Task '{self._task_name}' raised {type(e).__name__}: {e}")
            self._report_fault(e)
            return
        self._settle(envelope)

    def _report_fault(self, error: BaseException) -> None:
        self._settle(
            MessageEnvelope.fault(
                error=str(error) or type(error).__name__,
                error_type=type(error).__name__,
                traceback="".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ),
            )
        )

    def _settle(self, envelope: MessageEnvelope) -> None:
        with self._settle_lock:
            if self._settled.is_set():
                return
            self._settled.set()
        self._relay.send(envelope)
        self._settled_at = time.monotonic()


def _version() -> str:
    from taskpipe import __version__
    return __version__


def run_worker(
    ipc_address: str,
    poll_interval_ms: int = 10,
    linger_sec: float = 5.0,
    parent_pid: Optional[int] = None,
) -> int:
    """Run the worker main loop.

    Args:
        ipc_address: ZMQ address to bind to.
        poll_interval_ms: Relay poll interval.
        linger_sec: Grace period for the shutdown signal after the outcome.
        parent_pid: Exit if the parent process changes.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    channel = ZMQChannel()
    try:
        channel.bind(ipc_address)
        logger.info(f"Worker bound to {ipc_address}")
    except zmq.ZMQError as e:
        logger.error(f"Failed to bind to {ipc_address}: {e}")
        return 1

    session = WorkerSession(
        channel,
        poll_interval_ms=poll_interval_ms,
        linger_sec=linger_sec,
        parent_pid=parent_pid,
    )
    try:
        session.serve()
    except (zmq.ZMQError, ContextFault, DecodeError) as e:
        logger.error(f"Worker channel error: {e}")
        return 1
    finally:
        channel.close()
        logger.info("Worker shutdown complete")

    return 0


def main() -> int:
    """Main entry point for the worker subprocess."""
    parser = argparse.ArgumentParser(
        description="taskpipe worker subprocess",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--ipc-address",
        required=True,
        help="ZMQ IPC address to bind to (e.g., ipc:///tmp/taskpipe.sock)",
    )
    parser.add_argument(
        "--poll-interval-ms",
        type=int,
        default=10,
        help="Channel poll interval in milliseconds (default: 10)",
    )
    parser.add_argument(
        "--linger-sec",
        type=float,
        default=5.0,
        help="Seconds to wait for shutdown after the result is sent (default: 5)",
    )
    parser.add_argument(
        "--parent-pid",
        type=int,
        default=None,
        help="Exit when this process is no longer the parent",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    return run_worker(
        args.ipc_address,
        poll_interval_ms=args.poll_interval_ms,
        linger_sec=args.linger_sec,
        parent_pid=args.parent_pid,
    )


if __name__ == "__main__":
    sys.exit(main())
