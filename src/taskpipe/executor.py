"""TaskExecutor - run one registered task in an isolated context.

Every submitted task gets its own context (thread, process or venv, see
:class:`~taskpipe.core.IsolationLevel`), its own channel and its own
supervising daemon thread in the caller. The supervising thread is the only
thread that touches the task's socket.

Lifecycle of a task:

    LAUNCHING ──→ RUNNING ──→ COMPLETED
        │            │
        └────────────┴──────→ FAILED

- LAUNCHING: start the context, handshake (ping/pong), send ``run``.
- RUNNING: relay ``message`` envelopes in both directions until the one
  ``result`` arrives.
- Any decode failure, fault report, handshake failure, spawn failure or
  context death moves the task to FAILED. The completion future is then
  rejected with a :class:`~taskpipe.core.errors.TaskError`.

Example:
    >>> import taskpipe
    >>> from tests.tasks import add
    >>>
    >>> executor = taskpipe.TaskExecutor()
    >>> handle = executor.submit(add, 1, 2)
    >>> handle.result(timeout=30)
    3
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple

from taskpipe.codec import decode, encode
from taskpipe.core.config import ExecutorConfig
from taskpipe.core.errors import ContextFault, HandshakeError, TaskError, UnknownTaskError
from taskpipe.core.registry import get_task, task_spec_for
from taskpipe.ipc import EnvelopeType, MessageEnvelope, ZMQChannel
from taskpipe.pipe import MessagePipe
from taskpipe.process.launcher import BaseContext, ContextLauncher
from taskpipe.process.relay import ChannelRelay

logger = logging.getLogger(__name__)


class TaskState(Enum):
    LAUNCHING = "launching"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskDescriptor:
    """A task body named by registry entry, plus its bound arguments.

    Attributes:
        name: Registry name of the task.
        module: Module that registers the task; imported by the worker.
        args: Bound positional arguments.
        pass_pipe: Overrides the task's own pipe-injection setting.
    """

    name: str
    module: str
    args: Tuple[Any, ...] = ()
    pass_pipe: Optional[bool] = None

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(self.args))

    @classmethod
    def from_callable(cls, func: Callable[..., Any], *args: Any) -> "TaskDescriptor":
        """Describe a call of a function registered with ``@task``.

        Raises:
            UnknownTaskError: If the function is not a registered task.
        """
        spec = task_spec_for(func)
        if spec is None:
            raise UnknownTaskError(
                f"{getattr(func, '__qualname__', func)!r} is not a registered task; "
                f"decorate it with @taskpipe.task"
            )
        return cls(name=spec.name, module=spec.module, args=args, pass_pipe=spec.pass_pipe)

    @classmethod
    def from_name(cls, name: str, *args: Any) -> "TaskDescriptor":
        """Describe a call of a task registered in this process under ``name``."""
        spec = get_task(name)
        return cls(name=spec.name, module=spec.module, args=args, pass_pipe=spec.pass_pipe)

    @classmethod
    def of(cls, task: Any, *args: Any) -> "TaskDescriptor":
        """Build a descriptor from a descriptor, a task name or a task function."""
        if isinstance(task, TaskDescriptor):
            if args:
                raise TypeError("Cannot bind extra arguments to a TaskDescriptor")
            return task
        if isinstance(task, str):
            return cls.from_name(task, *args)
        if callable(task):
            return cls.from_callable(task, *args)
        raise TypeError(f"Expected a task, task name or TaskDescriptor, got {type(task).__name__}")


class _TaskSession:
    """Caller-side supervisor of one task; runs on its own daemon thread."""

    def __init__(
        self,
        descriptor: TaskDescriptor,
        config: ExecutorConfig,
        on_finished: Callable[["_TaskSession"], None],
    ):
        self.descriptor = descriptor
        self.completion: Future = Future()
        self.pipe = MessagePipe()
        self.state = TaskState.LAUNCHING

        self._config = config
        self._on_finished = on_finished
        self._lock = threading.RLock()
        self._aborted = threading.Event()
        self._torn_down = False
        self._thread: Optional[threading.Thread] = None
        self._context: Optional[BaseContext] = None
        self._channel = ZMQChannel(
            send_timeout_ms=int(config.handshake_timeout_sec * 1000)
        )
        self._relay = ChannelRelay(
            self._channel,
            on_envelope=self._on_envelope,
            on_idle=self._on_idle,
            poll_interval_ms=config.poll_interval_ms,
        )

        # Arguments are captured now; later mutation by the caller is not seen.
        self._args = encode(list(descriptor.args)).to_dict()
        self.pipe.subscribe_outgoing(self._forward)

    @property
    def name(self) -> str:
        return self.descriptor.name

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"taskpipe-session-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def abort(self) -> None:
        """Fail the task if it has not settled and tear its context down."""
        self._aborted.set()
        self._relay.stop()

    # ------------------------------------------------------------------
    # Session thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        if not self.completion.set_running_or_notify_cancel():
            logger.debug(f"Task '{self.name}' was cancelled before launch")
            self._teardown()
            return

        try:
            self._launch()
            self._relay.run()
            if not self.completion.done():
                raise ContextFault(f"Task '{self.name}' was terminated")
        except Exception as e:
            self._fail(e)
        finally:
            self._teardown()

    def _launch(self) -> None:
        config = self._config
        level = config.level_for(self.name)

        try:
            self._context = ContextLauncher.create(
                level,
                venv_path=config.venv_for(self.name),
                poll_interval_ms=config.poll_interval_ms,
                linger_sec=config.shutdown_timeout_sec,
                extra_sys_path=config.extra_sys_path,
                log_level=config.log_level,
            )
        except ValueError as e:
            raise ContextFault(f"Cannot create {level.name} context: {e}") from e

        self._context.start()
        self._channel.connect(self._context.address)
        self._handshake()

        self._channel.send(
            MessageEnvelope.run(
                task=self.descriptor.name,
                module=self.descriptor.module,
                args=self._args,
                pass_pipe=self.descriptor.pass_pipe,
            ).to_bytes()
        )
        with self._lock:
            self.state = TaskState.RUNNING
        logger.debug(f"Task '{self.name}' running in {level.name} context")

    def _handshake(self) -> None:
        timeout = self._config.handshake_timeout_sec
        deadline = time.monotonic() + timeout
        self._channel.send(MessageEnvelope.ping().to_bytes())

        while True:
            if self._aborted.is_set():
                raise ContextFault(f"Task '{self.name}' was terminated during launch")

            raw = self._channel.recv(timeout_ms=self._config.poll_interval_ms)
            if raw is not None:
                envelope = MessageEnvelope.from_bytes(raw)
                if not envelope.is_a(EnvelopeType.PONG):
                    raise HandshakeError(f"Unexpected handshake response: {envelope.type}")
                logger.info(
                    f"Context handshake successful for '{self.name}' "
                    f"(pid {envelope.body.get('pid')}, version {envelope.body.get('version')})"
                )
                return

            if not self._context.is_alive:
                raise HandshakeError(
                    f"Context exited during handshake: {self._context.diagnostics()}",
                    exit_code=self._context.exit_code,
                )
            if time.monotonic() > deadline:
                raise HandshakeError(f"Context handshake timed out after {timeout}s")

    def _on_envelope(self, envelope: MessageEnvelope) -> None:
        if envelope.is_a(EnvelopeType.RESULT):
            self._complete(decode(envelope.payload))
            self._relay.stop()
            return

        if envelope.is_a(EnvelopeType.MESSAGE):
            self.pipe.post_incoming(decode(envelope.payload))
            return

        if envelope.is_a(EnvelopeType.FAULT):
            body = envelope.body
            raise ContextFault(
                str(body.get("error")),
                error_type=body.get("error_type"),
                remote_traceback=body.get("traceback"),
            )

        logger.warning(f"Unknown envelope type from task '{self.name}': {envelope.type}")

    def _on_idle(self) -> None:
        if self._context.is_alive:
            return
        # A result may have arrived just before the context exited.
        self._relay.drain()
        if self.completion.done():
            return
        raise ContextFault(
            f"Context died: {self._context.diagnostics()}",
            exit_code=self._context.exit_code,
        )

    def _forward(self, message: Any) -> None:
        self._relay.send(MessageEnvelope.message(encode(message).to_dict()))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _complete(self, value: Any) -> None:
        with self._lock:
            if self.completion.done():
                return
            self.state = TaskState.COMPLETED
            self.completion.set_result(value)
        logger.debug(f"Task '{self.name}' completed")

    def _fail(self, error: BaseException) -> None:
        with self._lock:
            if self.completion.done():
                logger.debug(f"Ignoring failure of settled task '{self.name}': {error}")
                return
            self.state = TaskState.FAILED
            self.completion.set_exception(TaskError(self.name, error))
        logger.error(f"Task '{self.name}' failed: {error}")

    def _teardown(self) -> None:
        with self._lock:
            if self._torn_down:
                return
            self._torn_down = True

        self._relay.stop()

        if self._context is not None:
            if self._channel.is_open and self._context.is_alive:
                try:
                    self._channel.send(MessageEnvelope.shutdown().to_bytes())
                except ContextFault as e:
                    logger.warning(f"Error during shutdown signal: {e}")
            self._context.stop(timeout=self._config.shutdown_timeout_sec)

        self._channel.close()
        self.pipe.close()
        logger.info(f"Task '{self.name}' finished: {self.state.value}")
        self._on_finished(self)


class TaskHandle:
    """Caller-owned handle of a submitted task.

    Dropping the handle does not stop the task. Use :meth:`result` (or
    ``await handle``) to wait for the outcome and :attr:`pipe` to exchange
    messages with the running body.

    Attributes:
        name: Registry name of the task.
        completion: Future resolved with the task's result, or rejected
            with a :class:`~taskpipe.core.errors.TaskError`.
        pipe: Caller side of the task's message pipe.
    """

    def __init__(
        self,
        name: str,
        completion: Future,
        pipe: MessagePipe,
        session: Optional[_TaskSession] = None,
    ):
        self.name = name
        self.completion = completion
        self.pipe = pipe
        self._session = session

    @property
    def state(self) -> TaskState:
        if self._session is None:
            return TaskState.FAILED
        return self._session.state

    def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for the task's result.

        Raises:
            TaskError: If the task failed.
            concurrent.futures.TimeoutError: If ``timeout`` expired first.
        """
        return self.completion.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self.completion.exception(timeout)

    def done(self) -> bool:
        return self.completion.done()

    def add_done_callback(self, fn: Callable[[Future], None]) -> None:
        self.completion.add_done_callback(fn)

    def terminate(self) -> None:
        """Fail the task if still unsettled and tear down its context."""
        if self._session is not None:
            self._session.abort()

    def __await__(self):
        return asyncio.wrap_future(self.completion).__await__()

    def __repr__(self) -> str:
        return f"TaskHandle(name={self.name!r}, state={self.state.value})"


class TaskExecutor:
    """Submits tasks into isolated contexts.

    There is no pooling and no cap: every submit launches a fresh context.

    Args:
        config: Executor configuration. Defaults to
            :meth:`ExecutorConfig.from_env`.

    Example:
        >>> with TaskExecutor() as executor:
        ...     handle = executor.submit(add, 1, 2)
        ...     handle.result()
        3
    """

    def __init__(self, config: Optional[ExecutorConfig] = None):
        self._config = config or ExecutorConfig.from_env()
        self._lock = threading.Lock()
        self._sessions: Set[_TaskSession] = set()

        # Stats
        self._submitted = 0
        self._completed = 0
        self._failed = 0

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def submit(self, task: Any, *args: Any) -> TaskHandle:
        """Launch ``task`` with ``args`` in a fresh isolated context.

        Args:
            task: A function registered with ``@task``, its registry name, or
                a :class:`TaskDescriptor` (then ``args`` must be empty).
            *args: Bound positional arguments.

        Returns:
            The task's handle. Nothing is raised here: every failure,
            including an unregistered task, rejects ``handle.completion``.
        """
        with self._lock:
            self._submitted += 1

        try:
            descriptor = TaskDescriptor.of(task, *args)
        except (UnknownTaskError, TypeError, ImportError) as e:
            return self._rejected(_display_name(task), e)

        try:
            session = _TaskSession(descriptor, self._config, self._on_finished)
        except Exception as e:
            return self._rejected(descriptor.name, e)

        with self._lock:
            self._sessions.add(session)
        session.start()
        return TaskHandle(descriptor.name, session.completion, session.pipe, session)

    def _rejected(self, name: str, error: BaseException) -> TaskHandle:
        logger.error(f"Cannot submit task '{name}': {error}")
        completion: Future = Future()
        completion.set_running_or_notify_cancel()
        completion.set_exception(TaskError(name, error))
        pipe = MessagePipe()
        pipe.close()
        with self._lock:
            self._failed += 1
        return TaskHandle(name, completion, pipe)

    def _on_finished(self, session: _TaskSession) -> None:
        with self._lock:
            self._sessions.discard(session)
            if session.state is TaskState.COMPLETED:
                self._completed += 1
            else:
                self._failed += 1

    def shutdown(
        self,
        wait: bool = True,
        terminate: bool = True,
        timeout: Optional[float] = None,
    ) -> None:
        """Shut the executor down, optionally terminating running tasks.

        Args:
            wait: Wait for the running tasks to be torn down.
            terminate: Fail and tear down tasks that are still running;
                otherwise let them finish.
            timeout: Per-task wait timeout.
        """
        with self._lock:
            sessions = list(self._sessions)
        if terminate:
            for session in sessions:
                session.abort()
        if wait:
            for session in sessions:
                session.join(timeout)
        if sessions and terminate:
            logger.info(f"TaskExecutor terminated {len(sessions)} running task(s)")

    def get_stats(self) -> Dict[str, int]:
        """Get executor statistics."""
        with self._lock:
            return {
                "submitted": self._submitted,
                "completed": self._completed,
                "failed": self._failed,
                "running": len(self._sessions),
            }

    def __enter__(self) -> "TaskExecutor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown(wait=True, terminate=False)


def _display_name(task: Any) -> str:
    if isinstance(task, str):
        return task
    return getattr(task, "__qualname__", None) or repr(task)


__all__ = [
    "TaskState",
    "TaskDescriptor",
    "TaskHandle",
    "TaskExecutor",
]
