"""taskpipe - run work in isolated contexts and talk to it while it runs.

A task is a function registered with :func:`task`. Submitting it launches a
fresh isolated context (thread, process or venv), ships the bound arguments
there as an encoded object graph, and returns a :class:`TaskHandle` whose
pipe carries messages in both directions until the single result arrives.

Object graphs keep their shape across the boundary: shared sub-objects,
cycles, dicts with non-string keys, sets, and instances of classes
registered with :func:`behavior` (methods resolve through the class on the
far side).

Example:
    >>> # mytasks.py
    >>> import taskpipe
    >>>
    >>> @taskpipe.task
    ... def total(pipe, values):
    ...     pipe.post(f"summing {len(values)} values")
    ...     return sum(values)
    >>>
    >>> handle = taskpipe.submit(total, [1, 2, 3])
    >>> handle.pipe.subscribe(print)
    >>> handle.result()
    6
    >>>
    >>> taskpipe.run_all([(total, [1]), (total, [2, 3])]).result()
    [1, 5]

Tasks must live in an importable module: a process context imports the
defining module to resolve the task by name.
"""

__version__ = "0.1.0"

import atexit
import threading
from concurrent.futures import Future
from typing import Any, Iterable, Optional

from taskpipe.core import (
    DecodeError,
    ContextFault,
    HandshakeError,
    UnknownTaskError,
    TaskError,
    IsolationLevel,
    IsolationConfig,
    ExecutorConfig,
    task,
    task_spec_for,
    behavior,
    get_task,
    list_tasks,
    get_behavior,
    list_behaviors,
)
from taskpipe.codec import (
    EncodedProgram,
    GraphEncoder,
    GraphDecoder,
    encode,
    decode,
)
from taskpipe.pipe import MessagePipe, Subscription
from taskpipe.executor import TaskDescriptor, TaskExecutor, TaskHandle, TaskState
from taskpipe.coordinator import TaskCoordinator

_default_lock = threading.Lock()
_default_executor: Optional[TaskExecutor] = None


def get_executor() -> TaskExecutor:
    """Return the process-wide executor, creating it from the environment."""
    global _default_executor
    with _default_lock:
        if _default_executor is None:
            _default_executor = TaskExecutor(ExecutorConfig.from_env())
        return _default_executor


def configure(config: ExecutorConfig) -> TaskExecutor:
    """Replace the process-wide executor with one using ``config``.

    Tasks already running on the previous executor are not affected.
    """
    global _default_executor
    with _default_lock:
        _default_executor = TaskExecutor(config)
        return _default_executor


def submit(task_or_descriptor: Any, *args: Any) -> TaskHandle:
    """Submit a task on the process-wide executor.

    See :meth:`TaskExecutor.submit`.
    """
    return get_executor().submit(task_or_descriptor, *args)


def run_all(entries: Iterable[Any], cancel_on_failure: bool = False) -> Future:
    """Run tasks concurrently on the process-wide executor.

    See :meth:`TaskCoordinator.run_all`.
    """
    return TaskCoordinator(get_executor()).run_all(entries, cancel_on_failure)


@atexit.register
def _shutdown_default_executor() -> None:
    if _default_executor is not None:
        _default_executor.shutdown(wait=True, timeout=5.0)


__all__ = [
    "__version__",
    # Entry points
    "submit",
    "run_all",
    "get_executor",
    "configure",
    # Registration
    "task",
    "task_spec_for",
    "behavior",
    "get_task",
    "list_tasks",
    "get_behavior",
    "list_behaviors",
    # Execution
    "TaskExecutor",
    "TaskHandle",
    "TaskDescriptor",
    "TaskState",
    "TaskCoordinator",
    "MessagePipe",
    "Subscription",
    # Codec
    "EncodedProgram",
    "GraphEncoder",
    "GraphDecoder",
    "encode",
    "decode",
    # Config
    "IsolationLevel",
    "IsolationConfig",
    "ExecutorConfig",
    # Errors
    "DecodeError",
    "ContextFault",
    "HandshakeError",
    "UnknownTaskError",
    "TaskError",
]
