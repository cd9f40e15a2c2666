"""TaskCoordinator - run independent tasks concurrently, collect in order.

Architecture:
    entries ──→ [one context per entry] ──→ Future[list]
                    │
                    ├── task 0 ──→ results[0]
                    ├── task 1 ──→ results[1]
                    └── task 2 ──→ results[2]

All entries are launched at once. Results are placed by submission index,
not by completion order. The aggregate future is rejected with the first
failure; by default the remaining tasks keep running to completion, and
``cancel_on_failure=True`` tears them down instead.

Example:
    >>> from taskpipe import TaskCoordinator
    >>> from tests.tasks import sleep_then_return
    >>>
    >>> coordinator = TaskCoordinator()
    >>> future = coordinator.run_all([
    ...     (sleep_then_return, 0.5, 1),
    ...     (sleep_then_return, 0.0, 2),
    ... ])
    >>> future.result()
    [1, 2]
"""

import logging
import threading
from concurrent.futures import Future
from typing import Any, Iterable, List, Optional

from taskpipe.core.config import ExecutorConfig
from taskpipe.core.errors import ContextFault, TaskError
from taskpipe.executor import TaskExecutor, TaskHandle

logger = logging.getLogger(__name__)


class TaskCoordinator:
    """Fan-out/fan-in over a :class:`TaskExecutor`.

    Args:
        executor: Executor used to submit tasks. A new one is created from
            ``config`` when omitted.
        config: Executor configuration when no executor is given.

    Entries accepted by :meth:`run_all`:
        - a :class:`TaskDescriptor`,
        - a registered task (or task name) taking no arguments,
        - a tuple ``(task, *args)``.
    """

    def __init__(
        self,
        executor: Optional[TaskExecutor] = None,
        config: Optional[ExecutorConfig] = None,
    ):
        self._executor = executor or TaskExecutor(config)

        # Stats
        self._batches = 0
        self._failed_batches = 0

    @property
    def executor(self) -> TaskExecutor:
        return self._executor

    def submit_all(self, entries: Iterable[Any]) -> List[TaskHandle]:
        """Launch every entry and return the handles in entry order."""
        handles = []
        for entry in entries:
            if isinstance(entry, tuple) and entry:
                handles.append(self._executor.submit(*entry))
            else:
                handles.append(self._executor.submit(entry))
        return handles

    def run_all(self, entries: Iterable[Any], cancel_on_failure: bool = False) -> Future:
        """Run all entries concurrently.

        Args:
            entries: Tasks to run, see the class docstring.
            cancel_on_failure: Terminate the remaining tasks when one fails.

        Returns:
            Future resolved with the results in entry order, or rejected
            with the first :class:`~taskpipe.core.errors.TaskError`.
        """
        handles = self.submit_all(entries)
        self._batches += 1

        aggregate: Future = Future()
        aggregate.set_running_or_notify_cancel()

        if not handles:
            aggregate.set_result([])
            return aggregate

        results: List[Any] = [None] * len(handles)
        remaining = [len(handles)]
        lock = threading.Lock()

        def on_done(index: int, completion: Future) -> None:
            if completion.cancelled():
                error = TaskError(handles[index].name, ContextFault("Task was cancelled"))
            else:
                error = completion.exception()
            with lock:
                if aggregate.done():
                    return
                if error is not None:
                    self._failed_batches += 1
                    logger.error(
                        f"Task {index} ('{handles[index].name}') failed, "
                        f"rejecting batch of {len(handles)}"
                    )
                    aggregate.set_exception(error)
                else:
                    results[index] = completion.result()
                    remaining[0] -= 1
                    if remaining[0] == 0:
                        aggregate.set_result(list(results))
                    return

            if cancel_on_failure:
                for other in handles:
                    if not other.done():
                        other.terminate()

        for index, handle in enumerate(handles):
            handle.add_done_callback(lambda completion, i=index: on_done(i, completion))

        logger.debug(f"Launched batch of {len(handles)} task(s)")
        return aggregate

    def get_stats(self) -> dict:
        """Get coordinator statistics."""
        return {
            "batches": self._batches,
            "failed_batches": self._failed_batches,
        }


__all__ = ["TaskCoordinator"]
