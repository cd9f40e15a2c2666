"""Core building blocks for taskpipe.

- Errors: DecodeError, ContextFault, HandshakeError, UnknownTaskError, TaskError
- IsolationLevel / IsolationConfig: where a task's context lives
- ExecutorConfig: executor settings with environment overrides
- Registries: @task and @behavior
"""

from taskpipe.core.errors import (
    DecodeError,
    ContextFault,
    HandshakeError,
    UnknownTaskError,
    TaskError,
)
from taskpipe.core.isolation import IsolationLevel, IsolationConfig
from taskpipe.core.config import ExecutorConfig
from taskpipe.core.registry import (
    TaskSpec,
    task,
    task_spec_for,
    get_task,
    list_tasks,
    BehaviorShell,
    behavior,
    behavior_ref,
    get_behavior,
    list_behaviors,
)

__all__ = [
    # Errors
    "DecodeError",
    "ContextFault",
    "HandshakeError",
    "UnknownTaskError",
    "TaskError",
    # Isolation
    "IsolationLevel",
    "IsolationConfig",
    # Config
    "ExecutorConfig",
    # Registries
    "TaskSpec",
    "task",
    "task_spec_for",
    "get_task",
    "list_tasks",
    "BehaviorShell",
    "behavior",
    "behavior_ref",
    "get_behavior",
    "list_behaviors",
]
