"""Task and behavior registries.

Only data crosses into an isolated context. Code is never shipped: a task
body is named by its registry entry, and the worker resolves the name after
importing the module that defines it. Objects whose behavior comes from their
class are rebuilt by resolving the class from the behavior registry by name.

Both registries are closed: an unregistered function cannot be dispatched,
and instances of unregistered classes do not survive encoding.

Example:
    >>> import taskpipe
    >>>
    >>> @taskpipe.task
    ... def add(a, b):
    ...     return a + b
    >>>
    >>> @taskpipe.task(pass_pipe=True)
    ... def chat(pipe, greeting):
    ...     pipe.post(greeting)
    >>>
    >>> @taskpipe.behavior
    ... class Point:
    ...     def norm(self):
    ...         return (self.x ** 2 + self.y ** 2) ** 0.5
"""

import importlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from taskpipe.core.errors import UnknownTaskError

logger = logging.getLogger(__name__)

TASK_ATTR = "__taskpipe_task__"
BEHAVIOR_ATTR = "__taskpipe_behavior__"

_task_registry: Dict[str, "TaskSpec"] = {}
_behavior_registry: Dict[str, type] = {}


@dataclass(frozen=True)
class TaskSpec:
    """A registered task body.

    Attributes:
        name: Registry name (defaults to ``module:qualname``).
        func: The task body.
        module: Module that defines the task; imported by the worker.
        pass_pipe: True to always receive the pipe as first argument, False
            to never receive it, None to decide by arity.
    """

    name: str
    func: Callable[..., Any]
    module: str
    pass_pipe: Optional[bool] = None

    def wants_pipe(self, arg_count: int) -> bool:
        """Whether the pipe is prepended to ``arg_count`` bound arguments.

        Without an explicit ``pass_pipe``, the pipe is passed when the body
        declares more required positional parameters than were supplied.
        """
        if self.pass_pipe is not None:
            return self.pass_pipe
        return _required_positional(self.func) > arg_count


def _required_positional(func: Callable[..., Any]) -> int:
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return 0
    return sum(
        1
        for p in sig.parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        and p.default is p.empty
    )


def _default_name(obj: Any) -> str:
    return f"{obj.__module__}:{obj.__qualname__}"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def task(
    name_or_func: Any = None,
    *,
    name: Optional[str] = None,
    pass_pipe: Optional[bool] = None,
):
    """Register a function as a task body.

    Usable bare (``@task``), with a name (``@task("resize")``) or with
    keyword options (``@task(pass_pipe=True)``). The function is returned
    unchanged apart from a marker attribute, so it stays directly callable.

    Args:
        name_or_func: Task name, or the function when used bare.
        name: Task name (keyword form).
        pass_pipe: Explicit pipe-injection flag, see :class:`TaskSpec`.
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        task_name = name or _default_name(func)
        spec = TaskSpec(
            name=task_name,
            func=func,
            module=func.__module__,
            pass_pipe=pass_pipe,
        )
        existing = _task_registry.get(task_name)
        if existing is not None and existing.func is not func:
            logger.debug(f"Replacing registered task '{task_name}'")
        _task_registry[task_name] = spec
        setattr(func, TASK_ATTR, task_name)
        return func

    if callable(name_or_func):
        return decorator(name_or_func)
    if isinstance(name_or_func, str):
        name = name_or_func
    return decorator


def task_spec_for(func: Callable[..., Any]) -> Optional[TaskSpec]:
    """Return the spec a function was registered under, if any."""
    task_name = getattr(func, TASK_ATTR, None)
    if task_name is None:
        return None
    spec = _task_registry.get(task_name)
    if spec is None or spec.func is not func:
        return None
    return spec


def get_task(name: str, module: Optional[str] = None) -> TaskSpec:
    """Resolve a task by name, importing its defining module if needed.

    Args:
        name: Registry name of the task.
        module: Module to import when the name is not registered yet.

    Returns:
        The TaskSpec.

    Raises:
        UnknownTaskError: If the task is not registered after the import.
        ImportError: If the defining module cannot be imported.
    """
    if name not in _task_registry and module:
        importlib.import_module(module)
    try:
        return _task_registry[name]
    except KeyError:
        raise UnknownTaskError(
            f"No task registered with name '{name}'. "
            f"Available: {sorted(_task_registry.keys())}"
        ) from None


def list_tasks() -> List[str]:
    """Names of all registered tasks."""
    return sorted(_task_registry.keys())


# ---------------------------------------------------------------------------
# Behaviors
# ---------------------------------------------------------------------------

class BehaviorShell:
    """Blank object a decoded instance starts as until its class is linked."""


def _check_layout(cls: type) -> None:
    shell = BehaviorShell()
    try:
        shell.__class__ = cls
    except TypeError as e:
        raise TypeError(
            f"Behavior class {cls.__qualname__} must be a plain Python class "
            f"(no __slots__, no builtin base): {e}"
        ) from None


def behavior(cls: Optional[type] = None, *, name: Optional[str] = None):
    """Register a class whose instances may cross the task boundary.

    Instances travel as their own attributes plus a reference to this
    class; methods and class attributes are resolved on the far side from
    the registry and never become instance attributes.

    Args:
        cls: The class, when used bare.
        name: Behavior name (defaults to ``module:qualname``).

    Raises:
        TypeError: If instances of the class cannot be rebuilt from a blank
            object (``__slots__`` or a builtin base such as ``dict``).
    """
    def decorator(klass: type) -> type:
        _check_layout(klass)
        behavior_name = name or _default_name(klass)
        _behavior_registry[behavior_name] = klass
        # Read back through cls.__dict__ so subclasses do not inherit the name.
        setattr(klass, BEHAVIOR_ATTR, behavior_name)
        return klass

    if cls is not None:
        return decorator(cls)
    return decorator


def behavior_ref(cls: type) -> Optional[Tuple[str, str]]:
    """Return ``(name, module)`` for a registered class, else None.

    Only the class that was registered matches; an unregistered subclass of
    a registered class is not considered registered.
    """
    behavior_name = cls.__dict__.get(BEHAVIOR_ATTR)
    if behavior_name is None or _behavior_registry.get(behavior_name) is not cls:
        return None
    return behavior_name, cls.__module__


def get_behavior(name: str, module: Optional[str] = None) -> type:
    """Resolve a behavior class by name, importing its module if needed.

    Raises:
        UnknownTaskError: If the behavior is not registered after the import.
    """
    if name not in _behavior_registry and module:
        importlib.import_module(module)
    try:
        return _behavior_registry[name]
    except KeyError:
        raise UnknownTaskError(
            f"No behavior registered with name '{name}'. "
            f"Available: {sorted(_behavior_registry.keys())}"
        ) from None


def list_behaviors() -> List[str]:
    """Names of all registered behaviors."""
    return sorted(_behavior_registry.keys())


__all__ = [
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
