"""Isolation levels for task execution.

IsolationLevel controls where a task's isolated context lives. Every level
keeps the caller and the task apart at the data level: arguments, messages
and results always cross through the graph codec, so nothing is shared by
reference.

Example:
    >>> from taskpipe.core import IsolationLevel, IsolationConfig
    >>>
    >>> config = IsolationConfig(
    ...     default_level=IsolationLevel.PROCESS,
    ...     overrides={"tests.tasks:echo": IsolationLevel.THREAD},
    ... )
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Optional


class IsolationLevel(IntEnum):
    """Isolation level for a task's execution context.

    Levels:
        THREAD: Same process, different thread. Cheap; data is still copied.
        PROCESS: Same venv, different process. Provides memory isolation.
        VENV: Different venv, different process. Resolves dependency conflicts.
    """
    THREAD = 1      # Same process, different thread
    PROCESS = 2     # Same venv, different process
    VENV = 3        # Different venv, different process

    @classmethod
    def from_string(cls, s: str) -> "IsolationLevel":
        """Parse isolation level from string.

        Args:
            s: String like "thread", "process", "venv".

        Returns:
            Corresponding IsolationLevel.

        Raises:
            ValueError: If string is not a valid level name.
        """
        mapping = {
            "thread": cls.THREAD,
            "process": cls.PROCESS,
            "venv": cls.VENV,
        }
        s_lower = s.lower()
        if s_lower not in mapping:
            raise ValueError(
                f"Unknown isolation level: {s}. "
                f"Valid levels: {', '.join(mapping.keys())}"
            )
        return mapping[s_lower]


@dataclass
class IsolationConfig:
    """Per-task isolation settings.

    Overrides take precedence over the default level.

    Attributes:
        default_level: Isolation level for tasks without an override.
        overrides: Per-task isolation level overrides, keyed by task name.
        venv_paths: Mapping from task name to venv path (for VENV level).
    """

    default_level: IsolationLevel = IsolationLevel.PROCESS
    overrides: Dict[str, IsolationLevel] = field(default_factory=dict)
    venv_paths: Dict[str, str] = field(default_factory=dict)

    def get_level(self, task_name: str) -> IsolationLevel:
        """Get the effective isolation level for a task."""
        return self.overrides.get(task_name, self.default_level)

    def get_venv_path(self, task_name: str) -> Optional[str]:
        """Get the venv path for a task, or None if not configured."""
        return self.venv_paths.get(task_name)
