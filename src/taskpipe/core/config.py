"""Executor configuration.

Defaults can be overridden from the environment:

- ``TASKPIPE_ISOLATION``: default isolation level ("thread", "process", "venv").
- ``TASKPIPE_VENV``: venv used for VENV isolation when no per-task path is set.
- ``TASKPIPE_HANDSHAKE_TIMEOUT``: seconds to wait for a context to start.
- ``TASKPIPE_LOG_LEVEL``: log level passed to worker processes.

Example:
    >>> from taskpipe.core import ExecutorConfig, IsolationLevel
    >>>
    >>> config = ExecutorConfig.from_env()
    >>> config.isolation.default_level = IsolationLevel.THREAD
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from taskpipe.core.isolation import IsolationConfig, IsolationLevel

ENV_ISOLATION = "TASKPIPE_ISOLATION"
ENV_VENV = "TASKPIPE_VENV"
ENV_HANDSHAKE_TIMEOUT = "TASKPIPE_HANDSHAKE_TIMEOUT"
ENV_LOG_LEVEL = "TASKPIPE_LOG_LEVEL"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class ExecutorConfig:
    """Configuration for :class:`~taskpipe.executor.TaskExecutor`.

    Attributes:
        isolation: Default and per-task isolation levels.
        venv_path: Fallback venv for VENV isolation.
        handshake_timeout_sec: How long a new context may take to answer
            the startup handshake.
        poll_interval_ms: Socket poll interval of the relay loops.
        shutdown_timeout_sec: Grace period before a worker process is killed.
        log_level: Log level for worker processes.
        extra_sys_path: Additional import paths forwarded to worker processes.
    """

    isolation: IsolationConfig = field(default_factory=IsolationConfig)
    venv_path: Optional[str] = None
    handshake_timeout_sec: float = 30.0
    poll_interval_ms: int = 10
    shutdown_timeout_sec: float = 5.0
    log_level: str = "INFO"
    extra_sys_path: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"Unknown log level: {self.log_level}. "
                f"Valid levels: {', '.join(LOG_LEVELS)}"
            )
        if self.handshake_timeout_sec <= 0:
            raise ValueError("handshake_timeout_sec must be positive")
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")

    def level_for(self, task_name: str) -> IsolationLevel:
        """Effective isolation level for a task."""
        return self.isolation.get_level(task_name)

    def venv_for(self, task_name: str) -> Optional[str]:
        """Venv path for a task, falling back to ``venv_path``."""
        return self.isolation.get_venv_path(task_name) or self.venv_path

    @classmethod
    def from_env(cls, **overrides) -> "ExecutorConfig":
        """Build a config from ``TASKPIPE_*`` environment variables.

        Args:
            **overrides: Field values that take precedence over the environment.

        Returns:
            A new ExecutorConfig.
        """
        kwargs = {}

        level = os.environ.get(ENV_ISOLATION)
        if level:
            kwargs["isolation"] = IsolationConfig(
                default_level=IsolationLevel.from_string(level)
            )

        venv = os.environ.get(ENV_VENV)
        if venv:
            kwargs["venv_path"] = venv

        timeout = os.environ.get(ENV_HANDSHAKE_TIMEOUT)
        if timeout:
            try:
                kwargs["handshake_timeout_sec"] = float(timeout)
            except ValueError:
                raise ValueError(
                    f"{ENV_HANDSHAKE_TIMEOUT} must be a number, got {timeout!r}"
                ) from None

        log_level = os.environ.get(ENV_LOG_LEVEL)
        if log_level:
            kwargs["log_level"] = log_level

        kwargs.update(overrides)
        return cls(**kwargs)
