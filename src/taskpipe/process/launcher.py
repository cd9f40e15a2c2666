"""Context launchers for different isolation levels.

A context is the place where one task's worker loop runs:

- ThreadContext: Same process, different thread (IsolationLevel.THREAD)
- ProcessContext: Same venv, different process (IsolationLevel.PROCESS)
- VenvContext: Different venv, different process (IsolationLevel.VENV)

All contexts bind the same kind of channel, so the caller side does not
care which one it talks to. A context only starts and stops the worker; the
handshake and the run protocol are driven by the caller over the channel.

Example:
    >>> from taskpipe.process.launcher import ContextLauncher
    >>> from taskpipe.core import IsolationLevel
    >>>
    >>> context = ContextLauncher.create(level=IsolationLevel.PROCESS)
    >>> context.start()
    >>> # connect a ZMQChannel to context.address, ping, run ...
    >>> context.stop()

For VenvContext:
    >>> context = ContextLauncher.create(
    ...     level=IsolationLevel.VENV,
    ...     venv_path="/path/to/venv",
    ... )
"""

import collections
import logging
import os
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Deque, List, Optional

from taskpipe.core.errors import ContextFault
from taskpipe.core.isolation import IsolationLevel
from taskpipe.ipc import generate_ipc_address, remove_ipc_file

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 40


@dataclass
class ContextInfo:
    """Public context status information for observability.

    Attributes:
        isolation_level: Isolation level name ("THREAD", "PROCESS", "VENV").
        pid: Worker process PID (0 = not started, or a thread context).
        venv_path: Virtual environment path ("" = same venv).
    """
    isolation_level: str
    pid: int
    venv_path: str


class BaseContext(ABC):
    """Abstract base class for isolated contexts.

    Every context owns a fresh IPC address that its worker binds.
    """

    def __init__(self, poll_interval_ms: int = 10, linger_sec: float = 5.0):
        self._poll_interval_ms = poll_interval_ms
        self._linger_sec = linger_sec
        self._address, self._ipc_file = generate_ipc_address(prefix="taskpipe")

    @property
    def address(self) -> str:
        """Channel address the worker binds."""
        return self._address

    @abstractmethod
    def start(self) -> None:
        """Start the worker.

        Raises:
            ContextFault: If the worker cannot be started.
        """
        ...

    @abstractmethod
    def stop(self, timeout: float = 5.0) -> None:
        """Wait for the worker to exit, forcing it after ``timeout`` seconds.

        Safe to call more than once.
        """
        ...

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the worker is still running."""
        ...

    @property
    def exit_code(self) -> Optional[int]:
        """Worker exit code, or None while running or for thread contexts."""
        return None

    def diagnostics(self) -> str:
        """Human-readable description of how the worker ended."""
        return ""

    @property
    @abstractmethod
    def context_info(self) -> ContextInfo:
        """Return public context status information for observability."""
        ...

    def _cleanup_ipc(self) -> None:
        remove_ipc_file(self._ipc_file)


class ThreadContext(BaseContext):
    """Context that runs the worker loop on a daemon thread.

    The task shares the process but not its data: arguments, messages and
    results still cross the channel through the codec.
    """

    def __init__(self, poll_interval_ms: int = 10, linger_sec: float = 5.0):
        super().__init__(poll_interval_ms, linger_sec)
        self._thread: Optional[threading.Thread] = None
        self._exit_code: Optional[int] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"taskpipe-context-{os.path.basename(self._ipc_file)}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Started thread context at {self._address}")

    def _run(self) -> None:
        from taskpipe.process.worker import run_worker

        self._exit_code = run_worker(
            self._address,
            poll_interval_ms=self._poll_interval_ms,
            linger_sec=self._linger_sec,
        )

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                # Threads cannot be killed; the daemon flag lets the process exit.
                logger.warning("Thread context did not exit in time, abandoning it")
        self._cleanup_ipc()

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def diagnostics(self) -> str:
        if self._exit_code:
            return f"worker thread exited with code {self._exit_code}"
        return "worker thread exited"

    @property
    def context_info(self) -> ContextInfo:
        return ContextInfo(isolation_level="THREAD", pid=0, venv_path="")


class _StderrTail:
    """Drains a child's stderr on a daemon thread, keeping the last lines."""

    def __init__(self, stream, max_lines: int = STDERR_TAIL_LINES):
        self._lines: Deque[str] = collections.deque(maxlen=max_lines)
        self._thread = threading.Thread(
            target=self._drain, args=(stream,), name="taskpipe-stderr", daemon=True
        )
        self._thread.start()

    def _drain(self, stream) -> None:
        for line in stream:
            line = line.rstrip("\n")
            self._lines.append(line)
            logger.debug(f"[worker] {line}")
        stream.close()

    def text(self, join_timeout: float = 0.5) -> str:
        self._thread.join(join_timeout)
        return "\n".join(self._lines)


class VenvContext(BaseContext):
    """Context that runs the worker in a subprocess of a given interpreter.

    The worker is started as ``<python> -m taskpipe.process.worker`` and
    must have taskpipe and the task's module importable.

    Args:
        venv_path: Virtual environment whose ``bin/python`` runs the worker.
        python_executable: Interpreter to use instead of the venv's.
        forward_sys_path: Forward this process's ``sys.path`` via PYTHONPATH.
        extra_sys_path: Additional import paths for the worker.
        log_level: Worker log level.
    """

    def __init__(
        self,
        venv_path: Optional[str] = None,
        python_executable: Optional[str] = None,
        forward_sys_path: bool = False,
        extra_sys_path: Optional[List[str]] = None,
        log_level: str = "INFO",
        poll_interval_ms: int = 10,
        linger_sec: float = 5.0,
    ):
        super().__init__(poll_interval_ms, linger_sec)
        if python_executable is None:
            if venv_path is None:
                raise ValueError("venv_path or python_executable is required")
            python_executable = os.path.join(venv_path, "bin", "python")
        self._venv_path = venv_path or ""
        self._python = python_executable
        self._forward_sys_path = forward_sys_path
        self._extra_sys_path = list(extra_sys_path or [])
        self._log_level = log_level
        self._process: Optional[subprocess.Popen] = None
        self._stderr: Optional[_StderrTail] = None

    def _command(self) -> List[str]:
        return [
            self._python,
            "-m", "taskpipe.process.worker",
            "--ipc-address", self._address,
            "--poll-interval-ms", str(self._poll_interval_ms),
            "--linger-sec", str(self._linger_sec),
            "--parent-pid", str(os.getpid()),
            "--log-level", self._log_level,
        ]

    def _environment(self) -> dict:
        env = dict(os.environ)
        paths = list(self._extra_sys_path)
        if self._forward_sys_path:
            paths.extend(p or os.getcwd() for p in sys.path)
        else:
            paths.append(os.getcwd())
        existing = env.get("PYTHONPATH")
        if existing:
            paths.append(existing)
        env["PYTHONPATH"] = os.pathsep.join(dict.fromkeys(paths))
        return env

    def start(self) -> None:
        if self._process is not None:
            return

        if not os.path.isfile(self._python):
            raise ContextFault(f"Worker interpreter not found at {self._python}")

        cmd = self._command()
        logger.info(f"Starting worker subprocess: {' '.join(cmd)}")

        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                env=self._environment(),
            )
        except OSError as e:
            self._cleanup_ipc()
            raise ContextFault(f"Failed to start worker subprocess: {e}") from e

        self._stderr = _StderrTail(self._process.stderr)

    def stop(self, timeout: float = 5.0) -> None:
        if self._process is not None:
            try:
                self._process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._terminate_process()
        self._cleanup_ipc()

    def _terminate_process(self) -> None:
        """Terminate the subprocess, killing it if it does not comply."""
        try:
            self._process.terminate()
            self._process.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            logger.warning("Worker process did not terminate, killing")
            self._process.kill()
            self._process.wait()

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def exit_code(self) -> Optional[int]:
        if self._process is None:
            return None
        return self._process.poll()

    def diagnostics(self) -> str:
        code = self.exit_code
        message = f"worker process exited with code {code}"
        if self._stderr is not None:
            tail = self._stderr.text()
            if tail:
                message += f"\n--- worker stderr ---\n{tail}"
        return message

    @property
    def pid(self) -> int:
        return self._process.pid if self._process else 0

    @property
    def context_info(self) -> ContextInfo:
        return ContextInfo(isolation_level="VENV", pid=self.pid, venv_path=self._venv_path)


class ProcessContext(BaseContext):
    """Context that runs the worker in a subprocess of this interpreter.

    This is a convenience wrapper around VenvContext that uses the current
    Python environment and forwards ``sys.path``, so task modules resolve
    exactly as they do in the caller.
    """

    def __init__(
        self,
        extra_sys_path: Optional[List[str]] = None,
        log_level: str = "INFO",
        poll_interval_ms: int = 10,
        linger_sec: float = 5.0,
    ):
        self._delegate = VenvContext(
            python_executable=sys.executable,
            forward_sys_path=True,
            extra_sys_path=extra_sys_path,
            log_level=log_level,
            poll_interval_ms=poll_interval_ms,
            linger_sec=linger_sec,
        )

    @property
    def address(self) -> str:
        return self._delegate.address

    def start(self) -> None:
        self._delegate.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._delegate.stop(timeout)

    @property
    def is_alive(self) -> bool:
        return self._delegate.is_alive

    @property
    def exit_code(self) -> Optional[int]:
        return self._delegate.exit_code

    def diagnostics(self) -> str:
        return self._delegate.diagnostics()

    @property
    def context_info(self) -> ContextInfo:
        info = self._delegate.context_info
        return ContextInfo(isolation_level="PROCESS", pid=info.pid, venv_path="")


class ContextLauncher:
    """Factory for creating contexts based on isolation level."""

    @staticmethod
    def create(
        level: IsolationLevel,
        venv_path: Optional[str] = None,
        **kwargs,
    ) -> BaseContext:
        """Create a context for the specified isolation level.

        Args:
            level: The isolation level to use.
            venv_path: Path to venv (required for VENV level).
            **kwargs: Additional arguments passed to the context
                (``poll_interval_ms``, ``linger_sec``, and for process
                contexts ``extra_sys_path`` and ``log_level``).

        Returns:
            A context for the specified isolation level.

        Raises:
            ValueError: If required parameters are missing.
        """
        if level == IsolationLevel.THREAD:
            kwargs.pop("extra_sys_path", None)
            kwargs.pop("log_level", None)
            return ThreadContext(**kwargs)

        elif level == IsolationLevel.PROCESS:
            return ProcessContext(**kwargs)

        elif level == IsolationLevel.VENV:
            if venv_path is None:
                raise ValueError("venv_path is required for VENV isolation level")
            return VenvContext(venv_path=venv_path, **kwargs)

        else:
            raise ValueError(f"Unknown isolation level: {level}")


__all__ = [
    "ContextInfo",
    "BaseContext",
    "ThreadContext",
    "VenvContext",
    "ProcessContext",
    "ContextLauncher",
]
