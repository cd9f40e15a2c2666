"""Exception types raised by taskpipe.

Encode-time gaps are never raised; they are absorbed by the encoder and the
affected field becomes absent on the far side. Everything else that is fatal
to a task is delivered exactly once through the task's completion future,
wrapped in :class:`TaskError`.
"""

from typing import Optional


class DecodeError(ValueError):
    """Raised when an encoded program or envelope cannot be replayed."""


class ContextFault(RuntimeError):
    """Raised when an isolated context crashes or reports an error.

    Attributes:
        error_type: Class name of the exception raised inside the context,
            or None when the context died without reporting one.
        remote_traceback: Formatted traceback from inside the context.
        exit_code: Process exit code, when the context was a process.
    """

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        remote_traceback: Optional[str] = None,
        exit_code: Optional[int] = None,
    ):
        self.error_type = error_type
        self.remote_traceback = remote_traceback
        self.exit_code = exit_code
        super().__init__(message)


class HandshakeError(ContextFault):
    """Raised when a freshly launched context does not answer the handshake."""


class UnknownTaskError(KeyError):
    """Raised when a task or behavior name is not present in its registry."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class TaskError(Exception):
    """Wraps the failure of one task.

    The completion future of a failed task is rejected with this exception;
    the underlying :class:`DecodeError` or :class:`ContextFault` is kept as
    ``cause`` and chained as ``__cause__``.

    Attributes:
        task_name: Registry name of the task that failed.
        cause: The underlying exception.
    """

    def __init__(self, task_name: str, cause: BaseException):
        self.task_name = task_name
        self.cause = cause
        super().__init__(f"Task '{task_name}' failed: {cause}")
        self.__cause__ = cause


__all__ = [
    "DecodeError",
    "ContextFault",
    "HandshakeError",
    "UnknownTaskError",
    "TaskError",
]
