"""Isolated execution contexts.

Components:
- Contexts: where a task's worker runs (thread, process, venv)
- ChannelRelay: the single-threaded I/O loop that owns a task channel
- Worker: the context-side entry point (``python -m taskpipe.process.worker``)
"""

from taskpipe.process.launcher import (
    ContextLauncher,
    ContextInfo,
    BaseContext,
    ThreadContext,
    ProcessContext,
    VenvContext,
)
from taskpipe.process.relay import ChannelRelay

__all__ = [
    # Contexts
    "ContextLauncher",
    "ContextInfo",
    "BaseContext",
    "ThreadContext",
    "ProcessContext",
    "VenvContext",
    # Relay
    "ChannelRelay",
]
