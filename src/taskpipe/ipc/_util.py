"""IPC utility functions.

Shared utilities for IPC address generation and socket file cleanup.
"""

import os
import tempfile
from typing import Tuple


def generate_ipc_address(prefix: str = "taskpipe") -> Tuple[str, str]:
    """Generate a unique IPC address for a task's channel.

    Args:
        prefix: Prefix for the socket file name.

    Returns:
        Tuple of (zmq_address, file_path) where zmq_address is like
        "ipc:///tmp/taskpipe-12345-xxxx.sock" and file_path is the
        underlying socket file path.
    """
    ipc_file = tempfile.mktemp(
        prefix=f"{prefix}-{os.getpid()}-",
        suffix=".sock",
    )
    return f"ipc://{ipc_file}", ipc_file


def remove_ipc_file(ipc_file: str) -> None:
    """Remove a socket file left behind by a bound channel."""
    if ipc_file and os.path.exists(ipc_file):
        try:
            os.unlink(ipc_file)
        except OSError:
            pass
