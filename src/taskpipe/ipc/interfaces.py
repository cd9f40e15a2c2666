"""Abstract interface for the task channel.

A Channel is one end of an ordered, reliable, bidirectional link between a
caller and an isolated context. Exactly one side binds and exactly one side
connects. Frames are opaque bytes; :mod:`taskpipe.ipc.envelope` gives them
meaning.
"""

from abc import ABC, abstractmethod
from typing import Optional


class Channel(ABC):
    """One end of a task channel."""

    @abstractmethod
    def bind(self, address: str) -> None:
        """Bind to an address (context side)."""
        ...

    @abstractmethod
    def connect(self, address: str) -> None:
        """Connect to a bound address (caller side)."""
        ...

    @abstractmethod
    def send(self, data: bytes) -> None:
        """Send one frame."""
        ...

    @abstractmethod
    def recv(self, timeout_ms: Optional[int] = None) -> Optional[bytes]:
        """Receive one frame.

        Args:
            timeout_ms: Receive timeout. None for blocking wait.

        Returns:
            Frame bytes, or None on timeout.
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the channel is bound or connected."""
        ...

    def __enter__(self) -> "Channel":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
