"""ZMQ PAIR based task channel.

Each instance owns its own zmq.Context so that a channel can be created in
any thread or process without sharing context state.

Example:
    Context side (worker):
        >>> channel = ZMQChannel()
        >>> channel.bind("ipc:///tmp/taskpipe.sock")
        >>> data = channel.recv()
        >>> channel.send(b'{"type": "pong"}')
        >>> channel.close()

    Caller side:
        >>> channel = ZMQChannel()
        >>> channel.connect("ipc:///tmp/taskpipe.sock")
        >>> channel.send(b'{"type": "ping"}')
        >>> response = channel.recv(timeout_ms=1000)
        >>> channel.close()

Requires: pyzmq
"""

import logging
from typing import Optional

import zmq

from taskpipe.core.errors import ContextFault
from taskpipe.ipc.interfaces import Channel

logger = logging.getLogger(__name__)


class ZMQChannel(Channel):
    """ZMQ PAIR socket channel.

    Args:
        send_timeout_ms: Send timeout (milliseconds). A send that cannot be
            queued within this time raises :class:`ContextFault`.
        linger_ms: Socket linger time on close (milliseconds).
    """

    def __init__(self, send_timeout_ms: int = 30000, linger_ms: int = 0):
        self._send_timeout_ms = send_timeout_ms
        self._linger_ms = linger_ms
        self._context: Optional[zmq.Context] = None
        self._socket: Optional[zmq.Socket] = None
        self._address: Optional[str] = None

    def _open(self) -> zmq.Socket:
        self._context = zmq.Context()
        self._socket = self._context.socket(zmq.PAIR)
        self._socket.setsockopt(zmq.SNDTIMEO, self._send_timeout_ms)
        self._socket.setsockopt(zmq.LINGER, self._linger_ms)
        return self._socket

    def bind(self, address: str) -> None:
        """Bind the PAIR socket to an address."""
        if self._socket is not None:
            return
        socket = self._open()
        try:
            socket.bind(address)
        except zmq.ZMQError:
            self.close()
            raise
        self._address = address
        logger.debug(f"Channel bound to {address}")

    def connect(self, address: str) -> None:
        """Connect the PAIR socket to a bound address."""
        if self._socket is not None:
            return
        socket = self._open()
        socket.connect(address)
        self._address = address
        logger.debug(f"Channel connected to {address}")

    def send(self, data: bytes) -> None:
        """Send one frame."""
        if self._socket is None:
            raise RuntimeError("Channel not open")
        try:
            self._socket.send(data)
        except zmq.Again:
            raise ContextFault(
                f"Send to {self._address} timed out after {self._send_timeout_ms}ms"
            ) from None

    def recv(self, timeout_ms: Optional[int] = None) -> Optional[bytes]:
        """Receive one frame.

        Args:
            timeout_ms: Receive timeout. None for blocking wait.

        Returns:
            Frame bytes, or None on timeout.
        """
        if self._socket is None:
            return None

        if timeout_ms is not None and not self._socket.poll(timeout_ms, zmq.POLLIN):
            return None
        return self._socket.recv()

    def close(self) -> None:
        """Close the socket and terminate the context."""
        if self._socket is not None:
            try:
                self._socket.close(linger=self._linger_ms)
            except zmq.ZMQError as e:
                logger.debug(f"Error closing channel socket: {e}")
            self._socket = None

        if self._context is not None:
            try:
                self._context.term()
            except zmq.ZMQError as e:
                logger.debug(f"Error terminating channel context: {e}")
            self._context = None

        self._address = None

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    @property
    def address(self) -> Optional[str]:
        return self._address
