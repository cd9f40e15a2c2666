"""ChannelRelay: the socket-owning I/O loop of one task.

ZeroMQ sockets must not be shared between threads, so every channel is
driven by exactly one thread running a relay. Other threads hand frames to
the relay through :meth:`ChannelRelay.send`, which only enqueues.

Each turn of the loop:

1. sends everything queued for the peer, in enqueue order,
2. waits up to ``poll_interval_ms`` for one inbound frame and dispatches it,
3. calls ``on_idle`` when nothing arrived.

Both the caller-side session and the worker run a relay over their end of
the channel.
"""

import logging
import queue
import threading
from typing import Callable, Optional

from taskpipe.ipc.envelope import MessageEnvelope
from taskpipe.ipc.interfaces import Channel

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[MessageEnvelope], None]


class ChannelRelay:
    """Single-threaded pump between a channel and its handlers.

    Args:
        channel: Open channel owned by the thread that calls :meth:`run`.
        on_envelope: Called on the relay thread for every inbound envelope.
        on_idle: Called on the relay thread after a poll that received
            nothing.
        poll_interval_ms: Inbound poll timeout per turn.
    """

    def __init__(
        self,
        channel: Channel,
        on_envelope: EnvelopeHandler,
        on_idle: Optional[Callable[[], None]] = None,
        poll_interval_ms: int = 10,
    ):
        self._channel = channel
        self._on_envelope = on_envelope
        self._on_idle = on_idle
        self._poll_interval_ms = poll_interval_ms
        self._outbox: "queue.Queue[MessageEnvelope]" = queue.Queue()
        self._stop = threading.Event()

    def send(self, envelope: MessageEnvelope) -> None:
        """Queue an envelope for the peer. Safe from any thread."""
        self._outbox.put(envelope)

    def stop(self) -> None:
        """Ask the loop to exit after the current turn."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def flush(self) -> int:
        """Send every queued envelope now. Relay thread only.

        Returns:
            Number of envelopes sent.
        """
        sent = 0
        while True:
            try:
                envelope = self._outbox.get_nowait()
            except queue.Empty:
                return sent
            self._channel.send(envelope.to_bytes())
            sent += 1

    def poll(self, timeout_ms: Optional[int] = None) -> bool:
        """Receive and dispatch at most one envelope. Relay thread only.

        Returns:
            True if an envelope was dispatched.
        """
        raw = self._channel.recv(
            timeout_ms=self._poll_interval_ms if timeout_ms is None else timeout_ms
        )
        if raw is None:
            return False
        envelope = MessageEnvelope.from_bytes(raw)
        logger.debug(f"Received '{envelope.type}' envelope")
        self._on_envelope(envelope)
        return True

    def drain(self) -> int:
        """Dispatch every envelope that is already waiting."""
        count = 0
        while not self.stopped and self.poll(timeout_ms=0):
            count += 1
        return count

    def run_once(self) -> None:
        self.flush()
        if self.stopped:
            return
        if not self.poll() and not self.stopped and self._on_idle is not None:
            self._on_idle()

    def run(self) -> None:
        """Pump until :meth:`stop` is called.

        Envelopes queued before the stop are still sent. Exceptions from
        the channel or the handlers propagate to the caller.
        """
        while not self.stopped:
            self.run_once()
        self.flush()


__all__ = ["ChannelRelay", "EnvelopeHandler"]
