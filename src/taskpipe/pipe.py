"""MessagePipe: buffering publish/subscribe channel between caller and task.

A pipe has two independent directions. From the task's point of view:

- inbound: messages from the caller. The task subscribes with
  :meth:`MessagePipe.subscribe`; the runtime feeds it with
  :meth:`MessagePipe.post_incoming`.
- outbound: messages to the caller. The task posts with
  :meth:`MessagePipe.post`; the runtime drains it with
  :meth:`MessagePipe.subscribe_outgoing`.

On the caller side the same class is used with the roles mirrored: the
caller posts to the task with ``post`` and receives with ``subscribe``.

While a direction has no subscriber, posted messages are buffered. The first
subscriber receives the whole buffer in arrival order and the buffer is
cleared; later posts are delivered synchronously to every subscriber.

Example:
    >>> pipe = MessagePipe()
    >>> pipe.post_incoming("early")
    >>> received = []
    >>> sub = pipe.subscribe(received.append)
    >>> received
    ['early']
    >>> sub.unsubscribe()
"""

import logging
import threading
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by ``subscribe``; removes exactly one handler."""

    def __init__(self, direction: "_Direction", handler: Handler):
        self._direction = direction
        self._handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Remove the handler. Calling this more than once is a no-op."""
        if not self._active:
            return
        self._active = False
        self._direction.remove(self)


class _Direction:
    """Subscriber list and buffer for one direction of a pipe."""

    def __init__(self, name: str, lock: threading.RLock):
        self.name = name
        self._lock = lock
        self._subscriptions: List[Subscription] = []
        self._buffer: List[Any] = []

    def subscribe(self, handler: Handler) -> Subscription:
        with self._lock:
            subscription = Subscription(self, handler)
            self._subscriptions.append(subscription)

            self.flush_to(handler)
            return subscription

    def flush_to(self, handler: Handler) -> None:
        """Hand the whole buffer to ``handler`` and clear it."""
        with self._lock:
            if not self._buffer:
                return
            pending, self._buffer = self._buffer, []
            logger.debug(f"Flushing {len(pending)} buffered {self.name} message(s)")
            for message in pending:
                handler(message)

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    def post(self, message: Any) -> None:
        with self._lock:
            if not self._subscriptions:
                self._buffer.append(message)
                return
            # Snapshot: a handler may unsubscribe itself during delivery.
            for subscription in list(self._subscriptions):
                if subscription.active:
                    subscription._handler(message)

    def clear(self, keep_buffer: bool = False) -> None:
        with self._lock:
            for subscription in self._subscriptions:
                subscription._active = False
            self._subscriptions.clear()
            if keep_buffer:
                return
            dropped = len(self._buffer)
            self._buffer.clear()
            if dropped:
                logger.debug(f"Dropped {dropped} undelivered {self.name} message(s)")


class MessagePipe:
    """Bidirectional message pipe for one task.

    Delivery happens on the posting thread, in post order per direction.
    Handler exceptions propagate to the poster. Posts after :meth:`close`
    are discarded.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._incoming = _Direction("incoming", self._lock)
        self._outgoing = _Direction("outgoing", self._lock)
        self._closed = False

    # Task-facing API

    def subscribe(self, handler: Handler) -> Subscription:
        """Subscribe to incoming messages."""
        return self._subscribe(self._incoming, handler)

    def post(self, message: Any) -> None:
        """Post an outgoing message."""
        self._post(self._outgoing, message)

    # Runtime-facing API

    def post_incoming(self, message: Any) -> None:
        """Deliver a message arriving from the other side."""
        self._post(self._incoming, message)

    def subscribe_outgoing(self, handler: Handler) -> Subscription:
        """Subscribe to messages posted by this side."""
        return self._subscribe(self._outgoing, handler)

    # Lifecycle

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Drop all subscribers and any undelivered outgoing messages.

        Incoming messages that arrived before the close but found no
        subscriber stay buffered: the first handler subscribed afterwards
        still receives them, once.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._incoming.clear(keep_buffer=True)
            self._outgoing.clear()

    def _subscribe(self, direction: _Direction, handler: Handler) -> Subscription:
        with self._lock:
            if self._closed:
                logger.debug(f"Subscribe to {direction.name} on closed pipe, no further messages")
                direction.flush_to(handler)
                subscription = Subscription(direction, handler)
                subscription._active = False
                return subscription
            return direction.subscribe(handler)

    def _post(self, direction: _Direction, message: Any) -> None:
        with self._lock:
            if self._closed:
                logger.debug(f"Dropped {direction.name} message posted after close")
                return
            direction.post(message)


__all__ = ["MessagePipe", "Subscription", "Handler"]
