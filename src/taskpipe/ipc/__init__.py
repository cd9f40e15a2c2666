"""IPC module for task channels.

- Channel: abstract channel interface
- ZMQChannel: ZeroMQ PAIR implementation (requires pyzmq)
- MessageEnvelope / EnvelopeType: wire frames
- Utilities: IPC address generation and cleanup
"""

from taskpipe.ipc.interfaces import Channel
from taskpipe.ipc.envelope import EnvelopeType, MessageEnvelope
from taskpipe.ipc._util import (
    generate_ipc_address,
    remove_ipc_file,
)
from taskpipe.ipc.zmq_channel import ZMQChannel

__all__ = [
    # Interfaces
    "Channel",
    "ZMQChannel",
    # Envelopes
    "EnvelopeType",
    "MessageEnvelope",
    # Utilities
    "generate_ipc_address",
    "remove_ipc_file",
]
