"""Wire envelopes exchanged over a task channel.

Every frame is a JSON object with a ``type`` field:

======== ================= ==========================================
type     direction         body
======== ================= ==========================================
ping     caller -> context handshake request
pong     context -> caller ``pid``, ``version``
run      caller -> context ``task``, ``module``, ``args``, ``pass_pipe``
message  both              ``payload`` (encoded program)
result   context -> caller ``payload`` (encoded program)
fault    context -> caller ``error``, ``error_type``, ``traceback``
shutdown caller -> context none
======== ================= ==========================================

Unknown types decode fine; the receiving loop decides what to do with them.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from taskpipe.core.errors import DecodeError


class EnvelopeType(str, Enum):
    PING = "ping"
    PONG = "pong"
    RUN = "run"
    MESSAGE = "message"
    RESULT = "result"
    FAULT = "fault"
    SHUTDOWN = "shutdown"


@dataclass
class MessageEnvelope:
    """One frame on a task channel.

    Attributes:
        type: Envelope type; a plain string so unknown types survive parsing.
        body: Type-specific fields.
    """

    type: str
    body: Dict[str, Any] = field(default_factory=dict)

    def is_a(self, kind: EnvelopeType) -> bool:
        return self.type == kind.value

    @property
    def payload(self) -> Any:
        """Encoded program carried by ``message`` and ``result`` envelopes."""
        try:
            return self.body["payload"]
        except KeyError:
            raise DecodeError(f"'{self.type}' envelope has no payload") from None

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def ping(cls) -> "MessageEnvelope":
        return cls(EnvelopeType.PING.value)

    @classmethod
    def pong(cls, pid: int, version: str) -> "MessageEnvelope":
        return cls(EnvelopeType.PONG.value, {"pid": pid, "version": version})

    @classmethod
    def run(
        cls,
        task: str,
        module: str,
        args: Dict[str, Any],
        pass_pipe: Optional[bool] = None,
    ) -> "MessageEnvelope":
        return cls(
            EnvelopeType.RUN.value,
            {"task": task, "module": module, "args": args, "pass_pipe": pass_pipe},
        )

    @classmethod
    def message(cls, payload: Dict[str, Any]) -> "MessageEnvelope":
        return cls(EnvelopeType.MESSAGE.value, {"payload": payload})

    @classmethod
    def result(cls, payload: Dict[str, Any]) -> "MessageEnvelope":
        return cls(EnvelopeType.RESULT.value, {"payload": payload})

    @classmethod
    def fault(
        cls,
        error: str,
        error_type: Optional[str] = None,
        traceback: Optional[str] = None,
    ) -> "MessageEnvelope":
        return cls(
            EnvelopeType.FAULT.value,
            {"error": error, "error_type": error_type, "traceback": traceback},
        )

    @classmethod
    def shutdown(cls) -> "MessageEnvelope":
        return cls(EnvelopeType.SHUTDOWN.value)

    # ------------------------------------------------------------------
    # Wire form
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.body)
        data["type"] = self.type
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "MessageEnvelope":
        if not isinstance(data, dict):
            raise DecodeError(f"Envelope must be a JSON object, got {type(data).__name__}")
        kind = data.get("type")
        if not isinstance(kind, str):
            raise DecodeError(f"Envelope has no type: {data!r}")
        body = {k: v for k, v in data.items() if k != "type"}
        return cls(kind, body)

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), allow_nan=False).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "MessageEnvelope":
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise DecodeError(f"Envelope is not valid JSON: {e}") from e
        return cls.from_dict(data)


__all__ = ["EnvelopeType", "MessageEnvelope"]
