from __future__ import annotations

import base64
import dataclasses
import threading
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Tuple


OTR_MESSAGE_ADD = "conversation.otr-message-add"


@dataclass(frozen=True)
class OtrMessageEvent:
    """One encrypted copy of a message, addressed to a single recipient device."""

    conv_id: str
    msg_id: str
    sender_user_id: str
    sender_client_id: str
    recipient_user_id: str
    recipient_client_id: str
    data_b64: str
    ts_ms: int
    seq: int = 0
    type: str = OTR_MESSAGE_ADD

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "conversation": self.conv_id,
            "seq": self.seq,
            "id": self.msg_id,
            "from": self.sender_user_id,
            "time_ms": self.ts_ms,
            "data": {
                "sender": self.sender_client_id,
                "recipient": self.recipient_client_id,
                "text": self.data_b64,
            },
            "to": self.recipient_user_id,
        }


def to_b64(data: bytes | str) -> str:
    if isinstance(data, bytes):
        return base64.b64encode(data).decode("ascii")
    return data


class ConversationLog:
    """Append-only, ordered event log of a single conversation.

    At most one event is kept per ``(msg_id, recipient_client_id)``. Events
    that carry neither attribute are opaque and keyed by identity.
    """

    def __init__(self, conv_id: str) -> None:
        self.conv_id = conv_id
        self._lock = threading.RLock()
        self._events: List[Any] = []
        self._idempotency: Dict[Hashable, Any] = {}

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: Any) -> Tuple[Any, bool]:
        """Append ``event`` or return the one already stored under its key.

        Events exposing a zero ``seq`` field are stamped with the next
        sequence number (monotonic from 1).
        """

        key = self._key(event)
        with self._lock:
            existing = self._idempotency.get(key)
            if existing is not None:
                return existing, False
            seq = len(self._events) + 1
            if dataclasses.is_dataclass(event) and getattr(event, "seq", None) == 0:
                event = dataclasses.replace(event, seq=seq)
            self._events.append(event)
            self._idempotency[key] = event
        return event, True

    def events(self) -> list[Any]:
        with self._lock:
            return list(self._events)

    def list_since(self, after_seq: int, limit: int | None = None) -> list[Any]:
        """Return events positioned after ``after_seq`` in insertion order."""

        if after_seq < 0:
            raise ValueError("after_seq must be non-negative")
        slice_end = None if limit is None else after_seq + max(limit, 0)
        with self._lock:
            return list(self._events[after_seq:slice_end])

    def list_from(self, from_seq: int, limit: int | None = None) -> list[Any]:
        if from_seq < 1:
            raise ValueError("from_seq must be positive")
        return self.list_since(from_seq - 1, limit)

    @staticmethod
    def _key(event: Any) -> Hashable:
        msg_id = getattr(event, "msg_id", None)
        recipient = getattr(event, "recipient_client_id", None)
        if msg_id is None or recipient is None:
            return ("opaque", id(event))
        return (msg_id, recipient)
