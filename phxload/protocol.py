from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

JOIN_EVENT = "phx_join"


class ProtocolError(ValueError):
    """Raised when a frame is not a Phoenix v2 message array."""


@dataclass(frozen=True)
class PhoenixMessage:
    """One channel message in the v2 serializer layout."""

    topic: str
    event: str
    payload: dict[str, Any] = field(default_factory=dict)
    join_ref: str | None = None
    ref: str | None = None

    def to_frame(self) -> list[Any]:
        return [self.join_ref, self.ref, self.topic, self.event, self.payload]

    def encode(self) -> str:
        return json.dumps(self.to_frame(), separators=(",", ":"))

    @classmethod
    def decode(cls, raw: str | bytes) -> "PhoenixMessage":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"frame is not JSON: {raw[:80]!r}") from exc
        if not isinstance(frame, list) or len(frame) != 5:
            raise ProtocolError(f"expected a five element array, got {raw[:80]!r}")
        join_ref, ref, topic, event, payload = frame
        if not isinstance(topic, str) or not isinstance(event, str):
            raise ProtocolError("topic and event must be strings")
        if not isinstance(payload, dict):
            raise ProtocolError("payload must be an object")
        return cls(topic=topic, event=event, payload=payload, join_ref=join_ref, ref=ref)


def join_message(topic: str) -> PhoenixMessage:
    return PhoenixMessage(topic=topic, event=JOIN_EVENT)


def ping_message(topic: str, event: str, user: int, ts_ms: int) -> PhoenixMessage:
    return PhoenixMessage(topic=topic, event=event, payload={"user": user, "ts": ts_ms})


__all__ = [
    "JOIN_EVENT",
    "ProtocolError",
    "PhoenixMessage",
    "join_message",
    "ping_message",
]
