"""Wire envelopes for the room-scoped chat protocol."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from .errors import FrameDecodeError

JOIN_ROOM = "join_room"
LEAVE_ROOM = "leave_room"
SEND_MESSAGE = "send_message"
NEW_MESSAGE = "new_message"
ROOM_JOINED = "room_joined"
USER_JOINED = "user_joined"
USER_LEFT = "user_left"
ERROR = "error"

RoomId = Union[int, str]

_KNOWN_FIELDS = ("room_id", "content", "message_id", "sender")


@dataclass(frozen=True)
class ProtocolMessage:
    """One immutable protocol envelope.

    Fields the harness reasons about are lifted out of the payload; anything
    else a server sends is kept verbatim in ``extra``.
    """

    type: str
    room_id: RoomId | None = None
    content: str | None = None
    message_id: Any = None
    sender: Any = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        for name in _KNOWN_FIELDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        payload.update(self.extra)
        return payload

    @property
    def room_key(self) -> str | None:
        return room_key(self.room_id)


def room_key(room_id: RoomId | None) -> str | None:
    """Normalise room ids so ``1`` and ``"1"`` compare equal."""

    if room_id is None:
        return None
    return str(room_id)


def join_room(room_id: RoomId) -> ProtocolMessage:
    return ProtocolMessage(type=JOIN_ROOM, room_id=room_id)


def leave_room(room_id: RoomId) -> ProtocolMessage:
    return ProtocolMessage(type=LEAVE_ROOM, room_id=room_id)


def send_message(room_id: RoomId, content: str) -> ProtocolMessage:
    return ProtocolMessage(type=SEND_MESSAGE, room_id=room_id, content=content)


def encode(message: ProtocolMessage) -> str:
    return json.dumps(message.to_wire(), separators=(",", ":"))


def from_wire(payload: Any) -> ProtocolMessage:
    if not isinstance(payload, dict):
        raise FrameDecodeError(f"envelope must be a JSON object, got {type(payload).__name__}")
    message_type = payload.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise FrameDecodeError("envelope missing string 'type'")

    sender = payload.get("sender")
    if sender is None:
        sender = payload.get("user_uuid")
    content = payload.get("content")
    if content is None and message_type == ERROR:
        content = payload.get("message")
    extra = {
        key: value
        for key, value in payload.items()
        if key not in _KNOWN_FIELDS and key != "type"
    }
    return ProtocolMessage(
        type=message_type,
        room_id=payload.get("room_id"),
        content=content if content is None else str(content),
        message_id=payload.get("message_id"),
        sender=sender,
        extra=extra,
    )


def frame_lines(data: str | bytes) -> List[str]:
    """Split one text frame into the envelope lines it carries.

    Servers may coalesce queued envelopes into one frame separated by
    newlines. Blank lines are skipped.
    """

    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameDecodeError(f"frame is not valid UTF-8: {exc}", raw=data) from exc
    lines = [line for line in data.split("\n") if line.strip()]
    if not lines:
        raise FrameDecodeError("empty frame", raw=data)
    return lines


def decode_envelope(line: str) -> ProtocolMessage:
    try:
        payload = json.loads(line)
    except ValueError as exc:
        raise FrameDecodeError(f"malformed json: {exc}", raw=line) from exc
    try:
        return from_wire(payload)
    except FrameDecodeError as exc:
        exc.raw = line
        raise
