"""Kick (Pusher) envelope parsing and translation to normalized events.

Pure functions only: no sockets, no registry. The channel session feeds raw
frames in and dispatches whatever comes out.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.chat.events import (
    ChatCleared,
    ChatMessage,
    MessageDeleted,
    MessagesDeletedByUser,
    NormalizedEvent,
)
from shared.logging.logger import get_logger

log = get_logger("kick.models", runtime="relay")

DELETE_EVENT = "MessageDeletedEvent"
BAN_EVENT = "UserBannedEvent"
CLEAR_EVENT = "ChatroomClearEvent"
CHAT_EVENT = "ChatMessageEvent"


class MalformedPayload(ValueError):
    pass


@dataclass
class KickEnvelope:
    event: str
    channel: Optional[str]
    data: Dict[str, Any]

    @property
    def is_protocol(self) -> bool:
        return self.event.startswith("pusher:") or self.event.startswith("pusher_internal:")

    @property
    def short_event(self) -> str:
        # "App\\Events\\ChatMessageEvent" -> "ChatMessageEvent"
        return self.event.rsplit("\\", 1)[-1]


def parse_envelope(raw) -> KickEnvelope:
    """
    Decode a Pusher frame. The nested ``data`` field is usually itself a
    JSON-encoded string. Raises MalformedPayload for anything unusable.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")

    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"frame is not JSON: {e}") from e

    if not isinstance(frame, dict):
        raise MalformedPayload("frame is not an object")

    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise MalformedPayload("frame has no event name")

    data = frame.get("data")
    if isinstance(data, str):
        if data:
            try:
                data = json.loads(data)
            except ValueError as e:
                raise MalformedPayload(f"{event} data is not JSON: {e}") from e
        else:
            data = {}
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedPayload(f"{event} data is not an object")

    channel = frame.get("channel")
    return KickEnvelope(event=event, channel=channel if isinstance(channel, str) else None, data=data)


def _str_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _map_chat(data: Dict[str, Any]) -> Optional[ChatMessage]:
    sender = data.get("sender")
    content = data.get("content")
    if not isinstance(sender, dict) or not isinstance(content, str):
        return None

    username = sender.get("username") or sender.get("slug")
    if not username:
        return None

    identity = sender.get("identity")
    badges = identity.get("badges") if isinstance(identity, dict) else None

    return ChatMessage(
        user=str(username),
        text=content,
        user_id=_str_id(sender.get("id")),
        message_id=_str_id(data.get("id")),
        platform="kick",
        badges_raw=badges if badges else None,
        emotes_raw=None,
        is_action=False,
    )


def to_normalized(envelope: KickEnvelope) -> Optional[NormalizedEvent]:
    """
    Map a Kick event to a normalized event.

    Delete, ban and clear events have dedicated mappings; every other
    non-protocol event is treated as a chat message and dropped when it does
    not carry a sender and content.
    """
    if envelope.is_protocol:
        return None

    name = envelope.short_event
    data = envelope.data

    if name == DELETE_EVENT:
        message = data.get("message")
        message_id = _str_id(message.get("id")) if isinstance(message, dict) else None
        if not message_id:
            raise MalformedPayload(f"{name} without message id")
        return MessageDeleted(message_id=message_id)

    if name == BAN_EVENT:
        user = data.get("user")
        user_id = _str_id(user.get("id")) if isinstance(user, dict) else None
        if not user_id:
            raise MalformedPayload(f"{name} without user id")
        return MessagesDeletedByUser(user_id=user_id)

    if name == CLEAR_EVENT:
        return ChatCleared()

    message = _map_chat(data)
    if message is None and name == CHAT_EVENT:
        raise MalformedPayload(f"{name} without sender/content")
    if message is None:
        log.debug(f"Ignoring Kick event {envelope.event} (no chat payload)")
    return message


__all__ = [
    "KickEnvelope",
    "MalformedPayload",
    "parse_envelope",
    "to_normalized",
]
