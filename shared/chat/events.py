"""Canonical normalized chat event schema and wire helpers.

Upstream adapters translate their native payloads into one of the event
types below before anything reaches the room registry. The downstream wire
format is produced here and nowhere else, so the dispatcher and the viewer
protocol stay platform-agnostic.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

SUPPORTED_PLATFORMS = {
    "twitch",
    "kick",
}


def normalize_platform(value: str) -> str:
    platform = (value or "").lower().strip()
    if platform not in SUPPORTED_PLATFORMS:
        raise ValueError(f"Unsupported platform: {value}")
    return platform


@dataclass(frozen=True)
class ChatMessage:
    user: str
    text: str
    user_id: Optional[str]
    message_id: Optional[str]
    platform: str
    badges_raw: Optional[Any] = None
    emotes_raw: Optional[Any] = None
    is_action: bool = False

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "user": self.user,
            "message": self.text,
            "userId": self.user_id,
            "msgId": self.message_id,
            "platform": self.platform,
        }
        if self.badges_raw is not None:
            payload["badgesRaw"] = self.badges_raw
        if self.emotes_raw is not None:
            payload["emotesRaw"] = self.emotes_raw
        payload["isAction"] = self.is_action
        return payload


@dataclass(frozen=True)
class MessageDeleted:
    message_id: str

    def to_wire(self) -> Dict[str, Any]:
        return {"type": "delete-message", "msgId": self.message_id}


@dataclass(frozen=True)
class MessagesDeletedByUser:
    user_id: str

    def to_wire(self) -> Dict[str, Any]:
        return {"type": "delete-messages", "userId": self.user_id}


@dataclass(frozen=True)
class ChatCleared:
    def to_wire(self) -> Dict[str, Any]:
        return {"type": "clear-chat"}


NormalizedEvent = Union[ChatMessage, MessageDeleted, MessagesDeletedByUser, ChatCleared]


__all__ = [
    "ChatCleared",
    "ChatMessage",
    "MessageDeleted",
    "MessagesDeletedByUser",
    "NormalizedEvent",
    "SUPPORTED_PLATFORMS",
    "normalize_platform",
]
