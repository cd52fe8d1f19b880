"""Room identity and upstream subscription state.

A room is addressed solely by its RoomKey: the platform plus the channel name
normalized at creation time. The registry owns the rooms themselves; this
module only defines the value types that cross component boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from shared.chat.events import normalize_platform


def normalize_channel(channel: str) -> str:
    return (channel or "").strip().lstrip("#").strip().lower()


@dataclass(frozen=True)
class RoomKey:
    platform: str
    channel: str

    @classmethod
    def create(cls, platform: str, channel: str) -> "RoomKey":
        """
        Build a key with the channel lowercased. Raises ValueError for an
        unsupported platform or an empty channel.
        """
        normalized = normalize_channel(channel)
        if not normalized:
            raise ValueError("channel is required")
        return cls(platform=normalize_platform(platform), channel=normalized)

    @property
    def name(self) -> str:
        return f"{self.platform}-{self.channel}"

    def __str__(self) -> str:
        return self.name


class UpstreamState(Enum):
    UNSUBSCRIBED = "unsubscribed"
    PENDING = "pending"
    ACTIVE = "active"


@dataclass(frozen=True)
class JoinResult:
    key: RoomKey
    created: bool
    already_member: bool
    member_count: int
    upstream_state: UpstreamState

    def ack(self) -> dict:
        return {"status": "joined", "room": self.key.name}


__all__ = [
    "JoinResult",
    "RoomKey",
    "UpstreamState",
    "normalize_channel",
]
