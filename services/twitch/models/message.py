from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shared.chat.events import ChatCleared, ChatMessage, MessageDeleted, MessagesDeletedByUser


@dataclass
class TwitchChatMessage:
    """
    Twitch PRIVMSG (IRC over TLS).

    Badges and emotes are kept as the raw tag strings; resolving them is the
    viewer's job.
    """

    raw: str
    username: str
    channel: str
    text: str

    display_name: Optional[str] = None
    message_id: Optional[str] = None
    user_id: Optional[str] = None
    room_id: Optional[str] = None
    badges_raw: Optional[str] = None
    emotes_raw: Optional[str] = None
    is_action: bool = False
    timestamp: Optional[datetime] = None

    def to_normalized(self) -> ChatMessage:
        return ChatMessage(
            user=self.display_name or self.username,
            text=self.text,
            user_id=self.user_id,
            message_id=self.message_id,
            platform="twitch",
            badges_raw=self.badges_raw or None,
            emotes_raw=self.emotes_raw or None,
            is_action=self.is_action,
        )


@dataclass
class TwitchClearMessage:
    """CLEARMSG: a single message removed by a moderator."""

    raw: str
    channel: str
    target_message_id: str
    login: Optional[str] = None

    def to_normalized(self) -> MessageDeleted:
        return MessageDeleted(message_id=self.target_message_id)


@dataclass
class TwitchClearChat:
    """
    CLEARCHAT: without a target the whole channel was cleared, with a target
    every message of that user was purged (timeout or ban).
    """

    raw: str
    channel: str
    target_user_id: Optional[str] = None
    target_login: Optional[str] = None

    def to_normalized(self):
        if self.target_user_id:
            return MessagesDeletedByUser(user_id=self.target_user_id)
        if self.target_login:
            # Per-user purge without a user id cannot be addressed downstream
            return None
        return ChatCleared()
