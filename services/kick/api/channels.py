"""Kick channel metadata lookup (slug -> chatroom id + account id)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from shared.logging.logger import get_logger

log = get_logger("kick.channels", runtime="relay")

DEFAULT_CHANNEL_URL = "https://kick.com/api/v2/channels/{channel}"


class ChannelResolutionError(Exception):
    """
    Raised when a channel's identifiers cannot be resolved (unknown slug,
    blocked request, unexpected payload). Not retried by the resolver.
    """

    def __init__(self, channel: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[kick:{channel}] {message}")
        self.channel = channel
        self.status_code = status_code


@dataclass(frozen=True)
class KickChannelInfo:
    slug: str
    room_id: str
    user_id: str

    @property
    def message_topic(self) -> str:
        return f"chatrooms.{self.room_id}.v2"

    @property
    def account_topic(self) -> str:
        return f"channel.{self.user_id}"


class KickChannelResolver:
    """
    Resolves a channel slug through Kick's public channel endpoint.

    The caller may supply a shared httpx.AsyncClient; otherwise the resolver
    owns one and closes it in close().
    """

    def __init__(
        self,
        *,
        url_template: str = DEFAULT_CHANNEL_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.url_template = url_template
        self._client = client or httpx.AsyncClient(
            headers={
                "Accept": "application/json",
                "User-Agent": "Mozilla/5.0 (compatible; chat-relay)",
            },
            timeout=timeout,
            follow_redirects=True,
        )
        self._client_owned = client is None

    async def resolve(self, channel: str) -> KickChannelInfo:
        url = self.url_template.format(channel=channel)
        log.info(f"[kick:{channel}] Resolving channel metadata")

        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise ChannelResolutionError(channel, f"request failed: {e}") from e

        if response.status_code != 200:
            raise ChannelResolutionError(
                channel,
                f"unexpected status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ChannelResolutionError(channel, f"response is not JSON: {e}") from e

        if not isinstance(data, dict):
            raise ChannelResolutionError(channel, "response is not an object")

        chatroom = data.get("chatroom")
        room_id = chatroom.get("id") if isinstance(chatroom, dict) else None
        user_id = data.get("id") or data.get("user_id")
        if room_id is None or user_id is None:
            raise ChannelResolutionError(channel, "chatroom or account id missing")

        info = KickChannelInfo(
            slug=str(data.get("slug") or channel),
            room_id=str(room_id),
            user_id=str(user_id),
        )
        log.info(
            f"[kick:{channel}] Resolved room_id={info.room_id} user_id={info.user_id}"
        )
        return info

    async def close(self) -> None:
        if self._client_owned:
            await self._client.aclose()
