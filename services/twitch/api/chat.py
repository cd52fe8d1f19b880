import asyncio
import random
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Optional, Set, Tuple, Union

from core.rooms import normalize_channel
from services.twitch.models.message import (
    TwitchChatMessage,
    TwitchClearChat,
    TwitchClearMessage,
)
from shared.logging.logger import get_logger

log = get_logger("twitch.chat", runtime="relay")

TwitchEvent = Union[TwitchChatMessage, TwitchClearMessage, TwitchClearChat]

_TAG_ESCAPES = {
    ":": ";",
    "s": " ",
    "\\": "\\",
    "r": "\r",
    "n": "\n",
}

_ACTION_PREFIX = "\x01ACTION "


class TwitchChatClient:
    """
    Minimal multi-channel Twitch IRC-over-TLS client for chat ingest.

    - One TLS session; channels are joined and parted at runtime.
    - No event loop creation on import.
    - Connection lifecycle is owned by callers (the upstream adapter).
    - Without credentials it logs in anonymously (read-only justinfan nick).
    """

    HOST = "irc.chat.twitch.tv"
    PORT = 6697

    def __init__(
        self,
        token: Optional[str] = None,
        nickname: Optional[str] = None,
        *,
        host: str = HOST,
        port: int = PORT,
        ssl: bool = True,
    ):
        if token and nickname:
            self.token: Optional[str] = self._normalize_token(token)
            self.nickname = nickname.strip().lower()
        else:
            self.token = None
            self.nickname = f"justinfan{random.randint(10000, 99999)}"

        self.host = host
        self.port = port
        self.ssl = ssl

        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None

        self._connected = False
        self._channels: Set[str] = set()

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def channels(self) -> Set[str]:
        return set(self._channels)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """
        Establish the TLS IRC connection and request tags + commands so
        moderation events (CLEARMSG / CLEARCHAT) are delivered.
        """
        if self._connected:
            log.debug("TwitchChatClient already connected")
            return

        log.info(
            f"Connecting to Twitch IRC ({self.host}:{self.port}) "
            f"as nick={self.nickname} ({'authenticated' if self.token else 'anonymous'})"
        )
        self.reader, self.writer = await asyncio.open_connection(
            self.host, self.port, ssl=self.ssl
        )

        await self._send_raw("CAP REQ :twitch.tv/tags twitch.tv/commands")
        if self.token:
            await self._send_raw(f"PASS {self.token}")
        await self._send_raw(f"NICK {self.nickname}")

        self._channels.clear()
        self._connected = True
        log.info("Twitch IRC session established")

    async def close(self) -> None:
        if not self.writer:
            return

        log.info("Closing Twitch IRC connection")
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except Exception as e:
            log.debug(f"Error during Twitch IRC close ignored: {e}")
        finally:
            self.reader = None
            self.writer = None
            self._connected = False
            self._channels.clear()

    # ------------------------------------------------------------------ #
    # Channels
    # ------------------------------------------------------------------ #

    async def join(self, channel: str) -> None:
        channel = normalize_channel(channel)
        if channel in self._channels:
            return
        await self._send_raw(f"JOIN #{channel}")
        self._channels.add(channel)
        log.info(f"Joined Twitch channel #{channel}")

    async def part(self, channel: str) -> None:
        channel = normalize_channel(channel)
        if channel not in self._channels:
            return
        self._channels.discard(channel)
        await self._send_raw(f"PART #{channel}")
        log.info(f"Parted Twitch channel #{channel}")

    # ------------------------------------------------------------------ #
    # Reading
    # ------------------------------------------------------------------ #

    async def iter_events(self) -> AsyncGenerator[TwitchEvent, None]:
        """
        Read IRC lines and yield parsed chat / moderation events. Returns
        when the remote closes the connection or asks for a reconnect.
        """
        if not self.reader:
            raise RuntimeError("iter_events called before connect()")

        while True:
            line = await self.reader.readline()

            if line == b"":
                log.warning("Twitch IRC connection closed by remote")
                break

            decoded = line.decode("utf-8", errors="ignore").strip()
            if not decoded:
                continue

            if decoded.startswith("PING"):
                await self._handle_ping(decoded)
                continue

            try:
                event = self.parse_line(decoded)
            except Exception as e:
                log.warning(f"Dropping unparseable Twitch line ({e}): {decoded[:200]}")
                continue

            if event == "RECONNECT":
                log.warning("Twitch requested RECONNECT")
                break
            if event is not None:
                yield event

    # ------------------------------------------------------------------ #
    # Parsing
    # ------------------------------------------------------------------ #

    @classmethod
    def parse_line(cls, raw: str):
        """
        Parse one IRC line into a TwitchEvent. Returns the string
        "RECONNECT" for server-initiated reconnects and None for everything
        else the relay does not forward.
        """
        tags, remainder = cls._split_tags(raw)
        prefix, command, params = cls._split_prefix_and_command(remainder)

        if command == "RECONNECT":
            return "RECONNECT"

        if command == "PRIVMSG" and len(params) >= 2:
            return cls._parse_privmsg(raw, tags, prefix, params)

        if command == "CLEARMSG" and params:
            target = tags.get("target-msg-id")
            if not target:
                return None
            return TwitchClearMessage(
                raw=raw,
                channel=normalize_channel(params[0]),
                target_message_id=target,
                login=tags.get("login") or None,
            )

        if command == "CLEARCHAT" and params:
            return TwitchClearChat(
                raw=raw,
                channel=normalize_channel(params[0]),
                target_user_id=tags.get("target-user-id") or None,
                target_login=params[1] if len(params) > 1 else None,
            )

        return None

    @classmethod
    def _parse_privmsg(
        cls,
        raw: str,
        tags: Dict[str, str],
        prefix: str,
        params: Tuple[str, ...],
    ) -> TwitchChatMessage:
        channel = normalize_channel(params[0])
        text = params[1]

        is_action = False
        if text.startswith(_ACTION_PREFIX):
            is_action = True
            text = text[len(_ACTION_PREFIX):].rstrip("\x01")

        username = cls._parse_username(prefix)
        if not username:
            username = tags.get("display-name") or "unknown"

        message = TwitchChatMessage(
            raw=raw,
            username=username,
            channel=channel,
            text=text,
            display_name=tags.get("display-name") or None,
            message_id=tags.get("id"),
            user_id=tags.get("user-id"),
            room_id=tags.get("room-id"),
            badges_raw=tags.get("badges") or None,
            emotes_raw=tags.get("emotes") or None,
            is_action=is_action,
            timestamp=cls._parse_timestamp(tags.get("tmi-sent-ts")),
        )

        log.debug(
            f"[#{channel}] {username}: {text} "
            f"(id={message.message_id}, ts={message.timestamp})"
        )
        return message

    async def _send_raw(self, data: str) -> None:
        if not self.writer:
            raise RuntimeError("IRC writer is not initialized")

        payload = (data + "\r\n").encode("utf-8")
        self.writer.write(payload)
        await self.writer.drain()

    async def _handle_ping(self, raw: str) -> None:
        # Twitch IRC sends: PING :tmi.twitch.tv
        payload = raw.split(" ", 1)[-1]
        await self._send_raw(f"PONG {payload}")
        log.debug("Responded to Twitch PING")

    @staticmethod
    def _unescape_tag(value: str) -> str:
        if "\\" not in value:
            return value
        out = []
        chars = iter(value)
        for ch in chars:
            if ch != "\\":
                out.append(ch)
                continue
            nxt = next(chars, "")
            out.append(_TAG_ESCAPES.get(nxt, nxt))
        return "".join(out)

    @classmethod
    def _split_tags(cls, raw: str) -> Tuple[Dict[str, str], str]:
        if raw.startswith("@"):
            tags_part, remainder = raw.split(" ", 1)
            tags = {}
            for pair in tags_part[1:].split(";"):
                if "=" in pair:
                    k, v = pair.split("=", 1)
                    tags[k] = cls._unescape_tag(v)
                elif pair:
                    tags[pair] = ""
            return tags, remainder

        return {}, raw

    @staticmethod
    def _split_prefix_and_command(raw: str) -> Tuple[str, str, Tuple[str, ...]]:
        prefix = ""
        rest = raw
        if raw.startswith(":"):
            if " " in raw:
                prefix, rest = raw[1:].split(" ", 1)
            else:
                prefix = raw[1:]
                rest = ""

        if " :" in rest:
            middle, trailing = rest.split(" :", 1)
            parts = middle.split()
            if not parts:
                return prefix, "", tuple()
            command = parts[0]
            params = tuple(parts[1:] + [trailing])
        else:
            parts = rest.split()
            if not parts:
                return prefix, "", tuple()
            command = parts[0]
            params = tuple(parts[1:])

        return prefix, command, params

    @staticmethod
    def _parse_username(prefix: str) -> str:
        # Prefix example: nickname!nickname@nickname.tmi.twitch.tv
        if "!" in prefix:
            return prefix.split("!", 1)[0]
        return ""

    @staticmethod
    def _parse_timestamp(raw_ts: Optional[str]) -> Optional[datetime]:
        if not raw_ts:
            return None
        try:
            millis = int(raw_ts)
            return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _normalize_token(token: str) -> str:
        token = token.strip()
        if not token.startswith("oauth:"):
            return f"oauth:{token}"
        return token
