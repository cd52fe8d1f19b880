"""Kick chat transport (Pusher protocol over websocket)."""

from __future__ import annotations

import json
from typing import Any, AsyncGenerator, Callable, Dict, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from services.kick.models.message import KickEnvelope, MalformedPayload, parse_envelope
from shared.logging.logger import get_logger

log = get_logger("kick.chat", runtime="relay")


class KickChatSocket:
    """
    One upstream Pusher socket for one Kick channel.

    - open() connects; subscribe() sends a fire-and-forget subscription
    - iter_envelopes() yields decoded envelopes until the socket closes
    - pusher:ping is answered here; malformed frames are logged and skipped
    """

    def __init__(
        self,
        url: str,
        *,
        channel: str = "",
        connect: Optional[Callable[..., Any]] = None,
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.channel = channel
        self._connect = connect or ws_connect
        self._open_timeout = open_timeout
        self._ws = None

    async def open(self) -> None:
        log.info(f"[kick:{self.channel}] Opening upstream socket")
        self._ws = await self._connect(self.url, open_timeout=self._open_timeout)

    async def subscribe(self, topic: str) -> None:
        await self._send({"event": "pusher:subscribe", "data": {"auth": "", "channel": topic}})
        log.info(f"[kick:{self.channel}] Subscribed to {topic}")

    async def iter_envelopes(self) -> AsyncGenerator[KickEnvelope, None]:
        if self._ws is None:
            raise RuntimeError("iter_envelopes called before open()")

        try:
            async for raw in self._ws:
                try:
                    envelope = parse_envelope(raw)
                except MalformedPayload as e:
                    log.warning(f"[kick:{self.channel}] Dropping malformed frame: {e}")
                    continue

                if envelope.event == "pusher:ping":
                    await self._send({"event": "pusher:pong", "data": {}})
                    continue
                if envelope.event == "pusher:error":
                    log.warning(f"[kick:{self.channel}] Pusher error: {envelope.data}")
                    continue

                yield envelope
        except ConnectionClosed as e:
            log.warning(f"[kick:{self.channel}] Upstream socket closed: {e}")

    async def close(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except Exception as e:
            log.debug(f"[kick:{self.channel}] Error during socket close ignored: {e}")
        finally:
            self._ws = None

    async def _send(self, payload: Dict[str, Any]) -> None:
        if self._ws is None:
            raise RuntimeError("Kick socket is not open")
        await self._ws.send(json.dumps(payload))
