"""
Kick per-channel upstream session.

State machine, owned by a single task:

    IDLE -> RESOLVING -> CONNECTING -> SUBSCRIBING -> ACTIVE
                            ^                           |
                            +------- RECONNECTING <-----+

Metadata is resolved once; reconnects reuse the resolved identifiers. A
resolution failure ends the session (run() returns False) and retry is left
to whoever provisions the channel next. Cancelling the owning task stops the
session, including any pending reconnect sleep.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, Optional

from services.kick.api.channels import ChannelResolutionError, KickChannelInfo, KickChannelResolver
from services.kick.api.chat import KickChatSocket
from services.kick.models.message import KickEnvelope, MalformedPayload, to_normalized
from shared.chat.events import NormalizedEvent
from shared.logging.logger import get_logger

log = get_logger("kick.chat_worker", runtime="relay")


class SessionState(Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class KickChannelSession:
    def __init__(
        self,
        *,
        channel: str,
        resolver: KickChannelResolver,
        pusher_url: str,
        on_event: Callable[[NormalizedEvent], None],
        on_state: Optional[Callable[[SessionState], None]] = None,
        socket_factory: Optional[Callable[..., KickChatSocket]] = None,
        reconnect_initial: float = 5.0,
        reconnect_max: float = 120.0,
    ):
        if not channel:
            raise RuntimeError("Kick channel is required")

        self.channel = channel
        self.pusher_url = pusher_url
        self.state = SessionState.IDLE
        self.info: Optional[KickChannelInfo] = None

        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self.reconnect_delay = reconnect_initial

        self._resolver = resolver
        self._on_event = on_event
        self._on_state = on_state
        self._socket_factory = socket_factory or KickChatSocket

    @property
    def room_id(self) -> Optional[str]:
        return self.info.room_id if self.info else None

    @property
    def user_id(self) -> Optional[str]:
        return self.info.user_id if self.info else None

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        log.debug(f"[kick:{self.channel}] {self.state.value} -> {state.value}")
        self.state = state
        if self._on_state:
            try:
                self._on_state(state)
            except Exception as e:
                log.warning(f"[kick:{self.channel}] State hook failed: {e}")

    # ------------------------------------------------------------------ #

    async def run(self) -> bool:
        """
        Resolve, then connect/subscribe/read forever with reconnect backoff.

        Returns False only when metadata resolution fails.
        """
        try:
            self._set_state(SessionState.RESOLVING)
            try:
                self.info = await self._resolver.resolve(self.channel)
            except ChannelResolutionError as e:
                log.error(f"Kick channel resolution failed: {e}")
                self._set_state(SessionState.IDLE)
                return False

            while True:
                await self._connect_once()

                self._set_state(SessionState.RECONNECTING)
                log.info(
                    f"[kick:{self.channel}] Reconnecting in {self.reconnect_delay:.1f}s"
                )
                await asyncio.sleep(self.reconnect_delay)
                self.reconnect_delay = min(self.reconnect_delay * 2, self.reconnect_max)

        except asyncio.CancelledError:
            self._set_state(SessionState.STOPPED)
            log.info(f"[kick:{self.channel}] Session stopped")
            raise

    async def _connect_once(self) -> None:
        self._set_state(SessionState.CONNECTING)
        socket = self._socket_factory(self.pusher_url, channel=self.channel)

        try:
            await socket.open()

            self._set_state(SessionState.SUBSCRIBING)
            await socket.subscribe(self.info.message_topic)
            await socket.subscribe(self.info.account_topic)

            self._set_state(SessionState.ACTIVE)
            self.reconnect_delay = self.reconnect_initial

            async for envelope in socket.iter_envelopes():
                self.handle_envelope(envelope)

            log.warning(f"[kick:{self.channel}] Upstream socket ended")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[kick:{self.channel}] Upstream socket error: {e}")
        finally:
            await socket.close()

    def handle_envelope(self, envelope: KickEnvelope) -> None:
        try:
            event = to_normalized(envelope)
        except MalformedPayload as e:
            log.warning(f"[kick:{self.channel}] Dropping malformed event: {e}")
            return

        if event is None:
            return

        try:
            self._on_event(event)
        except Exception as e:
            log.warning(f"[kick:{self.channel}] Event dispatch failed: {e}")
