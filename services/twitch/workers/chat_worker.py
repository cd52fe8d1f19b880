import asyncio
from typing import Callable, Optional, Set

from core.registry import RoomRegistry
from core.rooms import RoomKey, UpstreamState, normalize_channel
from services.twitch.api.chat import TwitchChatClient, TwitchEvent
from shared.config.relay import TwitchConfig
from shared.logging.logger import get_logger

log = get_logger("twitch.chat_worker", runtime="relay")


class TwitchUpstream:
    """
    Relay-owned Twitch upstream (single IRC session, dynamic joins).

    Responsibilities:
    - Own the TwitchChatClient lifecycle (connect, read, reconnect, shutdown)
    - Join channels on demand; subscribe() is idempotent per channel
    - Translate native events and hand them to the room registry
    """

    def __init__(
        self,
        *,
        registry: RoomRegistry,
        config: Optional[TwitchConfig] = None,
        client_factory: Optional[Callable[[], TwitchChatClient]] = None,
    ):
        self._registry = registry
        self._config = config or TwitchConfig()
        self._client_factory = client_factory or (
            lambda: TwitchChatClient(
                token=self._config.oauth_token or None,
                nickname=self._config.username or None,
            )
        )
        self._client: Optional[TwitchChatClient] = None

        # Channels the relay has asked for, keyed by normalized name
        self._joined: Set[str] = set()
        self._pending: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()

    @property
    def joined_channels(self) -> Set[str]:
        return set(self._joined)

    # ------------------------------------------------------------------ #
    # Provisioning
    # ------------------------------------------------------------------ #

    def subscribe(self, channel: str) -> None:
        channel = normalize_channel(channel)
        if channel in self._joined:
            log.debug(f"[twitch:{channel}] Already subscribed")
            return

        self._joined.add(channel)
        if self._client and self._client.connected:
            self._spawn(self._join(channel))
        else:
            log.info(f"[twitch:{channel}] Subscription queued until IRC session is up")

    def release(self, channel: str) -> None:
        channel = normalize_channel(channel)
        if channel not in self._joined:
            return

        self._joined.discard(channel)
        if self._client and self._client.connected:
            self._spawn(self._part(channel))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _join(self, channel: str) -> None:
        try:
            await self._client.join(channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The reader loop sees the broken session and rejoins on reconnect
            log.warning(f"[twitch:{channel}] JOIN failed: {e}")
            return
        self._registry.mark_upstream(RoomKey("twitch", channel), UpstreamState.ACTIVE)

    async def _part(self, channel: str) -> None:
        try:
            await self._client.part(channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[twitch:{channel}] PART failed: {e}")

    # ------------------------------------------------------------------ #
    # Session loop
    # ------------------------------------------------------------------ #

    async def run(self) -> None:
        log.info("Twitch upstream starting")
        delay = self._config.reconnect_initial_seconds

        while not self._stop_event.is_set():
            self._client = self._client_factory()
            try:
                await self._client.connect()
                delay = self._config.reconnect_initial_seconds

                for channel in sorted(self._joined):
                    await self._join(channel)

                async for event in self._client.iter_events():
                    self.handle_event(event)

            except asyncio.CancelledError:
                log.debug("Twitch upstream cancelled")
                raise
            except Exception as e:
                log.error(f"Twitch upstream session error: {e}")
            finally:
                await self._client.close()
                for channel in self._joined:
                    self._registry.mark_upstream(RoomKey("twitch", channel), UpstreamState.PENDING)

            if self._stop_event.is_set():
                break

            log.info(f"Twitch upstream reconnecting in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._config.reconnect_max_seconds)

    async def shutdown(self) -> None:
        if self._stop_event.is_set():
            return

        self._stop_event.set()
        for task in list(self._pending):
            task.cancel()
        if self._client:
            await self._client.close()
        log.info("Twitch upstream stopped")

    # ------------------------------------------------------------------ #

    def handle_event(self, event: TwitchEvent) -> int:
        """
        Translate one native event and dispatch it to its room. Events for
        rooms without members are dropped by the registry.
        """
        try:
            normalized = event.to_normalized()
            if normalized is None:
                return 0
            key = RoomKey.create("twitch", event.channel)
            return self._registry.dispatch(key, normalized)
        except Exception as e:
            log.warning(f"[twitch:{getattr(event, 'channel', '?')}] Event dropped: {e}")
            return 0
