"""
Kick upstream supervisor.

Owns one KickChannelSession task per provisioned channel:
- subscribe() creates the session lazily on first join (idempotent)
- session state is mirrored into the room registry
- a resolution failure forgets the channel so the next join retries
- release() / shutdown() cancel the owning tasks

IMPORTANT:
- MUST NOT create its own event loop
- Session state is only mutated by the session's own task
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set

from core.registry import RoomRegistry
from core.rooms import RoomKey, UpstreamState, normalize_channel
from services.kick.api.channels import KickChannelResolver
from services.kick.workers.chat_worker import KickChannelSession, SessionState
from shared.config.relay import KickConfig
from shared.logging.logger import get_logger

log = get_logger("kick.supervisor", runtime="relay")

_REGISTRY_STATES = {
    SessionState.ACTIVE: UpstreamState.ACTIVE,
    SessionState.RECONNECTING: UpstreamState.PENDING,
}


class KickSupervisor:
    def __init__(
        self,
        *,
        registry: RoomRegistry,
        config: Optional[KickConfig] = None,
        resolver: Optional[KickChannelResolver] = None,
        socket_factory=None,
    ):
        self._registry = registry
        self._config = config or KickConfig()
        self._resolver = resolver or KickChannelResolver(
            url_template=self._config.channel_api_url,
            timeout=self._config.request_timeout_seconds,
        )
        self._socket_factory = socket_factory

        self._sessions: Dict[str, KickChannelSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = True

    @property
    def channels(self) -> Set[str]:
        return set(self._sessions)

    def session(self, channel: str) -> Optional[KickChannelSession]:
        return self._sessions.get(normalize_channel(channel))

    # --------------------------------------------------
    # Provisioning
    # --------------------------------------------------

    def subscribe(self, channel: str) -> None:
        channel = normalize_channel(channel)
        if not self._running:
            raise RuntimeError("Kick supervisor is shut down")
        if channel in self._sessions:
            log.debug(f"[kick:{channel}] Session already tracked")
            return

        key = RoomKey("kick", channel)
        session = KickChannelSession(
            channel=channel,
            resolver=self._resolver,
            pusher_url=self._config.pusher_url,
            on_event=lambda event: self._registry.dispatch(key, event),
            on_state=lambda state: self._on_state(key, state),
            socket_factory=self._socket_factory,
            reconnect_initial=self._config.reconnect_initial_seconds,
            reconnect_max=self._config.reconnect_max_seconds,
        )
        self._sessions[channel] = session
        self._tasks[channel] = asyncio.create_task(self._run_session(key, session))
        log.info(f"[kick:{channel}] Session provisioned")

    def release(self, channel: str) -> None:
        channel = normalize_channel(channel)
        self._sessions.pop(channel, None)
        task = self._tasks.pop(channel, None)
        if task and not task.done():
            task.cancel()
            log.info(f"[kick:{channel}] Session released")

    async def _run_session(self, key: RoomKey, session: KickChannelSession) -> None:
        try:
            resolved = await session.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"[kick:{session.channel}] Session crashed: {e}")
            resolved = False

        if not resolved and self._sessions.get(session.channel) is session:
            self._sessions.pop(session.channel, None)
            self._tasks.pop(session.channel, None)
            self._registry.mark_upstream(key, UpstreamState.UNSUBSCRIBED)
            log.warning(f"[kick:{session.channel}] Left unprovisioned; next join retries")

    def _on_state(self, key: RoomKey, state: SessionState) -> None:
        mapped = _REGISTRY_STATES.get(state)
        if mapped is not None:
            self._registry.mark_upstream(key, mapped)

    # --------------------------------------------------
    # Shutdown
    # --------------------------------------------------

    async def shutdown(self) -> None:
        if not self._running:
            return
        self._running = False

        tasks = list(self._tasks.values())
        self._sessions.clear()
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self._resolver.close()
        except Exception as e:
            log.warning(f"Kick resolver close error ignored: {e}")
        log.info(f"Kick supervisor stopped ({len(tasks)} session(s))")
