import asyncio
from typing import Dict, Optional

from core.registry import RoomRegistry
from core.rooms import RoomKey, UpstreamState
from shared.logging.logger import get_logger

log = get_logger("core.upstreams")


class UpstreamRouter:
    """
    Routes room provisioning to the adapter registered for the platform.

    Adapters expose subscribe(channel) (idempotent, non-blocking) and
    release(channel). Upstream subscriptions outlive their rooms unless
    idle_eviction_seconds is set, in which case a channel whose room stays
    empty for that long is released.
    """

    def __init__(self, registry: RoomRegistry, *, idle_eviction_seconds: float = 0.0):
        self._registry = registry
        self._adapters: Dict[str, object] = {}
        self._idle_eviction_seconds = idle_eviction_seconds
        self._evictions: Dict[RoomKey, asyncio.TimerHandle] = {}

        registry.attach_upstreams(self)

    def register(self, platform: str, adapter) -> None:
        self._adapters[platform] = adapter
        log.info(f"Upstream adapter registered for platform '{platform}'")

    def adapter_for(self, platform: str) -> Optional[object]:
        return self._adapters.get(platform)

    # ------------------------------------------------------------

    def provision(self, key: RoomKey) -> None:
        adapter = self._adapters.get(key.platform)
        if adapter is None:
            log.warning(f"[{key}] Platform '{key.platform}' has no upstream; room left unprovisioned")
            self._registry.mark_upstream(key, UpstreamState.UNSUBSCRIBED)
            return

        log.info(f"[{key}] Provisioning upstream subscription")
        adapter.subscribe(key.channel)

    def room_opened(self, key: RoomKey) -> None:
        handle = self._evictions.pop(key, None)
        if handle is not None:
            handle.cancel()
            log.debug(f"[{key}] Idle eviction cancelled")

    def room_closed(self, key: RoomKey) -> None:
        if self._idle_eviction_seconds <= 0:
            return

        previous = self._evictions.pop(key, None)
        if previous is not None:
            previous.cancel()

        loop = asyncio.get_running_loop()
        self._evictions[key] = loop.call_later(self._idle_eviction_seconds, self._evict, key)
        log.debug(f"[{key}] Idle eviction scheduled in {self._idle_eviction_seconds}s")

    def _evict(self, key: RoomKey) -> None:
        self._evictions.pop(key, None)
        if self._registry.has_room(key):
            return

        adapter = self._adapters.get(key.platform)
        if adapter is None:
            return

        try:
            adapter.release(key.channel)
        except Exception as e:
            log.warning(f"[{key}] Upstream release failed: {e}")
        self._registry.mark_upstream(key, UpstreamState.UNSUBSCRIBED)
        log.info(f"[{key}] Idle upstream evicted")

    def shutdown(self) -> None:
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
