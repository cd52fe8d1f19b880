import asyncio
from typing import List

from core.registry import RoomRegistry
from shared.logging.logger import get_logger

log = get_logger("core.liveness")


class LivenessSupervisor:
    """
    Two-tick dead-peer detector for downstream sessions.

    Each tick:
    - a session whose flag is still cleared from the previous tick is
      removed from the registry and terminated
    - every other session has its flag cleared and receives a probe

    A pong sets the flag again, so detection latency is between one and two
    intervals.
    """

    def __init__(self, registry: RoomRegistry, *, interval: float = 30.0):
        self._registry = registry
        self.interval = interval

    def tick(self) -> List:
        terminated = []

        for session in self._registry.sessions():
            if not session.alive:
                log.info(f"Session {session.session_id} missed heartbeat; terminating")
                self._registry.unregister(session)
                try:
                    session.terminate()
                except Exception as e:
                    log.warning(f"Session {session.session_id} terminate failed: {e}")
                terminated.append(session)
                continue

            session.alive = False
            try:
                session.probe()
            except Exception as e:
                log.debug(f"Session {session.session_id} probe failed: {e}")

        if terminated:
            log.info(f"Liveness tick terminated {len(terminated)} session(s)")
        return terminated

    async def run(self) -> None:
        log.info(f"Liveness supervisor started (interval={self.interval}s)")
        try:
            while True:
                await asyncio.sleep(self.interval)
                self.tick()
        except asyncio.CancelledError:
            log.info("Liveness supervisor stopped")
            raise
