import json
from typing import Iterable

from core.rooms import RoomKey
from shared.chat.events import NormalizedEvent
from shared.logging.logger import get_logger

log = get_logger("core.dispatcher")


class BroadcastDispatcher:
    """
    Fan-out of a normalized event to a snapshot of room members.

    - Serializes once per event
    - Skips members whose socket is not open
    - Never blocks on a member: delivery is a queue hand-off, the member's
      own writer task performs the socket I/O
    """

    def deliver(self, key: RoomKey, members: Iterable, event: NormalizedEvent) -> int:
        payload = json.dumps(event.to_wire())
        delivered = 0

        for member in members:
            if not member.is_open:
                continue
            try:
                if member.enqueue(payload):
                    delivered += 1
            except Exception as e:
                log.warning(f"[{key}] Delivery to session {member.session_id} failed: {e}")

        log.debug(f"[{key}] Dispatched {type(event).__name__} to {delivered} member(s)")
        return delivered
