import threading
from typing import Dict, List, Optional, Set

from core.dispatcher import BroadcastDispatcher
from core.rooms import JoinResult, RoomKey, UpstreamState
from shared.chat.events import NormalizedEvent
from shared.logging.logger import get_logger

log = get_logger("core.registry")


class RoomRegistry:
    """
    Authoritative room membership and upstream subscription state.

    Two views are kept in lockstep:
    - room key -> member sessions (self._rooms)
    - session -> joined room keys (session.joined_rooms)

    All mutation happens under a single lock. Critical sections never await
    and never perform network I/O; upstream provisioning and eviction hooks
    run after the lock is released.
    """

    def __init__(self, dispatcher: Optional[BroadcastDispatcher] = None):
        self._dispatcher = dispatcher or BroadcastDispatcher()
        self._lock = threading.Lock()

        self._rooms: Dict[RoomKey, Set] = {}
        self._upstream: Dict[RoomKey, UpstreamState] = {}
        self._sessions: Set = set()

        # Set by the upstream router (provision / room_opened / room_closed)
        self._upstreams = None

    def attach_upstreams(self, upstreams) -> None:
        self._upstreams = upstreams

    # ------------------------------------------------------------------
    # SESSIONS
    # ------------------------------------------------------------------

    def register(self, session) -> None:
        with self._lock:
            self._sessions.add(session)
        log.info(f"Session {session.session_id} connected ({len(self._sessions)} total)")

    def unregister(self, session) -> List[RoomKey]:
        """
        Drop a session and every membership it holds. Safe to call twice.
        """
        with self._lock:
            known = session in self._sessions
            self._sessions.discard(session)
            left, closed = self._leave_all_locked(session)

        self._notify_closed(closed)
        if known:
            log.info(
                f"Session {session.session_id} disconnected "
                f"(left {len(left)} room(s), {len(self._sessions)} remaining)"
            )
        return left

    def sessions(self) -> List:
        with self._lock:
            return list(self._sessions)

    # ------------------------------------------------------------------
    # MEMBERSHIP
    # ------------------------------------------------------------------

    def join(self, session, key: RoomKey) -> JoinResult:
        with self._lock:
            members = self._rooms.get(key)
            created = members is None
            if created:
                members = set()
                self._rooms[key] = members

            already_member = session in members
            members.add(session)
            session.joined_rooms.add(key)

            state = self._upstream.get(key, UpstreamState.UNSUBSCRIBED)
            needs_provisioning = state == UpstreamState.UNSUBSCRIBED
            if needs_provisioning:
                state = UpstreamState.PENDING
                self._upstream[key] = state

            result = JoinResult(
                key=key,
                created=created,
                already_member=already_member,
                member_count=len(members),
                upstream_state=state,
            )

        if created:
            log.info(f"[{key}] Room created")
            if self._upstreams is not None:
                self._upstreams.room_opened(key)

        if needs_provisioning:
            self._provision(key)

        if not already_member:
            log.info(
                f"[{key}] Session {session.session_id} joined "
                f"({result.member_count} member(s))"
            )
        return result

    def leave(self, session, key: RoomKey) -> bool:
        with self._lock:
            session.joined_rooms.discard(key)
            members = self._rooms.get(key)
            if not members or session not in members:
                return False

            members.discard(session)
            closed = not members
            if closed:
                del self._rooms[key]

        log.info(f"[{key}] Session {session.session_id} left")
        if closed:
            self._notify_closed([key])
        return True

    def leave_all(self, session) -> List[RoomKey]:
        with self._lock:
            left, closed = self._leave_all_locked(session)

        self._notify_closed(closed)
        return left

    def _leave_all_locked(self, session):
        left: List[RoomKey] = []
        closed: List[RoomKey] = []

        for key in list(session.joined_rooms):
            members = self._rooms.get(key)
            if members is not None and session in members:
                members.discard(session)
                left.append(key)
                if not members:
                    del self._rooms[key]
                    closed.append(key)

        session.joined_rooms.clear()
        return left, closed

    def _notify_closed(self, keys: List[RoomKey]) -> None:
        for key in keys:
            log.info(f"[{key}] Room closed (no members left)")
            if self._upstreams is None:
                continue
            try:
                self._upstreams.room_closed(key)
            except Exception as e:
                log.warning(f"[{key}] Upstream room-closed hook failed: {e}")

    # ------------------------------------------------------------------
    # UPSTREAM STATE
    # ------------------------------------------------------------------

    def _provision(self, key: RoomKey) -> None:
        if self._upstreams is None:
            log.warning(f"[{key}] No upstream router attached; room left unprovisioned")
            self.mark_upstream(key, UpstreamState.UNSUBSCRIBED)
            return

        try:
            self._upstreams.provision(key)
        except Exception as e:
            log.error(f"[{key}] Upstream provisioning failed: {e}")
            self.mark_upstream(key, UpstreamState.UNSUBSCRIBED)

    def mark_upstream(self, key: RoomKey, state: UpstreamState) -> None:
        with self._lock:
            previous = self._upstream.get(key, UpstreamState.UNSUBSCRIBED)
            if state == UpstreamState.UNSUBSCRIBED:
                self._upstream.pop(key, None)
            else:
                self._upstream[key] = state

        if previous != state:
            log.debug(f"[{key}] Upstream state {previous.value} -> {state.value}")

    def upstream_state(self, key: RoomKey) -> UpstreamState:
        with self._lock:
            return self._upstream.get(key, UpstreamState.UNSUBSCRIBED)

    # ------------------------------------------------------------------
    # DISPATCH
    # ------------------------------------------------------------------

    def dispatch(self, key: RoomKey, event: NormalizedEvent) -> int:
        """
        Deliver an event to the room's current members.

        Delivery is a non-blocking hand-off to each member's outbound queue,
        so it runs under the lock and observes a consistent member set.
        """
        with self._lock:
            members = self._rooms.get(key)
            if not members:
                return 0
            return self._dispatcher.deliver(key, tuple(members), event)

    # ------------------------------------------------------------------
    # INTROSPECTION
    # ------------------------------------------------------------------

    def has_room(self, key: RoomKey) -> bool:
        with self._lock:
            return key in self._rooms

    def members_of(self, key: RoomKey) -> List:
        with self._lock:
            return list(self._rooms.get(key, ()))

    def room_count(self) -> int:
        with self._lock:
            return len(self._rooms)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                key.name: {
                    "members": len(members),
                    "upstream": self._upstream.get(key, UpstreamState.UNSUBSCRIBED).value,
                }
                for key, members in self._rooms.items()
            }
