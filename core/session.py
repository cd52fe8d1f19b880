"""
Downstream viewer session.

One DownstreamSession exists per viewer websocket. It owns:
- the set of rooms the viewer joined (mutated only by the RoomRegistry)
- the liveness flag read and cleared by the LivenessSupervisor
- a bounded outbound queue drained by a dedicated writer task, so a slow
  viewer never holds up dispatch to anyone else
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Dict, Optional, Set

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from core.rooms import RoomKey
from shared.logging.logger import get_logger

log = get_logger("core.session")


class DownstreamSession:
    def __init__(self, connection, *, queue_size: int = 1000):
        self.session_id = uuid.uuid4().hex[:12]
        self.connection = connection
        self.joined_rooms: Set[RoomKey] = set()
        self.alive = True

        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(0, int(queue_size)))
        self._writer_task: Optional[asyncio.Task] = None
        self._probe_task: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._drain())

    @property
    def is_open(self) -> bool:
        return not self._closed and self.connection.state is State.OPEN

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for task in (self._writer_task, self._probe_task):
            if task and not task.done():
                task.cancel()
        try:
            await self.connection.close()
        except Exception as e:
            log.debug(f"Session {self.session_id} close error ignored: {e}")

    def terminate(self) -> None:
        """
        Hard-drop an unresponsive viewer. The socket is aborted without a
        closing handshake; the serving task observes the loss and exits.
        """
        self._closed = True
        for task in (self._writer_task, self._probe_task):
            if task and not task.done():
                task.cancel()

        transport = getattr(self.connection, "transport", None)
        if transport is not None:
            transport.abort()
        log.info(f"Session {self.session_id} terminated")

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    def enqueue(self, payload: str) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            log.warning(f"Session {self.session_id} outbound queue full; frame dropped")
            return False
        return True

    def send_json(self, payload: Dict[str, Any]) -> bool:
        return self.enqueue(json.dumps(payload))

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self.connection.send(payload)
            except ConnectionClosed:
                log.debug(f"Session {self.session_id} writer stopped (connection closed)")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"Session {self.session_id} send failed: {e}")

    # ------------------------------------------------------------------ #
    # Liveness
    # ------------------------------------------------------------------ #

    def mark_alive(self) -> None:
        self.alive = True

    def probe(self) -> None:
        """Send a heartbeat ping; the matching pong sets alive again."""
        if self._closed:
            return
        if self._probe_task and not self._probe_task.done():
            return
        self._probe_task = asyncio.create_task(self._ping())

    async def _ping(self) -> None:
        try:
            pong_waiter = await self.connection.ping()
        except ConnectionClosed:
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug(f"Session {self.session_id} ping failed: {e}")
            return

        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self.mark_alive()

    # ------------------------------------------------------------------ #
    # Inbound
    # ------------------------------------------------------------------ #

    def handle_frame(self, raw, registry) -> None:
        """
        Apply one client frame. Malformed or incomplete frames are logged and
        ignored; the connection stays open.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            log.warning(f"Session {self.session_id} sent malformed frame: {e}")
            return

        if not isinstance(data, dict):
            log.debug(f"Session {self.session_id} sent non-object frame; ignored")
            return

        action = data.get("action")
        if action not in {"join", "leave"}:
            log.debug(f"Session {self.session_id} sent unknown action {action!r}; ignored")
            return

        platform = data.get("platform")
        channel = data.get("channel")
        if not platform or not channel or not isinstance(channel, str) or not isinstance(platform, str):
            log.debug(f"Session {self.session_id} {action} without platform/channel; ignored")
            return

        try:
            key = RoomKey.create(platform, channel)
        except ValueError as e:
            log.warning(f"Session {self.session_id} {action} rejected: {e}")
            return

        if action == "join":
            result = registry.join(self, key)
            self.send_json(result.ack())
        else:
            registry.leave(self, key)
            self.send_json({"status": "left", "room": key.name})
