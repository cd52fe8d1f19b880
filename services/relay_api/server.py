"""Websocket relay server for downstream viewers (plus health routes)."""

from __future__ import annotations

from http import HTTPStatus
from typing import Optional
from urllib.parse import urlparse

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from core.registry import RoomRegistry
from core.session import DownstreamSession
from shared.config.relay import ServerConfig
from shared.logging.logger import get_logger

log = get_logger("services.relay_api")


class RelayServer:
    """
    Accepts viewer sockets on a single port.

    - GET /health answers 200 while the process is up
    - plain GET / answers 200 (uptime monitors)
    - websocket upgrades become DownstreamSessions; keepalive pings are left
      to the LivenessSupervisor
    """

    def __init__(self, config: ServerConfig, registry: RoomRegistry) -> None:
        self._config = config
        self._registry = registry
        self._server: Optional[Server] = None

    @property
    def port(self) -> Optional[int]:
        if not self._server:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        if self._server:
            return

        self._server = await serve(
            self._handle,
            self._config.host,
            int(self._config.port),
            process_request=self._process_request,
            ping_interval=None,
        )
        log.info(f"Relay server listening on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        if not self._server:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        log.info("Relay server stopped")

    # ------------------------------------------------------------------

    @staticmethod
    def _process_request(connection: ServerConnection, request):
        path = urlparse(request.path).path

        if path == "/health":
            return connection.respond(HTTPStatus.OK, "OK\n")

        if request.headers.get("Upgrade", "").lower() != "websocket":
            if path in {"", "/"}:
                return connection.respond(HTTPStatus.OK, "Server is running\n")
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

        return None

    async def _handle(self, connection: ServerConnection) -> None:
        session = DownstreamSession(
            connection,
            queue_size=self._config.outbound_queue_size,
        )
        self._registry.register(session)
        session.start()

        try:
            async for message in connection:
                session.handle_frame(message, self._registry)
        except ConnectionClosed:
            pass
        except Exception as e:
            log.error(f"Session {session.session_id} handler error: {e}")
        finally:
            self._registry.unregister(session)
            await session.close()
