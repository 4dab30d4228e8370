import asyncio
import http
import logging
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request

from . import bridge, config
from .errors import InvalidTarget
from .registry import Registry

logger = logging.getLogger("GatewayWS")


class Gateway:
    """
    WebSocket → TCP gateway for browser VNC clients.

    - The browser opens `ws://<host>:<port><path>?host=..&port=..&service_id=..`.
    - Each accepted WebSocket gets its own Bridge dialing the requested
      VNC server; payload bytes pass through untouched in both directions.
    - Handshakes on any other path are refused with 404 before upgrading.
    """

    def __init__(self, registry: Registry, host: str = config.LISTEN_HOST, port: int = config.LISTEN_PORT,
                 path: str = config.LISTEN_PATH, idle_timeout: float = config.IDLE_TIMEOUT,
                 open_connection: Callable[..., Any] = asyncio.open_connection) -> None:
        self.registry = registry
        self.host = host
        self.port = port
        self.path = path
        self.idle_timeout = idle_timeout
        self._open_connection = open_connection
        self._server: Optional[Server] = None
        self._ready = asyncio.Event()
        self._stopped = asyncio.Event()

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.sockets[0].getsockname()[1]

    def _process_request(self, ws: ServerConnection, request: Request):
        if urlsplit(request.path).path != self.path:
            logger.warning("Rejected handshake on %s", request.path)
            return ws.respond(http.HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    async def _handle_ws(self, ws: ServerConnection) -> None:
        query = parse_qs(urlsplit(ws.request.path).query)
        host = query.get("host", [None])[0]
        port = query.get("port", [None])[0]
        service_id = query.get("service_id", [config.DEFAULT_SERVICE_ID])[0]

        try:
            session = await bridge.accept(
                ws, host, port, service_id, self.registry,
                idle_timeout=self.idle_timeout,
                open_connection=self._open_connection,
            )
        except InvalidTarget:
            return
        await session.wait_closed()

    async def start(self) -> None:
        async with serve(self._handle_ws, self.host, self.port,
                         process_request=self._process_request,
                         ping_interval=config.PING_INTERVAL, ping_timeout=config.PING_TIMEOUT,
                         max_size=config.MAX_MESSAGE_SIZE) as server:
            self._server = server
            logger.info("VNC WebSocket server started on ws://%s:%s%s", self.host, self.bound_port, self.path)
            self._ready.set()
            await self._stopped.wait()
        self._server = None
        logger.info("VNC server closed")

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def stop(self) -> None:
        """Close every bridged session, then stop listening."""
        logger.info("Closing %d active connection(s)", len(self.registry))
        await self.registry.drain_all()
        self._stopped.set()
