"""
WebSocket <-> TCP bridge for one browser session.

One Bridge owns exactly one WebSocket (the framed side) and one TCP
connection to a VNC server (the stream side). Bytes are forwarded
verbatim both ways: one TCP read becomes one binary WebSocket message and
one WebSocket message becomes one TCP write.

Forwarding is best-effort at the edges. A message that arrives while the
TCP side is still connecting (or already closed) is dropped and counted,
and so is a TCP chunk that arrives after the WebSocket went away.

Whatever ends the session first (either side closing, an error, or the idle
timeout) runs `teardown` once; later terminal events are no-ops.
"""

import asyncio
import logging
import struct
from typing import Any, Callable, Optional, Tuple

from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.protocol import State as FramedState

from . import config
from .errors import FramedTransportError, IdleTimeout, InvalidTarget, TransportError
from .registry import Registry
from .state import BridgeState, Connection, Event, close_frame_for
from .utils import new_connection_id

logger = logging.getLogger("Bridge")

# RFB SecurityResult "OK": a lone big-endian uint32 zero
AUTH_OK = struct.pack(">I", 0)

Outcome = Tuple[Event, Optional[BaseException]]

_TEARDOWN_LOG = {
    Event.STREAM_CLOSED: (logging.INFO, "VNC server disconnected (%s)"),
    Event.STREAM_ERROR: (logging.ERROR, "TCP error (%s)"),
    Event.IDLE_TIMEOUT: (logging.INFO, "Connection timeout (%s)"),
    Event.FRAMED_CLOSED: (logging.INFO, "WebSocket closed (%s)"),
    Event.FRAMED_ERROR: (logging.ERROR, "WebSocket error (%s)"),
    Event.SHUTDOWN: (logging.INFO, "Closing for shutdown (%s)"),
}


def _close_orphaned_stream(connect: "asyncio.Future") -> None:
    if connect.cancelled() or connect.exception() is not None:
        return
    _, writer = connect.result()
    writer.close()


def parse_target(host: Optional[str], port: Optional[str]) -> Tuple[str, int]:
    if not host or not port:
        raise InvalidTarget(config.REASON_MISSING_TARGET)
    try:
        port_num = int(port)
    except (TypeError, ValueError):
        raise InvalidTarget(config.REASON_INVALID_PORT) from None
    if not 0 < port_num < 65536:
        raise InvalidTarget(config.REASON_INVALID_PORT)
    return host, port_num


async def accept(framed, host: Optional[str], port: Optional[str], service_id: str,
                 registry: Registry, **kwargs) -> "Bridge":
    """
    Validate the target, register a new Bridge and start it.

    On a missing or malformed target the WebSocket is closed with 1008 and
    InvalidTarget is re-raised; nothing is dialed or registered.
    """
    try:
        target_host, target_port = parse_target(host, port)
    except InvalidTarget as e:
        logger.error("%s (service %s)", e.reason, service_id)
        await framed.close(config.CLOSE_POLICY_VIOLATION, e.reason)
        raise

    bridge = Bridge(framed, target_host, target_port, service_id, registry, **kwargs)
    logger.info("VNC connection: %s -> %s", service_id, bridge.connection.target)
    bridge.start()
    return bridge


class Bridge:
    def __init__(self, framed, host: str, port: int, service_id: str, registry: Registry,
                 idle_timeout: float = config.IDLE_TIMEOUT,
                 open_connection: Callable[..., Any] = asyncio.open_connection,
                 read_size: int = config.READ_CHUNK_SIZE) -> None:
        self.connection = Connection(
            id=new_connection_id(service_id),
            service_id=service_id,
            host=host,
            port=port,
            framed=framed,
        )
        self.registry = registry
        self.idle_timeout = idle_timeout
        self._open_connection = open_connection
        self._read_size = read_size
        self._deadline = 0.0
        self._tasks: Tuple[asyncio.Task, ...] = ()
        self._run_task: Optional[asyncio.Task] = None
        self._stream_released = False
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        c = self.connection
        return f"<Bridge {c.id} {c.target} {c.state.value}>"

    @property
    def id(self) -> str:
        return self.connection.id

    def start(self) -> asyncio.Task:
        self.registry.put(self.id, self)
        self._run_task = asyncio.create_task(self.run(), name=f"bridge-{self.id}")
        return self._run_task

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def shutdown(self) -> None:
        await self.teardown(Event.SHUTDOWN)

    async def run(self) -> None:
        if self.connection.state is not BridgeState.CONNECTING:
            return
        stream_task = asyncio.create_task(self._pump_stream(), name=f"tcp-{self.id}")
        framed_task = asyncio.create_task(self._pump_framed(), name=f"ws-{self.id}")
        self._tasks = (stream_task, framed_task)
        try:
            await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            event, cause = self._first_outcome()
            await self.teardown(event, cause)
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def teardown(self, event: Event, cause: Optional[BaseException] = None) -> bool:
        """Close both sides and deregister. Returns False if teardown already ran."""
        conn = self.connection
        if conn.state in (BridgeState.CLOSING, BridgeState.CLOSED):
            return False
        conn.state = BridgeState.CLOSING
        self._log_teardown(event, cause)

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

        writer = self._release_stream()
        frame = close_frame_for(event)
        try:
            if frame is not None and self._framed_open():
                await conn.framed.close(*frame)
            if writer is not None:
                await self._wait_stream_closed(writer)
        finally:
            self.registry.remove(conn.id)
            conn.state = BridgeState.CLOSED
            self._closed.set()
        return True

    # ---- TCP -> WebSocket ----

    async def _pump_stream(self) -> Outcome:
        conn = self.connection
        connect = asyncio.ensure_future(self._open_connection(conn.host, conn.port))
        try:
            reader, writer = await asyncio.wait_for(asyncio.shield(connect), timeout=self.idle_timeout)
        except asyncio.TimeoutError:
            connect.cancel()
            return Event.IDLE_TIMEOUT, IdleTimeout(f"connect to {conn.target} timed out")
        except OSError as e:
            return Event.STREAM_ERROR, TransportError(f"connect to {conn.target} failed: {e}")
        except asyncio.CancelledError:
            # the connect may already have produced a socket nobody will own
            connect.cancel()
            connect.add_done_callback(_close_orphaned_stream)
            raise

        if conn.state is not BridgeState.CONNECTING:
            writer.close()
            return Event.SHUTDOWN, None
        conn.reader, conn.writer = reader, writer
        conn.apply(Event.STREAM_CONNECTED)
        self._touch()
        logger.info("Connected to VNC server %s", conn.target)

        while True:
            try:
                chunk = await self._read_chunk()
            except IdleTimeout as e:
                return Event.IDLE_TIMEOUT, e
            except OSError as e:
                return Event.STREAM_ERROR, TransportError(str(e) or type(e).__name__)
            if not chunk:
                return Event.STREAM_CLOSED, None

            self._touch()
            conn.apply(Event.STREAM_DATA)
            conn.bytes_down += len(chunk)

            if not self._framed_open():
                conn.chunks_dropped += 1
                logger.debug("Dropped %d bytes for %s: WebSocket not open", len(chunk), conn.id)
                continue
            self._observe_auth(chunk)
            try:
                await conn.framed.send(chunk)
            except ConnectionClosedError as e:
                return Event.FRAMED_ERROR, FramedTransportError(str(e))
            except ConnectionClosed:
                return Event.FRAMED_CLOSED, None

    async def _read_chunk(self) -> bytes:
        loop = asyncio.get_running_loop()
        while True:
            # writes push the deadline too, so recompute after every wakeup
            remaining = self._deadline - loop.time()
            if remaining <= 0:
                raise IdleTimeout(f"no traffic for {self.idle_timeout:g}s")
            try:
                return await asyncio.wait_for(self.connection.reader.read(self._read_size), timeout=remaining)
            except asyncio.TimeoutError:
                continue

    def _observe_auth(self, chunk: bytes) -> None:
        conn = self.connection
        if not conn.auth_observed and chunk == AUTH_OK:
            conn.auth_observed = True
            logger.info("Authentication successful for %s", conn.service_id)

    # ---- WebSocket -> TCP ----

    async def _pump_framed(self) -> Outcome:
        conn = self.connection
        try:
            async for message in conn.framed:
                conn.apply(Event.FRAMED_DATA)
                data = message.encode("utf-8") if isinstance(message, str) else message
                if not self._stream_writable():
                    conn.frames_dropped += 1
                    logger.debug("Dropped %d bytes for %s: VNC socket not writable", len(data), conn.id)
                    continue
                conn.writer.write(data)
                try:
                    await conn.writer.drain()
                except OSError as e:
                    return Event.STREAM_ERROR, TransportError(str(e) or type(e).__name__)
                conn.bytes_up += len(data)
                self._touch()
        except ConnectionClosedError as e:
            return Event.FRAMED_ERROR, FramedTransportError(str(e))
        return Event.FRAMED_CLOSED, None

    # ---- helpers ----

    def _touch(self) -> None:
        self._deadline = asyncio.get_running_loop().time() + self.idle_timeout

    def _framed_open(self) -> bool:
        return self.connection.framed.state is FramedState.OPEN

    def _stream_writable(self) -> bool:
        conn = self.connection
        return (conn.state is BridgeState.BRIDGING
                and conn.writer is not None
                and not conn.writer.is_closing())

    def _release_stream(self) -> Optional[asyncio.StreamWriter]:
        writer = self.connection.writer
        if writer is None or self._stream_released:
            return None
        self._stream_released = True
        writer.close()
        return writer

    async def _wait_stream_closed(self, writer: asyncio.StreamWriter) -> None:
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug("TCP close for %s reported: %s", self.id, e)

    def _first_outcome(self) -> Outcome:
        sides = (Event.STREAM_ERROR, Event.FRAMED_ERROR)
        for task, side in zip(self._tasks, sides):
            if not task.done() or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error("Unexpected failure in %s pump for %s", side.value, self.id, exc_info=exc)
                return side, exc
            return task.result()
        return Event.SHUTDOWN, None

    def _log_teardown(self, event: Event, cause: Optional[BaseException]) -> None:
        level, msg = _TEARDOWN_LOG[event]
        if cause is None:
            logger.log(level, msg, self.connection.service_id)
        else:
            logger.log(level, msg + ": %s", self.connection.service_id, cause)
