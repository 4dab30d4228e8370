"""Test doubles: a scripted WebSocket and a loopback stand-in for a VNC server."""

import asyncio
import socket
import struct

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.protocol import State

_HANG_UP = object()
_FAIL = object()


class FakeWebSocket:
    """Just enough of a websockets ServerConnection for a Bridge."""

    def __init__(self):
        self.state = State.OPEN
        self.sent = []
        self.close_calls = []
        self._inbox = asyncio.Queue()

    def feed(self, message):
        self._inbox.put_nowait(message)

    def hang_up(self):
        self._inbox.put_nowait(_HANG_UP)

    def fail(self):
        self._inbox.put_nowait(_FAIL)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _HANG_UP:
            self.state = State.CLOSED
            raise StopAsyncIteration
        if item is _FAIL:
            self.state = State.CLOSED
            raise ConnectionClosedError(None, None)
        return item

    async def send(self, data):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))
        if self.state is State.OPEN:
            self.state = State.CLOSED
            self._inbox.put_nowait(_HANG_UP)


class LoopbackServer:
    """Local TCP server standing in for a VNC server."""

    def __init__(self):
        self.port = None
        self.accepted = 0
        self._peers = asyncio.Queue()
        self._writers = []
        self._server = None

    async def __aenter__(self):
        self._server = await asyncio.start_server(self._on_client, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc):
        for writer in self._writers:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        self._server.close()
        await self._server.wait_closed()

    async def _on_client(self, reader, writer):
        self.accepted += 1
        self._writers.append(writer)
        await self._peers.put((reader, writer))

    async def next_peer(self, timeout=2.0):
        return await asyncio.wait_for(self._peers.get(), timeout)


def reset(writer):
    """Drop the connection with a TCP RST instead of a FIN."""
    sock = writer.get_extra_info("socket")
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    writer.transport.abort()


def unused_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout=2.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


async def never(*args, **kwargs):
    await asyncio.Event().wait()
