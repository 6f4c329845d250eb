"""
In-process RFB 3.8 server for tests.

Serves a solid-colour desktop as Raw or ZRLE rectangles and records every
pointer and key event it receives.
"""
import os
import struct
import zlib
from contextlib import AsyncExitStack
from typing import Optional

import anyio
from anyio.abc import SocketAttribute
from anyio.streams.buffered import BufferedByteReceiveStream

from desktop_sandbox import d3des

_PIXEL_FORMAT = struct.pack(">BBBBHHHBBB3x", 32, 24, 0, 1, 255, 255, 255, 0, 8, 16)

_DISCONNECTS = (
    anyio.EndOfStream,
    anyio.IncompleteRead,
    anyio.BrokenResourceError,
    anyio.ClosedResourceError,
    OSError,
)


class FakeVNCServer:
    def __init__(self, width: int = 64, height: int = 48, password: Optional[str] = "secret",
                 encoding: str = "raw", colour: tuple = (255, 0, 0), fail_first: int = 0,
                 name: str = "fake-desktop"):
        self.width = width
        self.height = height
        self.password = password
        self.encoding = encoding
        self.colour = colour
        self.fail_first = fail_first
        self.name = name
        self.port: Optional[int] = None

        self.handshakes = 0
        self.events: list[tuple] = []
        self._streams: set = set()
        self._version = 0
        self._stack: Optional[AsyncExitStack] = None

    @property
    def pointer_events(self) -> list[tuple]:
        return [e[1:] for e in self.events if e[0] == "pointer"]

    @property
    def key_events(self) -> list[tuple]:
        return [e[1:] for e in self.events if e[0] == "key"]

    def set_colour(self, colour: tuple) -> None:
        self.colour = colour
        self._version += 1

    async def drop_connections(self) -> None:
        for stream in list(self._streams):
            await stream.aclose()

    async def __aenter__(self) -> "FakeVNCServer":
        self._stack = AsyncExitStack()
        listener = await anyio.create_tcp_listener(local_host="127.0.0.1", local_port=0)
        await self._stack.enter_async_context(listener)
        self.port = listener.extra(SocketAttribute.local_port)
        tg = await self._stack.enter_async_context(anyio.create_task_group())
        self._stack.callback(tg.cancel_scope.cancel)
        tg.start_soon(listener.serve, self._handle)
        return self

    async def __aexit__(self, *exc_info):
        await self._stack.aclose()

    async def _handle(self, stream) -> None:
        self._streams.add(stream)
        reader = BufferedByteReceiveStream(stream)
        try:
            async with stream:
                await stream.send(b"RFB 003.008\n")
                await reader.receive_exactly(12)
                self.handshakes += 1
                if self.handshakes <= self.fail_first:
                    return

                if not await self._authenticate(stream, reader):
                    return

                await reader.receive_exactly(1)  # ClientInit
                name = self.name.encode()
                await stream.send(
                    struct.pack(">HH", self.width, self.height) + _PIXEL_FORMAT
                    + struct.pack(">I", len(name)) + name
                )
                await self._serve(stream, reader)
        except _DISCONNECTS:
            pass
        finally:
            self._streams.discard(stream)

    async def _authenticate(self, stream, reader) -> bool:
        if self.password is None:
            await stream.send(b"\x01\x01")
            await reader.receive_exactly(1)
            await stream.send(struct.pack(">I", 0))
            return True

        await stream.send(b"\x01\x02")
        await reader.receive_exactly(1)
        challenge = os.urandom(16)
        await stream.send(challenge)
        response = await reader.receive_exactly(16)
        if response != d3des.vnc_auth_response(challenge, self.password):
            reason = b"Authentication failed"
            await stream.send(struct.pack(">II", 1, len(reason)) + reason)
            return False
        await stream.send(struct.pack(">I", 0))
        return True

    async def _serve(self, stream, reader) -> None:
        deflater = zlib.compressobj()
        sent_version = -1
        while True:
            (msg_type,) = await reader.receive_exactly(1)
            if msg_type == 0:
                await reader.receive_exactly(19)
            elif msg_type == 2:
                (count,) = struct.unpack(">xH", await reader.receive_exactly(3))
                await reader.receive_exactly(4 * count)
            elif msg_type == 3:
                incremental = (await reader.receive_exactly(9))[0]
                if not incremental or sent_version != self._version:
                    sent_version = self._version
                    await stream.send(self._frame(deflater))
                else:
                    await anyio.sleep(0.01)
                    await stream.send(struct.pack(">BxH", 0, 0))
            elif msg_type == 4:
                down, keysym = struct.unpack(">B2xI", await reader.receive_exactly(7))
                self.events.append(("key", bool(down), keysym))
            elif msg_type == 5:
                buttons, x, y = struct.unpack(">BHH", await reader.receive_exactly(5))
                self.events.append(("pointer", buttons, x, y))
            elif msg_type == 6:
                (length,) = struct.unpack(">3xI", await reader.receive_exactly(7))
                await reader.receive_exactly(length)
            else:
                return

    def _frame(self, deflater) -> bytes:
        r, g, b = self.colour
        header = struct.pack(">BxH", 0, 1)
        if self.encoding == "zrle":
            tiles = bytearray()
            for ty in range(0, self.height, 64):
                for tx in range(0, self.width, 64):
                    tiles += bytes([1, r, g, b])
            data = deflater.compress(bytes(tiles)) + deflater.flush(zlib.Z_SYNC_FLUSH)
            rect = struct.pack(">HHHHi", 0, 0, self.width, self.height, 16)
            return header + rect + struct.pack(">I", len(data)) + data
        rect = struct.pack(">HHHHi", 0, 0, self.width, self.height, 0)
        return header + rect + bytes([r, g, b, 0]) * (self.width * self.height)


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll ``predicate`` until it returns a truthy value."""
    with anyio.fail_after(timeout):
        while True:
            value = predicate()
            if value:
                return value
            await anyio.sleep(interval)
