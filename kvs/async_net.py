"""An asyncio client and server exchanging length-prefixed JSON frames."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress

from .async_engine import AsyncKvsEngine
from .errors import KvsError, ProtocolError
from .protocol import Request, RequestKind, Response, encode, parse_address

log = logging.getLogger(__name__)

MAX_FRAME_LENGTH = 8 * 1024 * 1024
_HEADER_LENGTH = 4

Address = str | tuple[str, int]


def _resolve(addr: Address) -> tuple[str, int]:
    if isinstance(addr, str):
        return parse_address(addr)
    host, port = addr
    return host, int(port)


async def read_frame(reader: asyncio.StreamReader) -> bytes | None:
    """Read one frame: a 4-byte big-endian length, then that many bytes.

    Returns None when the stream ends cleanly between frames.
    """
    try:
        header = await reader.readexactly(_HEADER_LENGTH)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise ProtocolError("connection closed in the middle of a frame header") from exc
    length = int.from_bytes(header, "big")
    if length > MAX_FRAME_LENGTH:
        raise ProtocolError("frame size too big")
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ProtocolError("connection closed in the middle of a frame") from exc


async def write_frame(writer: asyncio.StreamWriter, payload: bytes) -> None:
    """Write ``payload`` as one length-prefixed frame and drain the writer."""
    if len(payload) > MAX_FRAME_LENGTH:
        raise ProtocolError("frame size too big")
    writer.write(len(payload).to_bytes(_HEADER_LENGTH, "big") + payload)
    await writer.drain()


class AsyncKvsClient:
    """An asyncio client for the framed key/value protocol."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    @classmethod
    async def connect(cls, addr: Address) -> AsyncKvsClient:
        """Connect to the server at ``addr``."""
        host, port = _resolve(addr)
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        return cls(reader, writer)

    async def _send_request(self, request: Request) -> Response | None:
        try:
            await write_frame(self._writer, encode(request.to_json()))
            frame = await read_frame(self._reader)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        if frame is None:
            return None
        try:
            data = json.loads(frame)
        except ValueError as exc:
            raise ProtocolError(f"invalid response: {exc}") from exc
        return Response.from_message(data)

    async def _call(self, request: Request) -> Response:
        response = await self._send_request(request)
        if response is None:
            raise KvsError("No response received")
        if response.error is not None:
            raise KvsError(response.error)
        if response.kind is not request.kind:
            raise KvsError("Invalid response")
        return response

    async def get(self, key: str) -> str | None:
        """Return the value of ``key``, or None if it does not exist."""
        return (await self._call(Request(RequestKind.GET, key))).value

    async def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``."""
        await self._call(Request(RequestKind.SET, key, value))

    async def remove(self, key: str) -> None:
        """Remove ``key``; raises KvsError if that fails."""
        await self._call(Request(RequestKind.REMOVE, key))

    async def close(self) -> None:
        """Close the connection."""
        self._writer.close()
        with suppress(OSError):
            await self._writer.wait_closed()

    async def __aenter__(self) -> AsyncKvsClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


class AsyncKvsServer:
    """Serves an asynchronous engine over the framed protocol.

    Any failure while handling a frame is answered with an error response and
    the connection stays open.
    """

    def __init__(self, engine: AsyncKvsEngine) -> None:
        self.engine = engine
        self.address: tuple[str, int] | None = None
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self, addr: Address) -> tuple[str, int]:
        """Start listening on ``addr`` and return the address actually bound."""
        host, port = _resolve(addr)
        try:
            server = await asyncio.start_server(self._handle, host, port)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        self._server = server
        self.address = tuple(server.sockets[0].getsockname()[:2])  # type: ignore[assignment]
        assert self.address is not None
        return self.address

    async def run(self, addr: Address) -> None:
        """Listen on ``addr`` and serve until close() is called."""
        await self.start(addr)
        server = self._server
        assert server is not None
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            if self._server is not None:
                raise

    async def close(self) -> None:
        """Stop listening and close every open connection."""
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        for writer in list(self._writers):
            writer.close()
        await server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            while (frame := await read_frame(reader)) is not None:
                response = await self._respond(frame)
                await write_frame(writer, encode(response.to_message()))
        except (KvsError, OSError) as exc:
            log.error("Error on serving client: %s", exc)
        finally:
            self._writers.discard(writer)
            writer.close()
            with suppress(OSError):
                await writer.wait_closed()

    async def _respond(self, frame: bytes) -> Response:
        try:
            request = Request.from_json(json.loads(frame))
        except (KvsError, ValueError) as exc:
            return Response(error=str(exc))
        try:
            if request.kind is RequestKind.GET:
                return Response(kind=request.kind, value=await self.engine.get(request.key))
            if request.kind is RequestKind.SET:
                assert request.value is not None
                await self.engine.set(request.key, request.value)
            else:
                await self.engine.remove(request.key)
            return Response(kind=request.kind)
        except KvsError as exc:
            return Response(error=str(exc))