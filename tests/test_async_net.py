import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from kvs.async_engine import AsyncKvStore, AsyncSledKvsEngine
from kvs.async_net import (
    MAX_FRAME_LENGTH,
    AsyncKvsClient,
    AsyncKvsServer,
    read_frame,
    write_frame,
)
from kvs.errors import KvsError, ProtocolError
from kvs.protocol import Request, RequestKind, Response, encode


class _Collector:
    def __init__(self):
        self.data = bytearray()

    def write(self, data):
        self.data += data

    async def drain(self):
        return None


def _reader(data):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


@asynccontextmanager
async def running_server(engine):
    server = AsyncKvsServer(engine)
    address = await server.start(("127.0.0.1", 0))
    try:
        yield address
    finally:
        await server.close()


@asynccontextmanager
async def fake_server(handler):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    try:
        yield server.sockets[0].getsockname()[:2]
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_write_frame_prefixes_length():
    sink = _Collector()
    await write_frame(sink, b"hello")
    assert bytes(sink.data) == b"\x00\x00\x00\x05hello"


@pytest.mark.asyncio
async def test_frame_round_trip():
    sink = _Collector()
    await write_frame(sink, b"first")
    await write_frame(sink, b"")
    reader = _reader(bytes(sink.data))
    assert await read_frame(reader) == b"first"
    assert await read_frame(reader) == b""
    assert await read_frame(reader) is None


@pytest.mark.asyncio
async def test_partial_header_raises():
    with pytest.raises(ProtocolError):
        await read_frame(_reader(b"\x00\x00"))


@pytest.mark.asyncio
async def test_truncated_body_raises():
    with pytest.raises(ProtocolError):
        await read_frame(_reader(b"\x00\x00\x00\x05hel"))


@pytest.mark.asyncio
async def test_oversized_frame_raises():
    header = (MAX_FRAME_LENGTH + 1).to_bytes(4, "big")
    with pytest.raises(ProtocolError):
        await read_frame(_reader(header))


@pytest.mark.asyncio
@pytest.mark.parametrize("engine_class", [AsyncKvStore, AsyncSledKvsEngine])
async def test_access_server(tmp_path, engine_class):
    engine = engine_class.open(tmp_path, 2)
    try:
        async with running_server(engine) as address:
            async with await AsyncKvsClient.connect(address) as client:
                await client.set("key1", "value1")
                assert await client.get("key1") == "value1"
                await client.set("key1", "value2")
                assert await client.get("key1") == "value2"
                assert await client.get("key2") is None
                with pytest.raises(KvsError, match="Key not found"):
                    await client.remove("key2")
                await client.set("key2", "value3")
                await client.remove("key1")
                assert await client.get("key1") is None
                assert await client.get("key2") == "value3"
    finally:
        engine.close()


@pytest.mark.asyncio
async def test_bad_frame_gets_error_and_connection_survives(tmp_path):
    engine = AsyncKvStore.open(tmp_path, 1)
    try:
        async with running_server(engine) as address:
            reader, writer = await asyncio.open_connection(*address)
            await write_frame(writer, b"not json")
            bad = Response.from_message(json.loads(await read_frame(reader)))
            assert isinstance(bad.error, str) and bad.kind is None
            await write_frame(writer, encode(Request(RequestKind.GET, "key1").to_json()))
            good = Response.from_message(json.loads(await read_frame(reader)))
            assert good == Response(kind=RequestKind.GET, value=None)
            writer.close()
            await writer.wait_closed()
    finally:
        engine.close()


@pytest.mark.asyncio
async def test_no_response_received():
    async def handler(reader, writer):
        await read_frame(reader)
        writer.close()

    async with fake_server(handler) as address:
        client = await AsyncKvsClient.connect(address)
        try:
            with pytest.raises(KvsError, match="No response received"):
                await client.get("key1")
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_invalid_response_kind():
    async def handler(reader, writer):
        await read_frame(reader)
        await write_frame(writer, encode(Response(kind=RequestKind.SET).to_message()))
        writer.close()

    async with fake_server(handler) as address:
        client = await AsyncKvsClient.connect(address)
        try:
            with pytest.raises(KvsError, match="Invalid response"):
                await client.get("key1")
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_run_until_closed(tmp_path):
    engine = AsyncKvStore.open(tmp_path, 1)
    server = AsyncKvsServer(engine)
    task = asyncio.create_task(server.run(("127.0.0.1", 0)))
    try:
        while server.address is None:
            await asyncio.sleep(0.01)
        address = server.address
        async with await AsyncKvsClient.connect(address) as client:
            await client.set("key1", "value1")
            assert await client.get("key1") == "value1"
        await server.close()
        await asyncio.wait_for(task, 5)
        with pytest.raises(KvsError):
            await AsyncKvsClient.connect(address)
    finally:
        engine.close()