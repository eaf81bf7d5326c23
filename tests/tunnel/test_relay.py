"""Tests for the bidirectional connection relay."""

import asyncio

import pytest

from camrelay.tunnel import relay
from camrelay.tunnel.relay import bind_reader_writer, relay_streams


class RecordingWriter:
    """Minimal stream writer that records what was written."""

    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.data.extend(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


def fed_reader(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


@pytest.fixture(autouse=True)
def short_drain(monkeypatch):
    monkeypatch.setattr(relay, "RELAY_DRAIN_TIMEOUT", 0.05)


class TestBindReaderWriter:
    """Tests for the one-direction copy loop."""

    async def test_copies_until_eof(self):
        """Should copy every byte and report the count."""
        writer = RecordingWriter()

        copied = await bind_reader_writer(fed_reader(b"hello world"), writer)

        assert copied == 11
        assert bytes(writer.data) == b"hello world"

    async def test_stops_on_write_error(self):
        """Should end quietly when the destination is gone."""
        writer = RecordingWriter()
        writer.closed = True

        copied = await bind_reader_writer(fed_reader(b"data"), writer)

        assert copied == 0


class TestRelayStreams:
    """Tests for relay_streams."""

    async def test_destination_close_closes_origin(self):
        """Should close both writers when one direction ends."""
        origin_writer = RecordingWriter()
        dest_writer = RecordingWriter()

        sent, received = await relay_streams(
            (fed_reader(b"", eof=False), origin_writer),
            (fed_reader(b"response"), dest_writer),
        )

        assert (sent, received) == (0, 8)
        assert bytes(origin_writer.data) == b"response"
        assert origin_writer.closed
        assert dest_writer.closed

    async def test_relays_over_real_sockets(self):
        """Should carry a request and its response between TCP peers."""

        async def backend(reader, writer):
            data = await reader.read(1024)
            writer.write(data.upper())
            await writer.drain()
            writer.close()

        backend_server = await asyncio.start_server(backend, "127.0.0.1", 0)
        backend_port = backend_server.sockets[0].getsockname()[1]
        results: asyncio.Queue = asyncio.Queue()

        async def front(reader, writer):
            dest = await asyncio.open_connection("127.0.0.1", backend_port)
            results.put_nowait(await relay_streams((reader, writer), dest, label="test"))

        front_server = await asyncio.start_server(front, "127.0.0.1", 0)
        front_port = front_server.sockets[0].getsockname()[1]

        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", front_port)
            writer.write(b"ping")
            await writer.drain()

            response = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()

            sent, received = await asyncio.wait_for(results.get(), timeout=5)
        finally:
            front_server.close()
            backend_server.close()

        assert response == b"PING"
        assert sent == 4
        assert received == 4
