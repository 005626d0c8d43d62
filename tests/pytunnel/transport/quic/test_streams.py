"""Tests for QUIC stream and connection plumbing, driven by synthetic events."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from aioquic.quic.events import ConnectionTerminated, StreamDataReceived, StreamReset

from pytunnel.config import TunnelConfig
from pytunnel.exceptions import TransportError
from pytunnel.identity import IdentityKeypair
from pytunnel.transport import AddressBook
from pytunnel.transport.quic import (
    PAYLOAD_ACCEPTED,
    PAYLOAD_TIMEOUT,
    PAYLOAD_TOO_LARGE,
    QuicConnection,
    QuicEndpoint,
    QuicStream,
)


def make_protocol() -> MagicMock:
    """A stand-in for aioquic's protocol, recording what gets sent."""
    protocol = MagicMock()
    protocol._quic.get_next_available_stream_id.return_value = 0
    protocol.wait_closed = AsyncMock()
    return protocol


def make_connection(
    protocol: MagicMock, *, is_client: bool = False, **config: object
) -> QuicConnection:
    return QuicConnection(
        _protocol=protocol,
        _config=TunnelConfig(**config),  # type: ignore[arg-type]
        _is_client=is_client,
    )


class TestQuicStreamRead:
    """Tests for reading from a QuicStream."""

    @pytest.mark.anyio
    async def test_readexactly_keeps_surplus(self) -> None:
        """Bytes beyond the requested count stay for the next read."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=0)
        stream._receive_data(b"abcdef")

        assert await stream.readexactly(2) == b"ab"
        assert await stream.read() == b"cdef"

    @pytest.mark.anyio
    async def test_readexactly_spans_chunks(self) -> None:
        """readexactly collects across several data events."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=0)
        stream._receive_data(b"ab")
        stream._receive_data(b"cd")

        assert await stream.readexactly(3) == b"abc"
        assert await stream.readexactly(1) == b"d"

    @pytest.mark.anyio
    async def test_readexactly_early_end(self) -> None:
        """FIN before enough bytes is an error."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=0)
        stream._receive_data(b"ab")
        stream._receive_end()

        with pytest.raises(TransportError, match="ended after 2 of 4 bytes"):
            await stream.readexactly(4)

    @pytest.mark.anyio
    async def test_read_after_end(self) -> None:
        """Reads after FIN keep returning empty bytes."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=0)
        stream._receive_end()

        assert await stream.read() == b""
        assert await stream.read() == b""

    @pytest.mark.anyio
    async def test_reset(self) -> None:
        """A reset stream fails every read."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=4)
        stream._receive_reset()

        with pytest.raises(TransportError, match="Stream 4 was reset"):
            await stream.read()
        with pytest.raises(TransportError, match="was reset"):
            await stream.read()

    @pytest.mark.anyio
    async def test_read_to_end(self) -> None:
        """read_to_end joins every chunk up to FIN."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=0)
        stream._receive_data(b"hello ")
        stream._receive_data(b"world")
        stream._receive_end()

        assert await stream.read_to_end(limit=100) == b"hello world"

    @pytest.mark.anyio
    async def test_read_to_end_limit(self) -> None:
        """Data above the limit is refused."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=0)
        stream._receive_data(b"x" * 8)
        stream._receive_end()

        with pytest.raises(TransportError, match="exceeds 4 bytes"):
            await stream.read_to_end(limit=4)


class TestQuicStreamWrite:
    """Tests for writing to a QuicStream."""

    @pytest.mark.anyio
    async def test_write(self) -> None:
        """Writes go to aioquic and are flushed."""
        protocol = make_protocol()
        stream = QuicStream(_protocol=protocol, _stream_id=8)

        await stream.write(b"data")

        protocol._quic.send_stream_data.assert_called_once_with(8, b"data", end_stream=False)
        protocol.transmit.assert_called_once()

    @pytest.mark.anyio
    async def test_write_after_fin(self) -> None:
        """FIN closes our side for good."""
        stream = QuicStream(_protocol=make_protocol(), _stream_id=0)
        await stream.write(b"last", end_stream=True)

        with pytest.raises(TransportError, match="write side is closed"):
            await stream.write(b"more")

    @pytest.mark.anyio
    async def test_write_failure(self) -> None:
        """aioquic errors surface as TransportError."""
        protocol = make_protocol()
        protocol._quic.send_stream_data.side_effect = ValueError("stream is closed")
        stream = QuicStream(_protocol=protocol, _stream_id=0)

        with pytest.raises(TransportError, match="Write failed"):
            await stream.write(b"data")

    @pytest.mark.anyio
    async def test_reset_once(self) -> None:
        """reset() aborts our side once and blocks later writes."""
        protocol = make_protocol()
        stream = QuicStream(_protocol=protocol, _stream_id=0)

        stream.reset(PAYLOAD_TOO_LARGE)
        stream.reset(PAYLOAD_TOO_LARGE)

        protocol._quic.reset_stream.assert_called_once_with(0, PAYLOAD_TOO_LARGE)
        with pytest.raises(TransportError):
            await stream.write(b"data")


class TestQuicConnectionReceive:
    """Tests for inbound payload streams."""

    @pytest.mark.anyio
    async def test_receive_acknowledges(self) -> None:
        """A complete stream is returned and acknowledged."""
        protocol = make_protocol()
        connection = make_connection(protocol)

        connection._handle_event(StreamDataReceived(data=b"hello", end_stream=True, stream_id=0))

        assert await connection.receive() == b"hello"
        protocol._quic.send_stream_data.assert_called_once_with(
            0, PAYLOAD_ACCEPTED, end_stream=True
        )

    @pytest.mark.anyio
    async def test_receive_in_stream_order(self) -> None:
        """Payloads come out in the order their streams opened."""
        connection = make_connection(make_protocol())

        for stream_id, data in [(0, b"first"), (4, b"second"), (8, b"third")]:
            connection._handle_event(
                StreamDataReceived(data=data, end_stream=True, stream_id=stream_id)
            )

        assert [await connection.receive() for _ in range(3)] == [b"first", b"second", b"third"]

    @pytest.mark.anyio
    async def test_oversized_payload_skipped(self) -> None:
        """Streams above the size limit are reset; later payloads still arrive."""
        protocol = make_protocol()
        connection = make_connection(protocol, max_payload_size=4)

        connection._handle_event(StreamDataReceived(data=b"x" * 10, end_stream=True, stream_id=0))
        connection._handle_event(StreamDataReceived(data=b"ok", end_stream=True, stream_id=4))

        assert await connection.receive() == b"ok"
        protocol._quic.reset_stream.assert_called_once_with(0, PAYLOAD_TOO_LARGE)

    @pytest.mark.anyio
    async def test_client_ignores_own_stream_ids(self) -> None:
        """Unknown streams with our own parity are not treated as incoming."""
        connection = make_connection(make_protocol(), is_client=True)

        connection._handle_event(StreamDataReceived(data=b"x", end_stream=True, stream_id=0))

        assert connection._incoming.empty()

    @pytest.mark.anyio
    async def test_retired_stream_ids_ignored(self) -> None:
        """Late events for a finished stream do not reopen it."""
        connection = make_connection(make_protocol())

        connection._handle_event(StreamDataReceived(data=b"a", end_stream=True, stream_id=4))
        assert await connection.receive() == b"a"

        connection._handle_event(StreamDataReceived(data=b"b", end_stream=True, stream_id=4))
        connection._handle_event(StreamDataReceived(data=b"c", end_stream=True, stream_id=0))

        assert connection._incoming.empty()

    @pytest.mark.anyio
    async def test_terminated(self) -> None:
        """Connection termination ends receive()."""
        connection = make_connection(make_protocol())

        connection._handle_event(
            ConnectionTerminated(error_code=0, frame_type=None, reason_phrase="bye")
        )

        assert connection.is_closed
        assert await connection.receive() is None

    def test_remote_key_requires_handshake(self) -> None:
        """The peer identity is unknown until authenticated."""
        connection = QuicConnection(
            _protocol=make_protocol(), _config=TunnelConfig(), _is_client=True
        )

        with pytest.raises(TransportError, match="not authenticated"):
            _ = connection.remote_public_key


class TestQuicConnectionSend:
    """Tests for outbound payload streams."""

    @pytest.mark.anyio
    async def test_send_completes_on_ack(self) -> None:
        """send() returns once the peer acknowledges."""
        protocol = make_protocol()
        connection = make_connection(protocol, is_client=True)

        task = asyncio.create_task(connection.send(b"payload"))
        await asyncio.sleep(0.01)
        protocol._quic.send_stream_data.assert_called_once_with(0, b"payload", end_stream=True)
        assert not task.done()

        connection._handle_event(
            StreamDataReceived(data=PAYLOAD_ACCEPTED, end_stream=True, stream_id=0)
        )
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.anyio
    async def test_send_reset_by_peer(self) -> None:
        """A peer reset fails the send."""
        connection = make_connection(make_protocol(), is_client=True)

        task = asyncio.create_task(connection.send(b"payload"))
        await asyncio.sleep(0.01)
        connection._handle_event(StreamReset(error_code=PAYLOAD_TOO_LARGE, stream_id=0))

        with pytest.raises(TransportError, match="was reset"):
            await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.anyio
    async def test_send_timeout(self) -> None:
        """Without an ack the send gives up and resets its stream."""
        protocol = make_protocol()
        connection = make_connection(protocol, is_client=True, send_timeout_secs=0.05)

        with pytest.raises(TransportError, match="No acknowledgement"):
            await connection.send(b"payload")

        protocol._quic.reset_stream.assert_called_once_with(0, PAYLOAD_TIMEOUT)

    @pytest.mark.anyio
    async def test_send_fails_when_connection_drops(self) -> None:
        """Termination while waiting for the ack fails the send."""
        connection = make_connection(make_protocol(), is_client=True)

        task = asyncio.create_task(connection.send(b"payload"))
        await asyncio.sleep(0.01)
        connection._handle_event(
            ConnectionTerminated(error_code=0, frame_type=None, reason_phrase="")
        )

        with pytest.raises(TransportError):
            await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.anyio
    async def test_send_on_closed_connection(self) -> None:
        """Closed connections refuse new payloads."""
        connection = make_connection(make_protocol(), is_client=True)
        await connection.close()

        with pytest.raises(TransportError, match="closed"):
            await connection.send(b"payload")


class TestQuicConnectionClose:
    """Tests for closing connections."""

    @pytest.mark.anyio
    async def test_close_server_side(self) -> None:
        """Accepted connections close the protocol directly."""
        protocol = make_protocol()
        connection = make_connection(protocol)

        await connection.close()
        await connection.close()

        protocol.close.assert_called_once()
        protocol.wait_closed.assert_awaited_once()
        assert connection.is_closed

    @pytest.mark.anyio
    async def test_close_dialed(self) -> None:
        """Dialed connections hand cleanup to their release callback."""
        protocol = make_protocol()
        connection = make_connection(protocol, is_client=True)
        release = AsyncMock()
        connection._release = release

        await connection.close()
        await connection.close()

        release.assert_awaited_once()
        protocol.close.assert_not_called()


class TestQuicEndpointTracking:
    """Tests for the endpoint's set of live connections."""

    def make_endpoint(self) -> QuicEndpoint:
        keypair = IdentityKeypair.generate()
        return QuicEndpoint(
            _keypair=keypair,
            _public_key=keypair.public_key(),
            _config=TunnelConfig(),
            _address_book=AddressBook(),
        )

    def test_peer_termination_forgets_connection(self) -> None:
        """Connections the peer terminated are no longer held."""
        endpoint = self.make_endpoint()
        connections = [make_connection(make_protocol()) for _ in range(5)]
        for connection in connections:
            endpoint._track(connection)
        assert len(endpoint._connections) == 5

        for connection in connections:
            connection._handle_event(
                ConnectionTerminated(error_code=0, frame_type=None, reason_phrase="bye")
            )

        assert endpoint._connections == set()

    @pytest.mark.anyio
    async def test_local_close_forgets_connection(self) -> None:
        """Closing a connection directly also releases it."""
        endpoint = self.make_endpoint()
        kept, closed = make_connection(make_protocol()), make_connection(make_protocol())
        endpoint._track(kept)
        endpoint._track(closed)

        await closed.close()

        assert endpoint._connections == {kept}

    @pytest.mark.anyio
    async def test_closed_connection_not_tracked(self) -> None:
        """A connection that already ended is never added."""
        endpoint = self.make_endpoint()
        connection = make_connection(make_protocol())
        await connection.close()

        endpoint._track(connection)

        assert endpoint._connections == set()

    @pytest.mark.anyio
    async def test_endpoint_close_closes_tracked(self) -> None:
        """Closing the endpoint closes every connection it still holds."""
        endpoint = self.make_endpoint()
        connections = [make_connection(make_protocol()) for _ in range(3)]
        for connection in connections:
            endpoint._track(connection)

        await endpoint.close()

        assert all(connection.is_closed for connection in connections)
        assert endpoint._connections == set()
