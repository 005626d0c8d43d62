"""
QUIC transport for the tunnel.

QUIC provides encryption (TLS 1.3), multiplexing and per-stream ordering
natively. On top of it the tunnel adds two things:

    1. An identity handshake on the first stream (see `handshake.py`)
    2. One bidirectional stream per payload

Payload flow::

    Sender                                   Receiver
      |  open stream, payload, FIN             |
      |--------------------------------------->|  read to end
      |                                        |  (reset if too large)
      |  0x00, FIN                             |
      |<---------------------------------------|
      |  send() returns                        |

The acknowledgement byte is what lets `send()` report delivery: if the receiver
resets the stream, the connection drops, or no answer arrives within the send
timeout, the sender gets a `TransportError`.

References:
    - aioquic documentation: https://aioquic.readthedocs.io/
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Final

from aioquic.asyncio import QuicConnectionProtocol
from aioquic.asyncio import connect as quic_connect
from aioquic.asyncio import serve as quic_serve
from aioquic.asyncio.server import QuicServer
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import (
    ConnectionTerminated,
    HandshakeCompleted,
    QuicEvent,
    StreamDataReceived,
    StreamReset,
)

from ...config import TunnelConfig
from ...exceptions import TransportError
from ...identity import IdentityKeypair, PublicKey
from ..address_book import DEFAULT_ADDRESS_BOOK, AddressBook, SocketAddress
from .handshake import perform_handshake_dialer, perform_handshake_listener
from .tls import generate_certificate

logger = logging.getLogger(__name__)

PAYLOAD_ACCEPTED: Final = b"\x00"
"""Acknowledgement byte sent once a payload has been fully received."""

PAYLOAD_TOO_LARGE: Final = 0x1
"""Stream reset code for payloads above `max_payload_size`."""

PAYLOAD_TIMEOUT: Final = 0x2
"""Stream reset code used by a sender that gave up waiting for the ack."""

CLOSE_TIMEOUT_SECS: Final = 1.0
"""Upper bound for waiting on the QUIC close handshake."""


@dataclass(slots=True, eq=False)
class QuicStream:
    """
    A single QUIC stream.

    aioquic delivers stream data as events. The stream buffers them in a queue
    so readers can await data. An empty chunk marks FIN, None marks a reset.
    """

    _protocol: QuicConnectionProtocol
    _stream_id: int
    _read_buffer: asyncio.Queue[bytes | None] = field(default_factory=asyncio.Queue)
    _pending: bytes = b""
    _read_closed: bool = False
    _write_closed: bool = False
    _reset: bool = False
    _reset_sent: bool = False

    @property
    def stream_id(self) -> int:
        """Stream identifier."""
        return self._stream_id

    async def read(self) -> bytes:
        """
        Read the next chunk of data.

        Returns:
            Received bytes, or empty bytes once the peer finished its side.

        Raises:
            TransportError: If the stream was reset.
        """
        if self._pending:
            data, self._pending = self._pending, b""
            return data

        if self._reset:
            raise TransportError(f"Stream {self._stream_id} was reset")
        if self._read_closed:
            return b""

        data = await self._read_buffer.get()
        if data is None:
            self._reset = True
            raise TransportError(f"Stream {self._stream_id} was reset")
        if data == b"":
            self._read_closed = True
        return data

    async def readexactly(self, n: int) -> bytes:
        """
        Read exactly n bytes.

        Raises:
            TransportError: If the stream ends or resets first.
        """
        result = b""
        while len(result) < n:
            chunk = await self.read()
            if not chunk:
                raise TransportError(
                    f"Stream {self._stream_id} ended after {len(result)} of {n} bytes"
                )
            result += chunk

        # Keep any surplus for the next read.
        result, self._pending = result[:n], result[n:] + self._pending
        return result

    async def read_to_end(self, limit: int) -> bytes:
        """
        Read until the peer finishes its side.

        Raises:
            TransportError: If the data exceeds `limit` or the stream resets.
        """
        chunks: list[bytes] = []
        size = 0
        while chunk := await self.read():
            size += len(chunk)
            if size > limit:
                raise TransportError(f"Stream {self._stream_id} exceeds {limit} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def write(self, data: bytes, end_stream: bool = False) -> None:
        """
        Write data to the stream.

        Raises:
            TransportError: If our write side is closed or aioquic rejects the write.
        """
        if self._write_closed:
            raise TransportError(f"Stream {self._stream_id} write side is closed")

        try:
            self._protocol._quic.send_stream_data(self._stream_id, data, end_stream=end_stream)
            self._protocol.transmit()
        except Exception as e:
            self._write_closed = True
            raise TransportError(f"Write failed on stream {self._stream_id}: {e}") from e

        if end_stream:
            self._write_closed = True

    def reset(self, error_code: int) -> None:
        """Abort the stream towards the peer. Errors are ignored."""
        if self._reset_sent:
            return
        self._reset_sent = True
        self._write_closed = True

        with contextlib.suppress(Exception):
            self._protocol._quic.reset_stream(self._stream_id, error_code)
            self._protocol.transmit()

    def _receive_data(self, data: bytes) -> None:
        self._read_buffer.put_nowait(data)

    def _receive_end(self) -> None:
        self._read_buffer.put_nowait(b"")

    def _receive_reset(self) -> None:
        self._read_buffer.put_nowait(None)


@dataclass(slots=True, eq=False)
class QuicConnection:
    """
    A QUIC connection to a peer.

    The remote identity is unknown until the handshake has run; endpoints only
    hand out connections after that.
    """

    _protocol: QuicConnectionProtocol
    _config: TunnelConfig
    _is_client: bool
    _remote_public_key: PublicKey | None = None
    _streams: dict[int, QuicStream] = field(default_factory=dict)
    _incoming: asyncio.Queue[QuicStream | None] = field(default_factory=asyncio.Queue)
    _last_peer_stream_id: int = -1
    _closed: bool = False
    _released: bool = False
    _release: Callable[[], Awaitable[Any]] | None = None
    """Cleanup for dialed connections: exits aioquic's `connect()` context."""
    _on_terminate: Callable[[QuicConnection], None] | None = None
    """Called once when the connection closes, locally or by the peer."""

    @property
    def remote_public_key(self) -> PublicKey:
        """Verified identity of the peer."""
        if self._remote_public_key is None:
            raise TransportError("Connection is not authenticated yet")
        return self._remote_public_key

    @property
    def is_closed(self) -> bool:
        """Whether the connection is closed, locally or by the peer."""
        return self._closed

    async def open_stream(self) -> QuicStream:
        """Open a new bidirectional stream."""
        if self._closed:
            raise TransportError("Connection is closed")

        stream_id = self._protocol._quic.get_next_available_stream_id()
        stream = QuicStream(_protocol=self._protocol, _stream_id=stream_id)
        self._streams[stream_id] = stream
        return stream

    async def accept_stream(self) -> QuicStream | None:
        """
        Wait for the next stream opened by the peer.

        Returns:
            The stream, or None once the connection is closed.
        """
        if self._closed and self._incoming.empty():
            return None
        return await self._incoming.get()

    async def send(self, data: bytes) -> None:
        """
        Send one payload on a fresh stream and wait for the acknowledgement.

        Raises:
            TransportError: If the write fails, the peer resets the stream, or no
                acknowledgement arrives within the send timeout.
        """
        stream = await self.open_stream()
        try:
            await stream.write(data, end_stream=True)
            try:
                ack = await asyncio.wait_for(
                    stream.readexactly(len(PAYLOAD_ACCEPTED)),
                    timeout=self._config.send_timeout_secs,
                )
            except TimeoutError:
                stream.reset(PAYLOAD_TIMEOUT)
                raise TransportError(
                    f"No acknowledgement within {self._config.send_timeout_secs}s"
                ) from None

            if ack != PAYLOAD_ACCEPTED:
                raise TransportError(f"Unexpected acknowledgement {ack!r}")
        finally:
            self._forget(stream)

    async def receive(self) -> bytes | None:
        """
        Wait for the next complete payload.

        Streams that break individually (oversized, reset by the sender) are
        skipped; only the end of the connection ends the loop.

        Returns:
            The payload, or None once the connection is closed.
        """
        while True:
            stream = await self.accept_stream()
            if stream is None:
                return None

            try:
                data = await stream.read_to_end(self._config.max_payload_size)
            except TransportError as e:
                self._forget(stream)
                if self._closed:
                    return None
                stream.reset(PAYLOAD_TOO_LARGE)
                logger.warning("Dropped payload from %s: %s", self._remote_public_key, e)
                continue

            try:
                await stream.write(PAYLOAD_ACCEPTED, end_stream=True)
            except TransportError as e:
                # The payload arrived intact; only the ack failed.
                logger.debug("Could not acknowledge payload: %s", e)
            finally:
                self._forget(stream)

            return data

    async def close(self) -> None:
        """Close the connection. Idempotent."""
        if self._released:
            return
        self._released = True
        self._terminate()

        if self._release is not None:
            await self._release()
            return

        self._protocol.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._protocol.wait_closed(), timeout=CLOSE_TIMEOUT_SECS)

    def _forget(self, stream: QuicStream) -> None:
        self._streams.pop(stream.stream_id, None)

    def _is_peer_stream(self, stream_id: int) -> bool:
        # Bit 0 of a QUIC stream ID is set for server-initiated streams.
        return bool(stream_id & 1) == self._is_client

    def _terminate(self) -> None:
        if self._closed:
            return
        self._closed = True

        for stream in self._streams.values():
            stream._receive_reset()
        self._incoming.put_nowait(None)

        if self._on_terminate is not None:
            self._on_terminate(self)

    def _handle_event(self, event: QuicEvent) -> None:
        """Route aioquic events to streams."""
        if isinstance(event, StreamDataReceived):
            stream = self._streams.get(event.stream_id)

            if stream is None:
                # Only streams the peer opens can appear unannounced. Stream IDs
                # only grow, so a lower ID belongs to a stream we already retired.
                if not self._is_peer_stream(event.stream_id):
                    return
                if event.stream_id <= self._last_peer_stream_id or self._closed:
                    return

                self._last_peer_stream_id = event.stream_id
                stream = QuicStream(_protocol=self._protocol, _stream_id=event.stream_id)
                self._streams[event.stream_id] = stream
                self._incoming.put_nowait(stream)

            if event.data:
                stream._receive_data(event.data)
            if event.end_stream:
                stream._receive_end()

        elif isinstance(event, StreamReset):
            if (stream := self._streams.get(event.stream_id)) is not None:
                stream._receive_reset()

        elif isinstance(event, ConnectionTerminated):
            logger.debug(
                "Connection to %s terminated: %s",
                self._remote_public_key,
                event.reason_phrase or event.error_code,
            )
            self._terminate()


class TunnelQuicProtocol(QuicConnectionProtocol):
    """
    aioquic protocol that forwards events to its `QuicConnection`.

    The connection wrapper is attached by the endpoint's protocol factory, so
    no event is ever seen without a handler.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.connection: QuicConnection | None = None
        self.on_handshake: Callable[[TunnelQuicProtocol], None] | None = None

    def quic_event_received(self, event: QuicEvent) -> None:
        """Handle QUIC events."""
        if isinstance(event, HandshakeCompleted) and self.on_handshake is not None:
            self.on_handshake(self)

        if self.connection is not None:
            self.connection._handle_event(event)


@dataclass(slots=True, eq=False)
class QuicEndpoint:
    """
    A local QUIC endpoint bound to one identity.

    Dial-only endpoints open a client socket per connection. Listening
    endpoints additionally run an aioquic server and publish their socket
    address in the address book.
    """

    _keypair: IdentityKeypair
    _public_key: PublicKey
    _config: TunnelConfig
    _address_book: AddressBook
    _server: QuicServer | None = None
    _listen_address: SocketAddress | None = None
    _accepted: asyncio.Queue[QuicConnection | None] = field(default_factory=asyncio.Queue)
    _connections: set[QuicConnection] = field(default_factory=set)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set)
    _closed: bool = False

    @classmethod
    async def bind(
        cls,
        keypair: IdentityKeypair,
        config: TunnelConfig,
        address_book: AddressBook,
        *,
        listen: bool,
    ) -> QuicEndpoint:
        """
        Create an endpoint, starting the QUIC server if `listen` is set.

        Raises:
            TransportError: If the server socket cannot be bound.
        """
        endpoint = cls(
            _keypair=keypair,
            _public_key=keypair.public_key(),
            _config=config,
            _address_book=address_book,
        )
        if listen:
            await endpoint._listen()
        return endpoint

    @property
    def public_key(self) -> PublicKey:
        """Our identity."""
        return self._public_key

    @property
    def listen_address(self) -> SocketAddress | None:
        """Bound socket address, for listening endpoints."""
        return self._listen_address

    async def _listen(self) -> None:
        private_key, certificate = generate_certificate()
        server_config = QuicConfiguration(
            alpn_protocols=[self._config.alpn],
            is_client=False,
            idle_timeout=self._config.idle_timeout_secs,
            certificate=certificate,
            private_key=private_key,
        )

        try:
            self._server = await quic_serve(
                self._config.listen_host,
                self._config.listen_port,
                configuration=server_config,
                create_protocol=self._protocol_factory(is_client=False),
            )
        except OSError as e:
            raise TransportError(
                f"Cannot listen on {self._config.listen_host}:{self._config.listen_port}: {e}"
            ) from e

        # Port 0 means the OS picked one; read back what we actually got.
        sockname = self._server._transport.get_extra_info("sockname")
        self._listen_address = SocketAddress(host=self._config.listen_host, port=sockname[1])
        self._address_book.add(self._public_key, self._listen_address)
        logger.debug("Endpoint %s listening on %s", self._public_key, self._listen_address)

    def _protocol_factory(self, *, is_client: bool) -> Callable[..., TunnelQuicProtocol]:
        def create_protocol(*args: Any, **kwargs: Any) -> TunnelQuicProtocol:
            protocol = TunnelQuicProtocol(*args, **kwargs)
            protocol.connection = QuicConnection(
                _protocol=protocol, _config=self._config, _is_client=is_client
            )
            if not is_client:
                protocol.on_handshake = self._on_inbound_handshake
            return protocol

        return create_protocol

    def _on_inbound_handshake(self, protocol: TunnelQuicProtocol) -> None:
        # Called from aioquic's event processing; authentication needs awaits.
        assert protocol.connection is not None
        task = asyncio.create_task(self._authenticate_inbound(protocol.connection))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _authenticate_inbound(self, connection: QuicConnection) -> None:
        """Run the listener handshake and queue the connection if it succeeds."""
        self._track(connection)
        try:
            stream = await asyncio.wait_for(
                connection.accept_stream(), timeout=self._config.connect_timeout_secs
            )
            if stream is None:
                raise TransportError("Connection closed before handshake")

            remote = await asyncio.wait_for(
                perform_handshake_listener(stream, self._keypair),
                timeout=self._config.connect_timeout_secs,
            )
            connection._forget(stream)
        except (TransportError, TimeoutError) as e:
            logger.warning("Rejected inbound connection: %s", str(e) or "handshake timed out")
            self._connections.discard(connection)
            await connection.close()
            return

        connection._remote_public_key = remote
        if self._closed:
            await connection.close()
            return

        logger.debug("Accepted connection from %s", remote)
        self._accepted.put_nowait(connection)

    async def connect(self, public_key: PublicKey) -> QuicConnection:
        """
        Dial a peer by public key.

        The socket address comes from the address book. The connection is only
        returned once the peer has proven it owns `public_key`.

        Raises:
            TransportError: If the peer is unknown, unreachable or fails the
                handshake.
        """
        if self._closed:
            raise TransportError("Endpoint is closed")

        address = self._address_book.resolve(public_key)
        if address is None:
            raise TransportError(f"No known address for {public_key}")

        client_config = QuicConfiguration(
            alpn_protocols=[self._config.alpn],
            is_client=True,
            idle_timeout=self._config.idle_timeout_secs,
            verify_mode=ssl.CERT_NONE,
        )

        # Enter aioquic's context manager by hand so the connection outlives
        # this call. Its exit runs when the connection is closed.
        cm = quic_connect(
            address.host,
            address.port,
            configuration=client_config,
            create_protocol=self._protocol_factory(is_client=True),
        )
        try:
            protocol = await asyncio.wait_for(
                cm.__aenter__(), timeout=self._config.connect_timeout_secs
            )
        except TimeoutError:
            raise TransportError(f"Timed out connecting to {public_key} at {address}") from None
        except Exception as e:
            raise TransportError(f"Failed to connect to {public_key} at {address}: {e}") from e

        connection = protocol.connection
        assert connection is not None
        connection._release = lambda: cm.__aexit__(None, None, None)

        try:
            stream = await connection.open_stream()
            await asyncio.wait_for(
                perform_handshake_dialer(stream, self._keypair, public_key),
                timeout=self._config.connect_timeout_secs,
            )
            connection._forget(stream)
        except TimeoutError:
            await connection.close()
            raise TransportError(f"Handshake with {public_key} timed out") from None
        except BaseException:
            await connection.close()
            raise

        connection._remote_public_key = public_key
        self._track(connection)

        logger.debug("Connected to %s at %s", public_key, address)
        return connection

    def _track(self, connection: QuicConnection) -> None:
        """Hold on to a connection until it terminates."""
        if connection.is_closed:
            return
        self._connections.add(connection)
        connection._on_terminate = self._connections.discard

    async def accept(self) -> QuicConnection | None:
        """Wait for the next authenticated inbound connection."""
        if self._closed and self._accepted.empty():
            return None
        return await self._accepted.get()

    async def close(self) -> None:
        """Stop the server, close every connection, and unpublish our address."""
        if self._closed:
            return
        self._closed = True

        if self._listen_address is not None:
            if self._address_book.resolve(self._public_key) == self._listen_address:
                self._address_book.remove(self._public_key)

        for task in list(self._tasks):
            task.cancel()

        for connection in list(self._connections):
            await connection.close()
        self._connections.clear()

        if self._server is not None:
            self._server.close()
            self._server = None

        self._accepted.put_nowait(None)
        logger.debug("Endpoint %s closed", self._public_key)


class QuicTransport:
    """
    Binds QUIC endpoints.

    Usage:
        transport = QuicTransport(config)
        endpoint = await transport.bind(IdentityKeypair.generate(), listen=True)
        connection = await endpoint.connect(peer)
    """

    def __init__(
        self,
        config: TunnelConfig | None = None,
        address_book: AddressBook | None = None,
    ) -> None:
        self.config = config if config is not None else TunnelConfig()
        self.address_book = address_book if address_book is not None else DEFAULT_ADDRESS_BOOK

    async def bind(self, keypair: IdentityKeypair, *, listen: bool) -> QuicEndpoint:
        """Bind an endpoint for `keypair`."""
        return await QuicEndpoint.bind(keypair, self.config, self.address_book, listen=listen)
