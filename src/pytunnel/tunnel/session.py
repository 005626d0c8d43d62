"""
Tunnel session.

The session owns two identities and everything bound to them:

    - the sender endpoint, dial only, with its `ConnectionPool`
    - the receiver endpoint, listening, with its `InboundListener`

Lifecycle::

    ACTIVE --destroy()--> DESTROYED

The transition is one-way. Once it has happened every operation except the
address accessors raises `DestroyedError`, including a second `destroy()`.

Teardown order in `destroy()`:

    1. Flip the state (no new send, close or destroy gets past its check)
    2. Cancel connection attempts still in flight
    3. Wait for sends that already started to finish or fail
    4. Stop the listener, letting queued payloads drain
    5. Close pooled connections and both endpoints
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from types import TracebackType
from typing import Self

from ..config import TunnelConfig
from ..exceptions import (
    CreationError,
    DestroyedError,
    SendError,
    TransportError,
    TunnelConnectionError,
)
from ..identity import IdentityKeypair, PublicKey
from ..transport.quic import QuicTransport
from ..transport.types import Endpoint, Transport
from ..types import DataHandler, HandlerErrorHook, SessionState
from .listener import InboundListener
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

PeerAddress = PublicKey | str | bytes
"""Anything `PublicKey.parse` accepts."""


class LifecycleFlag:
    """
    One-way session state with an atomic transition.

    Of any number of concurrent callers, exactly one performs a given
    transition.
    """

    def __init__(self) -> None:
        self._state = SessionState.ACTIVE
        self._lock = Lock()

    @property
    def state(self) -> SessionState:
        """Current state."""
        return self._state

    def compare_and_swap(self, expected: SessionState, new: SessionState) -> bool:
        """
        Move to `new` if the current state is `expected`.

        Returns:
            True if this call performed the transition.
        """
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
            return True


class Tunnel:
    """
    A sender and receiver endpoint pair.

    Create sessions with `Tunnel.create`, not the constructor.

    Example usage:
        async def on_data(sender: PublicKey, data: bytes) -> None:
            print(sender, data)

        tunnel = await Tunnel.create(on_data)
        await tunnel.send(peer_address, b"hello")
        await tunnel.destroy()

    Or, destroying on exit:
        async with await Tunnel.create(on_data) as tunnel:
            await tunnel.send(peer_address, b"hello")
    """

    def __init__(
        self,
        *,
        sender: Endpoint,
        receiver: Endpoint,
        pool: ConnectionPool,
        listener: InboundListener,
    ) -> None:
        self._sender = sender
        self._receiver = receiver
        self._pool = pool
        self._listener = listener

        self._sender_address = sender.public_key
        self._receiver_address = receiver.public_key

        self._flag = LifecycleFlag()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @classmethod
    async def create(
        cls,
        handler: DataHandler,
        *,
        config: TunnelConfig | None = None,
        transport: Transport | None = None,
        sender_key: IdentityKeypair | None = None,
        receiver_key: IdentityKeypair | None = None,
        on_handler_error: HandlerErrorHook | None = None,
    ) -> Tunnel:
        """
        Bind both endpoints and start listening.

        Args:
            handler: Called with (sender, payload) for every received payload.
                May be a plain function or a coroutine function.
            config: Runtime settings. Defaults to `TunnelConfig()`.
            transport: Transport to bind on. Defaults to QUIC.
            sender_key: Identity of the sender endpoint. Generated if omitted.
            receiver_key: Identity of the receiver endpoint. Generated if omitted.
            on_handler_error: Called with (sender, exception) when the handler
                raises.

        Returns:
            An ACTIVE session.

        Raises:
            CreationError: If the handler is not callable, or an identity or
                endpoint could not be set up. Nothing stays bound.
        """
        if not callable(handler):
            raise CreationError(f"Handler must be callable, got {type(handler).__name__}")

        config = config if config is not None else TunnelConfig()
        if transport is None:
            transport = QuicTransport(config)

        bound: list[Endpoint] = []
        try:
            if sender_key is None:
                sender_key = IdentityKeypair.generate()
            if receiver_key is None:
                receiver_key = IdentityKeypair.generate()

            sender = await transport.bind(sender_key, listen=False)
            bound.append(sender)
            receiver = await transport.bind(receiver_key, listen=True)
            bound.append(receiver)
        except Exception as e:
            for endpoint in reversed(bound):
                await endpoint.close()
            raise CreationError(f"Failed to create tunnel: {e}") from e

        listener = InboundListener(
            endpoint=receiver,
            handler=handler,
            delivery_queue_size=config.delivery_queue_size,
            on_handler_error=on_handler_error,
        )
        listener.start()

        tunnel = cls(
            sender=sender,
            receiver=receiver,
            pool=ConnectionPool(sender),
            listener=listener,
        )
        logger.info(
            "Tunnel created: sender %s, receiver %s",
            tunnel.sender_address(),
            tunnel.receiver_address(),
        )
        return tunnel

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._flag.state

    @property
    def is_destroyed(self) -> bool:
        """Whether `destroy()` has been called."""
        return self._flag.state is SessionState.DESTROYED

    def sender_address(self) -> PublicKey:
        """Identity outbound payloads are sent from. Valid in any state."""
        return self._sender_address

    def receiver_address(self) -> PublicKey:
        """Identity peers send to. Valid in any state."""
        return self._receiver_address

    async def send(self, address: PeerAddress, data: bytes) -> None:
        """
        Deliver a payload to a peer's receiver.

        The first send to a peer dials it; later sends reuse the connection.
        Returns once the peer's transport has received the whole payload.

        Args:
            address: Receiver address of the peer.
            data: Payload bytes.

        Raises:
            DestroyedError: If the session is destroyed, before or during
                the send's connection attempt.
            AddressParseError: If `address` is malformed.
            SendError: If the peer is unreachable or the transport fails.
        """
        self._require_active()
        public_key = PublicKey.parse(address)
        payload = bytes(data)

        self._begin_send()
        try:
            try:
                connection = await self._pool.get_or_connect(public_key)
            except TunnelConnectionError as e:
                if self.is_destroyed:
                    raise DestroyedError("Tunnel was destroyed during send") from e
                raise SendError(str(public_key), str(e)) from e

            try:
                await connection.send(payload)
            except TransportError as e:
                raise SendError(str(public_key), str(e)) from e
        finally:
            self._end_send()

    async def close(self, address: PeerAddress) -> None:
        """
        Close the pooled connection to a peer, if any.

        The next send to the peer dials a fresh connection.

        Raises:
            DestroyedError: If the session is destroyed.
            AddressParseError: If `address` is malformed.
        """
        self._require_active()
        await self._pool.close(PublicKey.parse(address))

    async def close_all(self) -> None:
        """
        Close every pooled connection.

        Raises:
            DestroyedError: If the session is destroyed.
        """
        self._require_active()
        await self._pool.close_all()

    async def destroy(self) -> None:
        """
        Tear the session down.

        May be called from inside the handler. Endpoints are closed even if an
        earlier teardown step fails.

        Raises:
            DestroyedError: If the session was already destroyed.
        """
        if not self._flag.compare_and_swap(SessionState.ACTIVE, SessionState.DESTROYED):
            raise DestroyedError("Tunnel is already destroyed")

        logger.debug("Destroying tunnel %s", self._receiver_address)

        try:
            await self._pool.cancel_pending()
            await self._idle.wait()

            await self._listener.stop()
            await self._pool.close_all()
        finally:
            # Endpoints also close whatever connections an earlier step left open.
            await self._sender.close()
            await self._receiver.close()

        logger.info("Tunnel destroyed: receiver %s", self._receiver_address)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self.is_destroyed:
            await self.destroy()

    def __repr__(self) -> str:
        return (
            f"Tunnel(sender={self._sender_address}, receiver={self._receiver_address}, "
            f"state={self.state.name})"
        )

    def _require_active(self) -> None:
        if self.is_destroyed:
            raise DestroyedError("Tunnel is destroyed")

    def _begin_send(self) -> None:
        self._in_flight += 1
        self._idle.clear()

    def _end_send(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()
