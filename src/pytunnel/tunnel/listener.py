"""
Inbound listener.

Accepts connections on the receiver endpoint and hands every payload to the
registered handler, tagged with the sender's public key.

Each inbound connection gets two tasks joined by a delivery queue::

    transport --> reader --> asyncio.Queue --> dispatcher --> handler

The reader keeps pulling from the transport while a slow handler runs. The
queue bound (`delivery_queue_size`) limits how far it can get ahead; once the
queue is full, reads stop and the transport applies backpressure to the peer.

A single dispatcher per connection preserves the order in which that
connection's payloads arrived. Dispatchers of different connections run
concurrently.

Handler failures stay inside the listener: they are logged and passed to the
optional error hook, and delivery carries on with the next payload.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field

from ..exceptions import TransportError
from ..identity import PublicKey
from ..transport.types import Connection, Endpoint
from ..types import DataHandler, HandlerErrorHook

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class _Inbound:
    """Bookkeeping for one accepted connection."""

    connection: Connection
    queue: asyncio.Queue[bytes | None]
    reader: asyncio.Task[None] | None = None
    dispatcher: asyncio.Task[None] | None = None
    ended: bool = False
    """Whether the end-of-stream marker has been queued."""


@dataclass(slots=True, eq=False)
class InboundListener:
    """
    Background delivery of inbound payloads.

    Example usage:
        listener = InboundListener(endpoint, handler)
        listener.start()
        ...
        await listener.stop()
    """

    endpoint: Endpoint
    """Listening endpoint to accept connections from."""

    handler: DataHandler
    """Callback invoked with (sender, payload) for every payload."""

    delivery_queue_size: int = 0
    """Per-connection queue bound. Zero means unbounded."""

    on_handler_error: HandlerErrorHook | None = None
    """Diagnostics hook for handler failures."""

    _accept_task: asyncio.Task[None] | None = field(default=None, init=False)
    _inbound: set[_Inbound] = field(default_factory=set, init=False)
    _stopping: bool = field(default=False, init=False)
    _stopped: bool = field(default=False, init=False)

    @property
    def is_running(self) -> bool:
        """Whether the accept loop is active."""
        return self._accept_task is not None and not self._accept_task.done()

    @property
    def connection_count(self) -> int:
        """Number of inbound connections currently being served."""
        return len(self._inbound)

    def start(self) -> None:
        """Start accepting connections."""
        if self._accept_task is not None:
            raise RuntimeError("Listener already started")
        self._accept_task = asyncio.create_task(self._accept_loop())

    async def stop(self) -> None:
        """
        Stop the listener.

        No new connections are accepted and no new payloads are read. Payloads
        already queued are still delivered; running handlers are not
        interrupted. Inbound connections are closed once their queues drain.

        A handler may call this. Its own connection then delivers nothing
        after the handler returns.
        """
        if self._stopping:
            return
        self._stopping = True

        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass

        inbound = list(self._inbound)

        for item in inbound:
            assert item.reader is not None
            item.reader.cancel()
        for item in inbound:
            assert item.reader is not None
            try:
                await item.reader
            except asyncio.CancelledError:
                pass

        # A handler may stop the listener from inside its own dispatcher. That
        # dispatcher returns on its own once `_stopped` is set.
        current = asyncio.current_task()
        draining = [item for item in inbound if item.dispatcher is not current]

        # Readers are gone; tell each dispatcher where its queue ends.
        for item in draining:
            if not item.ended:
                item.ended = True
                await item.queue.put(None)

        for item in draining:
            assert item.dispatcher is not None
            await item.dispatcher

        for item in inbound:
            await item.connection.close()
        self._inbound.clear()
        self._stopped = True

        logger.debug("Inbound listener stopped")

    async def _accept_loop(self) -> None:
        """Accept connections until the endpoint closes."""
        while True:
            try:
                connection = await self.endpoint.accept()
            except TransportError as e:
                logger.warning("Accept failed, listener stops accepting: %s", e)
                return

            if connection is None:
                logger.debug("Endpoint closed, accept loop ends")
                return

            self._serve(connection)

    def _serve(self, connection: Connection) -> None:
        item = _Inbound(
            connection=connection,
            queue=asyncio.Queue(maxsize=self.delivery_queue_size),
        )
        item.reader = asyncio.create_task(self._read_loop(item))
        item.dispatcher = asyncio.create_task(self._dispatch_loop(item))
        self._inbound.add(item)

        logger.debug("Inbound connection from %s", connection.remote_public_key)

    async def _read_loop(self, item: _Inbound) -> None:
        """Move payloads from the transport into the delivery queue."""
        sender = item.connection.remote_public_key
        try:
            while (payload := await item.connection.receive()) is not None:
                await item.queue.put(payload)
        except TransportError as e:
            # Only this connection is affected.
            logger.debug("Inbound connection from %s failed: %s", sender, e)

        await item.queue.put(None)
        item.ended = True

    async def _dispatch_loop(self, item: _Inbound) -> None:
        """Deliver queued payloads in order, then retire the connection."""
        sender = item.connection.remote_public_key
        while (payload := await item.queue.get()) is not None:
            await self._deliver(sender, payload)
            if self._stopped:
                # The handler stopped the listener; nothing more is delivered.
                return

        if not self._stopping:
            self._inbound.discard(item)
            await item.connection.close()
            logger.debug("Inbound connection from %s ended", sender)

    async def _deliver(self, sender: PublicKey, payload: bytes) -> None:
        """Invoke the handler once, containing any failure."""
        try:
            result = self.handler(sender, payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Handler failed for payload from %s: %s", sender, e)
            self._report(sender, e)

    def _report(self, sender: PublicKey, error: Exception) -> None:
        if self.on_handler_error is None:
            return
        try:
            self.on_handler_error(sender, error)
        except Exception as e:
            logger.warning("Handler error hook failed: %s", e)
