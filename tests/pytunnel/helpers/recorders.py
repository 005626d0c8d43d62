"""Callables that record what the tunnel hands them."""

from __future__ import annotations

import asyncio

from pytunnel.identity import PublicKey


class Inbox:
    """Data handler that records payloads and lets tests wait for them."""

    def __init__(self) -> None:
        self.received: list[tuple[PublicKey, bytes]] = []
        self._changed = asyncio.Event()

    def __call__(self, sender: PublicKey, data: bytes) -> None:
        self.received.append((sender, data))
        self._changed.set()

    @property
    def payloads(self) -> list[bytes]:
        """Received payloads, in delivery order."""
        return [data for _, data in self.received]

    async def wait_for(self, count: int, timeout: float = 2.0) -> None:
        """Wait until at least `count` payloads have been received."""

        async def _wait() -> None:
            while len(self.received) < count:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)


class ErrorLog:
    """Handler error hook that records every report."""

    def __init__(self) -> None:
        self.errors: list[tuple[PublicKey, Exception]] = []

    def __call__(self, sender: PublicKey, error: Exception) -> None:
        self.errors.append((sender, error))
