"""Shared type definitions for the tunnel."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Self, TypeAlias

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from .identity import PublicKey


class StrictBaseModel(BaseModel):
    """A strict, immutable pydantic base model."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        strict=True,
        validate_default=True,
    )

    def copy_with(self, **kwargs: Any) -> Self:
        """Create a copy of the model with the updated fields validated."""
        return self.__class__(**(self.model_dump() | kwargs))


class ConnectionState(Enum):
    """
    State of a pooled outbound connection.

    Transitions are one-way::

        CONNECTING -> ACTIVE -> CLOSED
        CONNECTING -> CLOSED (failed or cancelled attempt)
    """

    CONNECTING = auto()
    """Connection attempt in flight. Concurrent callers join it."""

    ACTIVE = auto()
    """Connection established and reusable."""

    CLOSED = auto()
    """Terminal. The entry has been removed from the pool."""


class SessionState(Enum):
    """Lifecycle of a tunnel session. `DESTROYED` is terminal."""

    ACTIVE = auto()
    """Initial state. All operations are allowed."""

    DESTROYED = auto()
    """Torn down. Only the address accessors remain usable."""


DataHandler: TypeAlias = Callable[["PublicKey", bytes], Awaitable[None] | None]
"""
Callback invoked once per received payload.

Receives the sender's public key and the payload bytes. Both plain functions
and coroutine functions are accepted.
"""

HandlerErrorHook: TypeAlias = Callable[["PublicKey", Exception], None]
"""Diagnostics hook invoked when a handler raises."""
