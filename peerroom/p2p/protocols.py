"""Protocols of pluggable peering components."""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable


@runtime_checkable
class NegotiationEngine(Protocol):
    """Connection negotiation engine protocol.

    A negotiation engine produces opaque signals that must be delivered to
    the remote peer's engine, consumes the remote peer's signals, and opens
    a direct data channel once both engines agree.

    Events emitted to the handlers registered with
    [`on()`][peerroom.p2p.protocols.NegotiationEngine.on]:

    * `signal(data)`: a signal to deliver to the remote engine.
    * `connect()`: the direct data channel is open.
    * `data(data: bytes)`: bytes received over the direct data channel.
    * `close()`: the direct data channel closed.
    * `error(exc)`: negotiation or the channel failed.
    """

    @property
    def connected(self) -> bool:
        """If the direct data channel is open."""
        ...

    def signal(self, data: Any) -> None:
        """Apply a signal produced by the remote engine."""
        ...

    def send(self, data: bytes) -> None:
        """Send bytes over the open direct data channel."""
        ...

    def on(self, event: str, f: Callable[..., Any]) -> Any:
        """Register a handler for an event."""
        ...

    async def close(self) -> None:
        """Close the engine and its data channel."""
        ...
