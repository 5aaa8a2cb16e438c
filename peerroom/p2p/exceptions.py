"""Exception types for peering errors."""
from __future__ import annotations


class PeerConnectionError(Exception):
    """Error establishing or using a peer connection."""

    pass


class MalformedFrameError(PeerConnectionError):
    """Data on the direct channel is not a valid frame."""

    pass


class EnvelopeDecodeError(PeerConnectionError):
    """A negotiation message cannot be decoded into an envelope."""

    pass


class RoomExpiredError(PeerConnectionError):
    """The relay room is no longer usable."""

    pass
