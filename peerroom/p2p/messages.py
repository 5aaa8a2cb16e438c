"""Negotiation message envelopes."""
from __future__ import annotations

import dataclasses
import json
from typing import Any

from peerroom.p2p.exceptions import EnvelopeDecodeError

HOST = 0
"""Role of the peer that created the room."""
JOINER = 1
"""Role of the peer that joined the room."""


@dataclasses.dataclass(frozen=True)
class SignalEnvelope:
    """Negotiation payload addressed from one role to the other.

    Attributes:
        i: Sequence number assigned by the sender, starting at zero. It only
            orders envelopes from the same sender to the same recipient.
        sender: Role of the sending peer.
        recipient: Role of the receiving peer.
        data: Opaque payload produced by the sender's negotiation engine.
    """

    i: int
    sender: int
    recipient: int
    data: Any

    def to_dict(self) -> dict[str, Any]:
        """Wire representation using the `i`/`from`/`to`/`data` keys."""
        return {
            'i': self.i,
            'from': self.sender,
            'to': self.recipient,
            'data': self.data,
        }

    @classmethod
    def from_dict(cls, data: Any) -> SignalEnvelope:
        """Parse the wire representation.

        Raises:
            EnvelopeDecodeError: If a key is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise EnvelopeDecodeError(
                f'Expected a mapping but got {type(data).__name__}.',
            )
        try:
            i, sender, recipient = data['i'], data['from'], data['to']
            payload = data['data']
        except KeyError as e:
            raise EnvelopeDecodeError(f'Envelope is missing key {e}.') from e

        for key, value in (('i', i), ('from', sender), ('to', recipient)):
            # bool is a subclass of int but never a valid sequence or role
            if not isinstance(value, int) or isinstance(value, bool):
                raise EnvelopeDecodeError(
                    f'Envelope key {key} must be an int. Got {value!r}.',
                )
        if i < 0:
            raise EnvelopeDecodeError(f'Sequence number {i} is negative.')

        return cls(i=i, sender=sender, recipient=recipient, data=payload)


def encode_envelope(envelope: SignalEnvelope) -> str:
    """Encode an envelope as a JSON string for the relay."""
    return json.dumps(envelope.to_dict())


def decode_envelope(message: str) -> SignalEnvelope:
    """Decode a JSON string from the relay into an envelope.

    Raises:
        EnvelopeDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise EnvelopeDecodeError('Failed to load string as JSON.') from e
    return SignalEnvelope.from_dict(data)
