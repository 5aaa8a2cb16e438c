"""Envelope encode/decode tests."""
from __future__ import annotations

import json
from typing import Any

import pytest

from peerroom.p2p.exceptions import EnvelopeDecodeError
from peerroom.p2p.messages import decode_envelope
from peerroom.p2p.messages import encode_envelope
from peerroom.p2p.messages import HOST
from peerroom.p2p.messages import JOINER
from peerroom.p2p.messages import SignalEnvelope


def test_wire_keys() -> None:
    envelope = SignalEnvelope(i=3, sender=HOST, recipient=JOINER, data='x')
    assert json.loads(encode_envelope(envelope)) == {
        'i': 3,
        'from': 0,
        'to': 1,
        'data': 'x',
    }


def test_encode_decode() -> None:
    envelope = SignalEnvelope(
        i=0,
        sender=JOINER,
        recipient=HOST,
        data={'type': 'answer', 'sdp': 'v=0\r\n'},
    )
    assert decode_envelope(encode_envelope(envelope)) == envelope


@pytest.mark.parametrize(
    'data',
    (
        [],
        'envelope',
        {'from': 0, 'to': 1, 'data': None},
        {'i': 0, 'to': 1, 'data': None},
        {'i': 0, 'from': 0, 'data': None},
        {'i': 0, 'from': 0, 'to': 1},
        {'i': '0', 'from': 0, 'to': 1, 'data': None},
        {'i': 0.5, 'from': 0, 'to': 1, 'data': None},
        {'i': True, 'from': 0, 'to': 1, 'data': None},
        {'i': 0, 'from': None, 'to': 1, 'data': None},
        {'i': -1, 'from': 0, 'to': 1, 'data': None},
    ),
)
def test_from_dict_invalid(data: Any) -> None:
    with pytest.raises(EnvelopeDecodeError):
        SignalEnvelope.from_dict(data)


def test_decode_bad_json() -> None:
    with pytest.raises(EnvelopeDecodeError, match='JSON'):
        decode_envelope('{not json')
