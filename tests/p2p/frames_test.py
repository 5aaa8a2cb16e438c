from __future__ import annotations

import msgpack
import pytest

from peerroom.p2p.exceptions import MalformedFrameError
from peerroom.p2p.frames import chunk_frame
from peerroom.p2p.frames import encode_frame
from peerroom.p2p.frames import FrameDecoder
from peerroom.p2p.frames import MAX_CHUNK_SIZE

FRAMES = [
    ('signal', {'i': 0, 'from': 0, 'to': 1, 'data': {'sdp': 'x' * 100}}),
    ('pointer', ['down', 1, 'pen', True, 0.5, 0.25]),
    ('empty', None),
    ('binary', b'\x00\x01' * 20_000),
]


def test_chunk_frame() -> None:
    frame = bytes(range(10))
    assert list(chunk_frame(frame, 4)) == [
        bytes(range(4)),
        bytes(range(4, 8)),
        bytes(range(8, 10)),
    ]
    assert list(chunk_frame(frame, 10)) == [frame]
    assert list(chunk_frame(b'', 10)) == []


def test_chunk_frame_default_size() -> None:
    frame = encode_frame('binary', b'x' * (MAX_CHUNK_SIZE * 2))
    chunks = list(chunk_frame(frame))
    assert len(chunks) == 3
    assert all(len(chunk) <= MAX_CHUNK_SIZE for chunk in chunks)


@pytest.mark.parametrize('size', (0, -1))
def test_chunk_frame_bad_size(size: int) -> None:
    with pytest.raises(ValueError):
        list(chunk_frame(b'abc', size))


@pytest.mark.parametrize('size', (1, 7, 1000, MAX_CHUNK_SIZE, 10**6))
def test_decode_stream(size: int) -> None:
    stream = b''.join(encode_frame(label, p) for label, p in FRAMES)

    decoder = FrameDecoder()
    decoded = []
    for chunk in chunk_frame(stream, size):
        decoded.extend(decoder.feed(chunk))

    assert decoded == FRAMES
    assert decoder.pending == 0


def test_decode_returns_frames_before_partial() -> None:
    first = encode_frame('a', 1)
    second = encode_frame('b', 'x' * 50)

    decoder = FrameDecoder()
    assert decoder.feed(first + second[:10]) == [('a', 1)]
    assert decoder.pending == 10
    assert decoder.feed(second[10:]) == [('b', 'x' * 50)]
    assert decoder.pending == 0


def test_decode_empty_chunk() -> None:
    decoder = FrameDecoder()
    assert decoder.feed(b'') == []
    assert decoder.pending == 0


@pytest.mark.parametrize(
    'obj',
    (
        'not a pair',
        ['only-label'],
        ['label', 1, 2],
        [1, 'payload'],
        {'label': 'payload'},
    ),
)
def test_decode_not_a_frame(obj) -> None:
    decoder = FrameDecoder()
    with pytest.raises(MalformedFrameError):
        decoder.feed(msgpack.packb(obj, use_bin_type=True))

    # The decoder is unusable after a failure
    with pytest.raises(MalformedFrameError):
        decoder.feed(encode_frame('a', 1))


def test_decode_invalid_bytes() -> None:
    decoder = FrameDecoder()
    # 0xc1 is never used by msgpack
    with pytest.raises(MalformedFrameError):
        decoder.feed(b'\xc1')
