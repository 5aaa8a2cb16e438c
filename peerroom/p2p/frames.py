"""Framing of labeled messages over a size-limited channel.

A frame is a `[label, payload]` pair encoded with msgpack. Frames are sent
as a plain byte stream cut into chunks of at most `MAX_CHUNK_SIZE` bytes, so
a chunk may hold the tail of one frame and the start of the next, and a
large frame may span many chunks. The
[`FrameDecoder`][peerroom.p2p.frames.FrameDecoder] restores the frames.
"""
from __future__ import annotations

from typing import Any
from typing import Generator

import msgpack

from peerroom.p2p.exceptions import MalformedFrameError

MAX_CHUNK_SIZE = 16_000
"""Largest chunk (bytes) handed to the channel in a single send."""

SIGNAL_LABEL = 'signal'
"""Frame label of negotiation envelopes."""
POINTER_LABEL = 'pointer'
"""Frame label of pointer events."""


def encode_frame(label: str, payload: Any) -> bytes:
    """Encode a labeled payload as a single frame."""
    return msgpack.packb([label, payload], use_bin_type=True)


def chunk_frame(
    frame: bytes,
    size: int = MAX_CHUNK_SIZE,
) -> Generator[bytes, None, None]:
    """Generate chunks of a frame.

    Args:
        frame: Encoded frame.
        size: Maximum size of each chunk.

    Yields:
        Consecutive slices of the frame.

    Raises:
        ValueError: If size is less than one.
    """
    if size < 1:
        raise ValueError(f'Chunk size must be positive. Got {size}.')
    for x in range(0, len(frame), size):
        yield frame[x : x + size]


class FrameDecoder:
    """Incremental decoder for a chunked frame stream.

    Bytes of an incomplete trailing frame are carried over to the next call
    of [`feed()`][peerroom.p2p.frames.FrameDecoder.feed], so the decoder
    accepts the stream cut at arbitrary positions.

    Example:
        ```python
        from peerroom.p2p.frames import FrameDecoder, chunk_frame, encode_frame

        decoder = FrameDecoder()
        frames = []
        for chunk in chunk_frame(encode_frame('hello', [1, 2]), size=3):
            frames.extend(decoder.feed(chunk))
        assert frames == [('hello', [1, 2])]
        ```
    """

    def __init__(self) -> None:
        self._carry = b''
        self._failed = False

    @property
    def pending(self) -> int:
        """Number of carried bytes that do not yet form a complete frame."""
        return len(self._carry)

    def feed(self, chunk: bytes) -> list[tuple[str, Any]]:
        """Add a chunk to the stream and return every completed frame.

        Frames completed by this chunk are returned even if the chunk ends
        in the middle of another frame.

        Args:
            chunk: Next slice of the byte stream.

        Returns:
            Completed `(label, payload)` pairs in stream order.

        Raises:
            MalformedFrameError: If the stream is not a sequence of valid
                frames. The decoder cannot be used after this error.
        """
        if self._failed:
            raise MalformedFrameError('Decoder failed on a previous chunk.')

        data = self._carry + bytes(chunk)
        self._carry = b''

        unpacker = msgpack.Unpacker(raw=False, strict_map_key=False)
        unpacker.feed(data)
        frames: list[tuple[str, Any]] = []
        # Offset just past the last complete frame
        offset = 0
        try:
            for obj in unpacker:
                frames.append(_as_frame(obj))
                offset = unpacker.tell()
        except MalformedFrameError:
            self._failed = True
            raise
        except (msgpack.UnpackException, ValueError) as e:
            self._failed = True
            raise MalformedFrameError(f'Failed to decode frame: {e}') from e

        self._carry = data[offset:]
        return frames


def _as_frame(obj: Any) -> tuple[str, Any]:
    if not isinstance(obj, list) or len(obj) != 2:
        raise MalformedFrameError(
            f'Frame must be a [label, payload] pair. Got {obj!r}.',
        )
    label, payload = obj
    if not isinstance(label, str):
        raise MalformedFrameError(
            f'Frame label must be a string. Got {label!r}.',
        )
    return label, payload
