"""Reordering of negotiation envelopes."""
from __future__ import annotations

import logging
from typing import Callable

from peerroom.p2p.messages import SignalEnvelope

logger = logging.getLogger(__name__)


class OrderedDeliveryQueue:
    """Deliver envelopes in sequence order exactly once.

    Envelopes can arrive out of order and more than once because the relay
    and the direct channel both carry them. Envelopes are delivered to the
    callback strictly in order of their sequence number `i`, starting at
    zero. Envelopes ahead of the next expected number wait in a buffer, and
    envelopes at or below the last delivered number are dropped.

    Note:
        Buffered envelopes are never evicted. If a sequence number never
        arrives, every later envelope stays buffered for the lifetime of the
        queue.

    Args:
        callback: Invoked with each envelope once it can be delivered.
    """

    def __init__(self, callback: Callable[[SignalEnvelope], None]) -> None:
        self._callback = callback
        self._last_delivered = -1
        self._buffer: dict[int, SignalEnvelope] = {}

    @property
    def last_delivered(self) -> int:
        """Sequence number of the last delivered envelope (-1 if none)."""
        return self._last_delivered

    @property
    def buffered(self) -> int:
        """Number of envelopes waiting on a missing predecessor."""
        return len(self._buffer)

    def push(self, envelope: SignalEnvelope) -> None:
        """Deliver or buffer an envelope.

        Args:
            envelope: Envelope received from either transport.
        """
        if envelope.i == self._last_delivered + 1:
            self._deliver(envelope)
            while self._last_delivered + 1 in self._buffer:
                self._deliver(self._buffer.pop(self._last_delivered + 1))
        elif envelope.i > self._last_delivered + 1:
            self._buffer[envelope.i] = envelope
            logger.debug(
                f'Buffered envelope {envelope.i} while waiting on '
                f'{self._last_delivered + 1}',
            )
        else:
            logger.debug(f'Discarded duplicate envelope {envelope.i}')

    def _deliver(self, envelope: SignalEnvelope) -> None:
        self._callback(envelope)
        self._last_delivered = envelope.i
