"""Negotiation engine backed by aiortc."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from peerroom.p2p.exceptions import PeerConnectionError

logger = logging.getLogger(__name__)

CHANNEL_LABEL = 'peerroom'
"""Label of the data channel opened by the initiator."""


class PeerEngine(AsyncIOEventEmitter):
    """WebRTC peer negotiating a single ordered data channel.

    Implements the
    [`NegotiationEngine`][peerroom.p2p.protocols.NegotiationEngine]
    protocol with
    [aiortc](https://aiortc.readthedocs.io/en/latest/){target=_blank}.
    ICE candidates are not trickled. aiortc gathers every candidate before
    the local description is set, so each peer emits exactly one signal: the
    initiator an offer and the other peer an answer. Signals are dicts of
    the form `#!python {'type': 'offer' | 'answer', 'sdp': str}`.

    Remote signals are applied one at a time, in the order given to
    [`signal()`][peerroom.p2p.engine.PeerEngine.signal], by a background
    task started on construction.

    Example:
        ```python
        from peerroom.p2p.engine import PeerEngine

        peer1 = PeerEngine(initiator=True)
        peer2 = PeerEngine(initiator=False)
        peer1.on('signal', peer2.signal)
        peer2.on('signal', peer1.signal)
        peer2.on('data', print)

        connected = asyncio.Event()
        peer1.on('connect', connected.set)
        await connected.wait()
        peer1.send(b'hello')
        ```

    Note:
        Must be constructed from within a running event loop.

    Args:
        initiator: Create the data channel and send the offer.
        configuration: Optional ICE server configuration.
    """

    def __init__(
        self,
        *,
        initiator: bool,
        configuration: RTCConfiguration | None = None,
    ) -> None:
        super().__init__()
        self.initiator = initiator

        self._pc = RTCPeerConnection(configuration)
        self._channel: RTCDataChannel | None = None
        self._signals: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

        self._pc.on('datachannel', self._on_datachannel)
        self._pc.on('connectionstatechange', self._on_connectionstatechange)

        self._task = asyncio.get_running_loop().create_task(
            self._negotiate(),
            name=f'peer-engine-{"offer" if initiator else "answer"}',
        )

    @property
    def _log_prefix(self) -> str:
        role = 'initiator' if self.initiator else 'responder'
        return f'{self.__class__.__name__}[{role}]'

    @property
    def connected(self) -> bool:
        """If the data channel is open."""
        return self._channel is not None and self._channel.readyState == 'open'

    @property
    def state(self) -> str:
        """Get the current connection state.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    def signal(self, data: Any) -> None:
        """Queue a signal from the remote peer to be applied."""
        if self._closed:
            logger.debug(f'{self._log_prefix}: ignoring signal after close')
            return
        self._signals.put_nowait(data)

    def send(self, data: bytes) -> None:
        """Send bytes over the data channel.

        Raises:
            PeerConnectionError: If the data channel is not open.
        """
        if not self.connected:
            raise PeerConnectionError(
                f'{self._log_prefix}: data channel is not open',
            )
        assert self._channel is not None
        self._channel.send(data)

    async def close(self) -> None:
        """Close the data channel and the peer connection.

        Emits `close` the first time it is called. Later calls have no
        effect.
        """
        if self._closed:
            return
        self._closed = True
        logger.info(f'{self._log_prefix}: closing connection')

        if self._task is not asyncio.current_task():
            self._task.cancel()

        channel = self._channel
        if channel is not None and channel.readyState == 'open':
            # Flush send buffers before close
            # https://github.com/aiortc/aiortc/issues/547
            transport = channel._RTCDataChannel__transport
            await transport._data_channel_flush()
            await transport._transmit()
            channel.close()
        await self._pc.close()
        self.emit('close')

    async def _negotiate(self) -> None:
        try:
            if self.initiator:
                channel = self._pc.createDataChannel(
                    CHANNEL_LABEL,
                    ordered=True,
                )
                channel.on('open', lambda: self._on_channel_open(channel))
                offer = await self._pc.createOffer()
                await self._pc.setLocalDescription(offer)
                self._emit_description()

            while True:
                data = await self._signals.get()
                await self._apply(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f'{self._log_prefix}: negotiation failed: {e!r}')
            self.emit('error', e)
            await self.close()

    async def _apply(self, data: Any) -> None:
        if (
            not isinstance(data, dict)
            or data.get('type') not in ('offer', 'answer')
            or not isinstance(data.get('sdp'), str)
        ):
            raise PeerConnectionError(f'Received invalid signal: {data!r}')

        description = RTCSessionDescription(sdp=data['sdp'], type=data['type'])
        logger.info(f'{self._log_prefix}: received {description.type}')
        await self._pc.setRemoteDescription(description)
        if description.type == 'offer':
            await self._pc.setLocalDescription(await self._pc.createAnswer())
            self._emit_description()

    def _emit_description(self) -> None:
        description = self._pc.localDescription
        logger.info(f'{self._log_prefix}: sending {description.type}')
        self.emit('signal', {'type': description.type, 'sdp': description.sdp})

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        # Only the responder receives this event
        if channel.readyState == 'open':
            self._on_channel_open(channel)
        else:
            channel.on('open', lambda: self._on_channel_open(channel))

    def _on_channel_open(self, channel: RTCDataChannel) -> None:
        if self._closed or self._channel is not None:
            return
        logger.info(f'{self._log_prefix}: peer channel established')
        self._channel = channel
        channel.on('message', self._on_message)
        channel.on('close', self._on_channel_close)
        self.emit('connect')

    def _on_message(self, message: bytes | str) -> None:
        if isinstance(message, str):
            message = message.encode()
        self.emit('data', message)

    async def _on_channel_close(self) -> None:
        logger.info(f'{self._log_prefix}: peer channel closed')
        await self.close()

    async def _on_connectionstatechange(self) -> None:
        state = self._pc.connectionState
        logger.debug(f'{self._log_prefix}: connection entered {state} state')
        if state == 'failed' and not self._closed:
            self.emit('error', PeerConnectionError('Peer connection failed.'))
            await self.close()
