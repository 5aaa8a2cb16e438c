"""Establish a direct peer channel through a relay room.

The [`Handshake`][peerroom.p2p.handshake.Handshake] wires a negotiation
engine to a [`RoomSession`][peerroom.p2p.room.RoomSession]. Signals produced
by the engine travel through the relay room until the direct channel opens
and through the direct channel after. Because the engine can emit signals
right around the moment the channel opens, every signal sent so far is
replayed over the direct channel once it opens and the receiving side drops
the duplicates by sequence number.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any
from typing import Awaitable
from typing import Callable

import requests

from peerroom.p2p.exceptions import EnvelopeDecodeError
from peerroom.p2p.exceptions import MalformedFrameError
from peerroom.p2p.exceptions import PeerConnectionError
from peerroom.p2p.exceptions import RoomExpiredError
from peerroom.p2p.frames import chunk_frame
from peerroom.p2p.frames import encode_frame
from peerroom.p2p.frames import FrameDecoder
from peerroom.p2p.frames import SIGNAL_LABEL
from peerroom.p2p.messages import HOST
from peerroom.p2p.messages import JOINER
from peerroom.p2p.messages import SignalEnvelope
from peerroom.p2p.protocols import NegotiationEngine
from peerroom.p2p.reorder import OrderedDeliveryQueue
from peerroom.p2p.room import MESSAGE_POLL_INTERVAL
from peerroom.p2p.room import ROOM_EXTEND_INTERVAL
from peerroom.p2p.room import RoomSession
from peerroom.relay.client import RelayClient
from peerroom.relay.exceptions import RelayError

logger = logging.getLogger(__name__)


class HandshakeState(enum.Enum):
    """Observable state of a handshake."""

    CREATING = 'creating'
    """The host is creating the relay room."""
    WAITING = 'waiting'
    """The room exists and the host waits for the other peer."""
    CONNECTING = 'connecting'
    """The joiner is negotiating through the room."""
    CONNECTED = 'connected'
    """The direct channel is open."""
    CLOSED = 'closed'
    """The direct channel or the handshake was closed."""
    ERROR = 'error'
    """The handshake failed. See `Handshake.error`."""


_TERMINAL_STATES = (HandshakeState.CLOSED, HandshakeState.ERROR)


class Handshake:
    """Orchestrate negotiation between a local engine and the remote peer.

    One side calls [`host()`][peerroom.p2p.handshake.Handshake.host] to
    create a room and shares the returned code with the other side, which
    calls [`join()`][peerroom.p2p.handshake.Handshake.join] with that code.
    The host's engine should be the initiator of the negotiation.

    Engine events and room messages are handled one at a time in the order
    they occur. Once the direct channel is open, the room is disposed and
    application frames can be exchanged with
    [`send()`][peerroom.p2p.handshake.Handshake.send] and the `on_frame`
    callback.

    Example:
        ```python
        from peerroom.p2p.engine import PeerEngine
        from peerroom.p2p.handshake import Handshake
        from peerroom.p2p.messages import HOST
        from peerroom.relay.client import RelayClient

        client = RelayClient('http://localhost:8780')
        handshake = Handshake(PeerEngine(initiator=True), role=HOST)
        code = await handshake.host(client)
        print(f'Join with code {code}')
        ```

    Args:
        engine: Negotiation engine of this peer.
        role: [`HOST`][peerroom.p2p.messages.HOST] or
            [`JOINER`][peerroom.p2p.messages.JOINER].
        on_state_change: Optional callable invoked with each new state.
        on_frame: Optional coroutine awaited with the label and payload of
            each application frame received over the direct channel.
        poll_interval: Seconds between polls of the room.
        extend_interval: Seconds between extensions of a hosted room.

    Raises:
        ValueError: If role is not a valid role.
    """

    def __init__(
        self,
        engine: NegotiationEngine,
        *,
        role: int,
        on_state_change: Callable[[HandshakeState], None] | None = None,
        on_frame: Callable[[str, Any], Awaitable[None]] | None = None,
        poll_interval: float = MESSAGE_POLL_INTERVAL,
        extend_interval: float = ROOM_EXTEND_INTERVAL,
    ) -> None:
        if role not in (HOST, JOINER):
            raise ValueError(f'Role must be {HOST} or {JOINER}. Got {role}.')

        self.role = role
        self.state = HandshakeState.CREATING
        self.room_code: str | None = None
        self.error: str | None = None

        self._engine = engine
        self._on_state_change = on_state_change
        self._on_frame = on_frame
        self._poll_interval = poll_interval
        self._extend_interval = extend_interval

        self._lock = asyncio.Lock()
        self._room: RoomSession | None = None
        self._replay: list[SignalEnvelope] = []
        self._reorder = OrderedDeliveryQueue(self._deliver)
        self._decoder = FrameDecoder()

        engine.on('signal', self._on_engine_signal)
        engine.on('connect', self._on_engine_connect)
        engine.on('data', self._on_engine_data)
        engine.on('close', self._on_engine_close)
        engine.on('error', self._on_engine_error)

    @property
    def _log_prefix(self) -> str:
        role = 'host' if self.role == HOST else 'joiner'
        return f'{self.__class__.__name__}[{role}]'

    @property
    def _terminal(self) -> bool:
        return self.state in _TERMINAL_STATES

    def _set_state(self, state: HandshakeState) -> None:
        if state is self.state:
            return
        logger.info(
            f'{self._log_prefix}: {self.state.value} -> {state.value}',
        )
        self.state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    async def host(self, client: RelayClient) -> str:
        """Create a room and wait in it for the other peer.

        Args:
            client: Client of the relay to create the room on.

        Returns:
            Code of the created room.

        Raises:
            ValueError: If this handshake is not the host.
            PeerConnectionError: If the handshake already ended.
            RelayError: If the room could not be created.
            RequestException: If the relay could not be reached.
        """
        if self.role != HOST:
            raise ValueError('Only the host can create a room.')
        async with self._lock:
            self._check_usable()
            self._set_state(HandshakeState.CREATING)
            try:
                self._room = await RoomSession.create(
                    client,
                    self._on_room_message,
                    on_expired=self._on_room_expired,
                    poll_interval=self._poll_interval,
                    extend_interval=self._extend_interval,
                )
            except (RelayError, requests.exceptions.RequestException) as e:
                await self._fail(f'Failed to create a new room: {e}')
                raise
            self.room_code = self._room.code
            self._set_state(HandshakeState.WAITING)
            await self._flush_to_room()
        return self.room_code

    async def join(self, client: RelayClient, code: str) -> None:
        """Join the room created by the other peer.

        Args:
            client: Client of the relay hosting the room.
            code: Room code shared by the host.

        Raises:
            ValueError: If this handshake is not the joiner.
            PeerConnectionError: If the handshake already ended.
        """
        if self.role != JOINER:
            raise ValueError('Only the joiner can join a room.')
        async with self._lock:
            self._check_usable()
            self.room_code = code
            self._set_state(HandshakeState.CONNECTING)
            self._room = RoomSession.join(
                client,
                code,
                self._on_room_message,
                on_expired=self._on_room_expired,
                poll_interval=self._poll_interval,
            )
            await self._flush_to_room()

    def send(self, label: str, payload: Any) -> None:
        """Send an application frame over the direct channel.

        Raises:
            PeerConnectionError: If the direct channel is not open.
        """
        if self.state is not HandshakeState.CONNECTED:
            raise PeerConnectionError(
                f'Cannot send in the {self.state.value} state.',
            )
        self._send_frame(label, payload)

    async def close(self) -> None:
        """Close the handshake, its room and its engine.

        Can be called from within an engine or frame handler. Calling this
        more than once has no effect.
        """
        if self._terminal:
            return
        self._set_state(HandshakeState.CLOSED)
        await self._teardown()

    def _check_usable(self) -> None:
        if self._terminal:
            raise PeerConnectionError(
                f'Handshake has already ended in the {self.state.value} '
                'state.',
            )
        if self._room is not None:
            raise PeerConnectionError('Handshake already has a room.')

    def _send_frame(self, label: str, payload: Any) -> None:
        for chunk in chunk_frame(encode_frame(label, payload)):
            self._engine.send(chunk)

    async def _send_to_room(self, envelope: SignalEnvelope) -> None:
        assert self._room is not None
        try:
            await self._room.send(envelope)
        except RoomExpiredError as e:
            await self._fail(f'Failed to send signal through the relay: {e}')

    async def _flush_to_room(self) -> None:
        # Signals emitted before the room existed
        for envelope in list(self._replay):
            if self._terminal:
                return
            await self._send_to_room(envelope)

    def _deliver(self, envelope: SignalEnvelope) -> None:
        logger.debug(f'{self._log_prefix}: applying signal {envelope.i}')
        self._engine.signal(envelope.data)

    def _receive(self, envelope: SignalEnvelope) -> None:
        if envelope.recipient != self.role:
            return
        self._reorder.push(envelope)

    async def _on_engine_signal(self, data: Any) -> None:
        async with self._lock:
            if self._terminal:
                return
            envelope = SignalEnvelope(
                i=len(self._replay),
                sender=self.role,
                recipient=JOINER if self.role == HOST else HOST,
                data=data,
            )
            self._replay.append(envelope)
            if self._engine.connected:
                self._send_frame(SIGNAL_LABEL, envelope.to_dict())
            elif self._room is not None:
                await self._send_to_room(envelope)
            else:
                logger.debug(
                    f'{self._log_prefix}: holding signal {envelope.i} until '
                    'the room exists',
                )

    async def _on_engine_connect(self) -> None:
        async with self._lock:
            if self._terminal:
                return
            self._set_state(HandshakeState.CONNECTED)
            # Signals posted to the room around the time the channel opened
            # may never be polled by the other peer.
            for envelope in self._replay:
                self._send_frame(SIGNAL_LABEL, envelope.to_dict())
            if self._room is not None:
                await self._room.dispose()

    async def _on_engine_data(self, data: bytes) -> None:
        async with self._lock:
            if self._terminal:
                return
            try:
                frames = self._decoder.feed(data)
            except MalformedFrameError as e:
                await self._fail(f'Received malformed data from peer: {e}')
                return

            for label, payload in frames:
                if label == SIGNAL_LABEL:
                    try:
                        envelope = SignalEnvelope.from_dict(payload)
                    except EnvelopeDecodeError as e:
                        await self._fail(
                            f'Received malformed signal from peer: {e}',
                        )
                        return
                    self._receive(envelope)
                elif self._on_frame is not None:
                    await self._on_frame(label, payload)
                else:
                    logger.debug(
                        f'{self._log_prefix}: ignoring frame with label '
                        f'{label}',
                    )
                if self._terminal:
                    return

    async def _on_engine_close(self) -> None:
        async with self._lock:
            if self._terminal:
                return
            self._set_state(HandshakeState.CLOSED)
            await self._teardown()

    async def _on_engine_error(self, error: BaseException) -> None:
        async with self._lock:
            if self._terminal:
                return
            await self._fail(f'Peer connection failed: {error}')

    async def _on_room_message(self, envelope: SignalEnvelope) -> None:
        async with self._lock:
            if self._terminal:
                return
            self._receive(envelope)

    async def _on_room_expired(self, error: Exception) -> None:
        async with self._lock:
            if self._terminal or self.state is HandshakeState.CONNECTED:
                return
            await self._fail(f'Relay room expired: {error}')

    async def _fail(self, message: str) -> None:
        logger.error(f'{self._log_prefix}: {message}')
        self.error = message
        self._set_state(HandshakeState.ERROR)
        await self._teardown()

    async def _teardown(self) -> None:
        try:
            if self._room is not None:
                await self._room.dispose()
        finally:
            await self._engine.close()
