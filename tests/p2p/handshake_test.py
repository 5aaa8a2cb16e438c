from __future__ import annotations

import asyncio
from typing import Any

import pytest
import requests

from peerroom.p2p.exceptions import PeerConnectionError
from peerroom.p2p.frames import chunk_frame
from peerroom.p2p.frames import encode_frame
from peerroom.p2p.frames import FrameDecoder
from peerroom.p2p.frames import POINTER_LABEL
from peerroom.p2p.frames import SIGNAL_LABEL
from peerroom.p2p.handshake import Handshake
from peerroom.p2p.handshake import HandshakeState
from peerroom.p2p.messages import decode_envelope
from peerroom.p2p.messages import encode_envelope
from peerroom.p2p.messages import HOST
from peerroom.p2p.messages import JOINER
from peerroom.p2p.messages import SignalEnvelope
from peerroom.p2p.protocols import NegotiationEngine
from testing.clients import MemoryRelay
from testing.clients import MemoryRelayClient
from testing.engines import FakeEngine
from testing.engines import link
from testing.utils import wait_for

FAST = {'poll_interval': 0.01, 'extend_interval': 60}


class Peer:
    def __init__(self, relay: MemoryRelay, role: int) -> None:
        self.client = MemoryRelayClient(relay)
        self.engine = FakeEngine(initiator=role == HOST)
        self.states: list[HandshakeState] = []
        self.frames: list[tuple[str, Any]] = []
        self.handshake = Handshake(
            self.engine,
            role=role,
            on_state_change=self.states.append,
            on_frame=self.on_frame,
            **FAST,
        )

    async def on_frame(self, label: str, payload: Any) -> None:
        self.frames.append((label, payload))


def _wire(i: int, data: Any) -> dict[str, Any]:
    envelope = SignalEnvelope(i=i, sender=HOST, recipient=JOINER, data=data)
    return envelope.to_dict()


def test_fake_engine_is_negotiation_engine() -> None:
    assert isinstance(FakeEngine(), NegotiationEngine)


@pytest.mark.asyncio()
async def test_invalid_role() -> None:
    with pytest.raises(ValueError):
        Handshake(FakeEngine(), role=2)

    joiner = Handshake(FakeEngine(), role=JOINER)
    with pytest.raises(ValueError):
        await joiner.host(MemoryRelayClient())

    host = Handshake(FakeEngine(), role=HOST)
    with pytest.raises(ValueError):
        await host.join(MemoryRelayClient(), '000001')


@pytest.mark.asyncio()
async def test_end_to_end_replay() -> None:
    relay = MemoryRelay()
    host = Peer(relay, HOST)
    joiner = Peer(relay, JOINER)

    code = await host.handshake.host(host.client)
    assert host.handshake.room_code == code
    assert host.handshake.state is HandshakeState.WAITING

    await joiner.handshake.join(joiner.client, code)
    assert joiner.handshake.state is HandshakeState.CONNECTING

    # Offer and answer travel through the room
    host.engine.emit('signal', 'offer')
    await wait_for(lambda: joiner.engine.signals == ['offer'])
    joiner.engine.emit('signal', 'answer')
    await wait_for(lambda: host.engine.signals == ['answer'])

    # A signal emitted right before the channel opens is posted to the room
    # but the joiner may never poll it
    host.engine.emit('signal', 'candidate')
    await wait_for(lambda: len(relay.rooms[host.client.room_id(code)]) == 3)

    link(host.engine, joiner.engine)
    host.engine.open()
    joiner.engine.open()

    await wait_for(lambda: joiner.engine.signals == ['offer', 'candidate'])
    await wait_for(
        lambda: host.handshake.state is HandshakeState.CONNECTED
        and joiner.handshake.state is HandshakeState.CONNECTED,
    )
    # Both rooms are disposed and only the host deletes the room
    await wait_for(lambda: relay.deleted == [host.client.room_id(code)])

    # Signals after connecting go over the direct channel
    joiner.engine.emit('signal', 'renegotiate')
    await wait_for(lambda: host.engine.signals == ['answer', 'renegotiate'])

    host.handshake.send(POINTER_LABEL, ['down', 1])
    joiner.handshake.send('custom', {'big': 'x' * 40_000})
    await wait_for(lambda: joiner.frames == [(POINTER_LABEL, ['down', 1])])
    await wait_for(lambda: host.frames == [('custom', {'big': 'x' * 40_000})])

    # Each signal was applied exactly once
    assert joiner.engine.signals == ['offer', 'candidate']

    assert host.states == [
        HandshakeState.WAITING,
        HandshakeState.CONNECTED,
    ]
    assert joiner.states == [
        HandshakeState.CONNECTING,
        HandshakeState.CONNECTED,
    ]

    await host.handshake.close()
    await wait_for(lambda: joiner.handshake.state is HandshakeState.CLOSED)
    assert host.handshake.state is HandshakeState.CLOSED
    assert host.engine.closed
    assert joiner.engine.closed


@pytest.mark.asyncio()
async def test_replay_sequence_numbers() -> None:
    relay = MemoryRelay()
    host = Peer(relay, HOST)
    code = await host.handshake.host(host.client)

    for data in ('a', 'b', 'c'):
        host.engine.emit('signal', data)
    room = relay.rooms[host.client.room_id(code)]
    await wait_for(lambda: len(room) == 3)

    envelopes = [decode_envelope(m.body) for m in room]
    assert envelopes == [
        SignalEnvelope(i=0, sender=HOST, recipient=JOINER, data='a'),
        SignalEnvelope(i=1, sender=HOST, recipient=JOINER, data='b'),
        SignalEnvelope(i=2, sender=HOST, recipient=JOINER, data='c'),
    ]

    host.engine.open()
    await wait_for(lambda: len(host.engine.sent) == 3)
    decoded = [
        SignalEnvelope.from_dict(payload)
        for _, payload in FrameDecoder().feed(b''.join(host.engine.sent))
    ]
    assert decoded == envelopes

    await host.handshake.close()


@pytest.mark.asyncio()
async def test_signal_before_room_is_flushed() -> None:
    relay = MemoryRelay()
    host = Peer(relay, HOST)

    host.engine.emit('signal', 'early')
    code = await host.handshake.host(host.client)

    room = relay.rooms[host.client.room_id(code)]
    await wait_for(lambda: len(room) == 1)
    assert decode_envelope(room[0].body).data == 'early'

    await host.handshake.close()


@pytest.mark.asyncio()
async def test_out_of_order_room_messages() -> None:
    relay = MemoryRelay()
    joiner = Peer(relay, JOINER)
    poster = MemoryRelayClient(relay)
    code = poster.create_room()

    for i in (2, 0, 1):
        envelope = SignalEnvelope(i=i, sender=HOST, recipient=JOINER, data=i)
        poster.post_message(code, encode_envelope(envelope))
    # Messages addressed to the host are ignored
    poster.post_message(
        code,
        encode_envelope(
            SignalEnvelope(i=3, sender=JOINER, recipient=HOST, data=3),
        ),
    )

    await joiner.handshake.join(joiner.client, code)
    await wait_for(lambda: joiner.engine.signals == [0, 1, 2])

    await joiner.handshake.close()
    assert joiner.engine.signals == [0, 1, 2]


class RejectingEngine(FakeEngine):
    def signal(self, data: Any) -> None:
        raise RuntimeError('engine rejected signal')


@pytest.mark.asyncio()
async def test_engine_signal_failure_ends_handshake() -> None:
    relay = MemoryRelay()
    poster = MemoryRelayClient(relay)
    code = poster.create_room()
    envelope = SignalEnvelope(i=0, sender=HOST, recipient=JOINER, data=0)
    poster.post_message(code, encode_envelope(envelope))

    engine = RejectingEngine()
    joiner = Handshake(engine, role=JOINER, **FAST)
    await joiner.join(MemoryRelayClient(relay), code)

    await wait_for(lambda: joiner.state is HandshakeState.ERROR)
    assert 'engine rejected signal' in str(joiner.error)
    assert engine.closed

    await joiner.close()
    assert joiner.state is HandshakeState.ERROR


@pytest.mark.asyncio()
async def test_create_room_failure() -> None:
    host = Peer(MemoryRelay(), HOST)
    host.client.failures.add('create_room')

    with pytest.raises(requests.exceptions.ConnectionError):
        await host.handshake.host(host.client)

    assert host.handshake.state is HandshakeState.ERROR
    assert host.handshake.error is not None
    assert 'Failed to create a new room' in host.handshake.error
    assert host.engine.closed

    with pytest.raises(PeerConnectionError):
        await host.handshake.host(host.client)


@pytest.mark.asyncio()
async def test_room_expired_before_connect() -> None:
    relay = MemoryRelay()
    host = Peer(relay, HOST)
    code = await host.handshake.host(host.client)

    relay.expire(host.client.room_id(code))
    await wait_for(lambda: host.handshake.state is HandshakeState.ERROR)
    assert 'expired' in str(host.handshake.error)
    assert host.engine.closed


@pytest.mark.asyncio()
async def test_post_failure() -> None:
    host = Peer(MemoryRelay(), HOST)
    await host.handshake.host(host.client)
    host.client.failures.add('post_message')

    host.engine.emit('signal', 'offer')
    await wait_for(lambda: host.handshake.state is HandshakeState.ERROR)
    assert 'relay' in str(host.handshake.error)


@pytest.mark.asyncio()
async def test_malformed_data() -> None:
    relay = MemoryRelay()
    host = Peer(relay, HOST)
    code = await host.handshake.host(host.client)
    host.engine.open()
    await wait_for(lambda: host.handshake.state is HandshakeState.CONNECTED)

    host.engine.emit('data', b'\xc1')
    await wait_for(lambda: host.handshake.state is HandshakeState.ERROR)
    assert 'malformed' in str(host.handshake.error)
    assert host.engine.closed
    assert relay.deleted == [host.client.room_id(code)]


@pytest.mark.asyncio()
async def test_malformed_signal_frame() -> None:
    host = Peer(MemoryRelay(), HOST)
    await host.handshake.host(host.client)
    host.engine.open()

    host.engine.emit('data', encode_frame(SIGNAL_LABEL, {'i': 'zero'}))
    await wait_for(lambda: host.handshake.state is HandshakeState.ERROR)
    assert 'signal' in str(host.handshake.error)


@pytest.mark.asyncio()
async def test_chunked_frames_from_peer() -> None:
    joiner = Peer(MemoryRelay(), JOINER)
    code = MemoryRelayClient(joiner.client.relay).create_room()
    await joiner.handshake.join(joiner.client, code)
    joiner.engine.open()

    frame = encode_frame(SIGNAL_LABEL, _wire(0, 'x'))
    frame += encode_frame(POINTER_LABEL, [1, 2, 3])
    for chunk in chunk_frame(frame, 3):
        joiner.engine.emit('data', chunk)

    await wait_for(lambda: joiner.frames == [(POINTER_LABEL, [1, 2, 3])])
    assert joiner.engine.signals == ['x']
    await joiner.handshake.close()


@pytest.mark.asyncio()
async def test_unhandled_frame_label_ignored() -> None:
    engine = FakeEngine()
    handshake = Handshake(engine, role=JOINER, **FAST)
    client = MemoryRelayClient()
    await handshake.join(client, client.create_room())
    engine.open()
    await wait_for(lambda: handshake.state is HandshakeState.CONNECTED)

    engine.emit('data', encode_frame('unknown', None))
    engine.emit('data', encode_frame(SIGNAL_LABEL, _wire(0, 'x')))
    await wait_for(lambda: engine.signals == ['x'])
    assert handshake.state is HandshakeState.CONNECTED
    await handshake.close()


@pytest.mark.asyncio()
async def test_engine_error() -> None:
    host = Peer(MemoryRelay(), HOST)
    await host.handshake.host(host.client)

    host.engine.emit('error', RuntimeError('ice failed'))
    await wait_for(lambda: host.handshake.state is HandshakeState.ERROR)
    assert 'ice failed' in str(host.handshake.error)
    assert host.engine.closed


@pytest.mark.asyncio()
async def test_engine_close() -> None:
    relay = MemoryRelay()
    host = Peer(relay, HOST)
    code = await host.handshake.host(host.client)

    await host.engine.close()
    await wait_for(lambda: host.handshake.state is HandshakeState.CLOSED)
    assert relay.deleted == [host.client.room_id(code)]
    assert host.handshake.error is None


@pytest.mark.asyncio()
async def test_close_idempotent() -> None:
    relay = MemoryRelay()
    host = Peer(relay, HOST)
    await host.handshake.host(host.client)

    await host.handshake.close()
    await host.handshake.close()
    assert host.states == [HandshakeState.WAITING, HandshakeState.CLOSED]
    assert host.client.calls.count('delete_room') == 1

    # Events after closing are ignored
    host.engine.emit('signal', 'late')
    host.engine.emit('error', RuntimeError())
    await asyncio.sleep(0.05)
    assert host.handshake.state is HandshakeState.CLOSED


@pytest.mark.asyncio()
async def test_close_from_frame_handler() -> None:
    engine = FakeEngine()
    handshake: Handshake | None = None

    async def on_frame(label: str, payload: Any) -> None:
        assert handshake is not None
        await handshake.close()

    handshake = Handshake(engine, role=JOINER, on_frame=on_frame, **FAST)
    client = MemoryRelayClient()
    await handshake.join(client, client.create_room())
    engine.open()

    engine.emit('data', encode_frame('bye', None) + encode_frame('bye', None))
    await wait_for(lambda: handshake.state is HandshakeState.CLOSED)
    assert engine.closed


@pytest.mark.asyncio()
async def test_send_requires_connection() -> None:
    handshake = Handshake(FakeEngine(), role=HOST, **FAST)
    with pytest.raises(PeerConnectionError):
        handshake.send(POINTER_LABEL, [])
