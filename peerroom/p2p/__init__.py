"""Peer-to-peer connection establishment.

This module wires a negotiation engine (by default
[`PeerEngine`][peerroom.p2p.engine.PeerEngine], built on
[aiortc](https://aiortc.readthedocs.io/){target=_blank}) to two transports:

* a [`RoomSession`][peerroom.p2p.room.RoomSession], which polls a relay room
  and is only used until the direct channel opens, and
* the direct channel itself, over which messages are sent as msgpack frames
  chunked to fit the channel's message size limit.

The [`Handshake`][peerroom.p2p.handshake.Handshake] decides which transport
each negotiation message takes and merges both inbound paths into a single
ordered stream.
"""
from __future__ import annotations
