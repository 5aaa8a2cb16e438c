"""Rendezvous relay for exchanging negotiation messages.

Rooms are short-lived, namespaced rendezvous points identified by a 6-digit
code. Two peers that know the code exchange messages through the room
until a direct channel exists, after which the room is deleted or simply
left to expire.

The [`serve`][peerroom.relay.serve] module exposes the
[`RoomStorage`][peerroom.relay.storage.RoomStorage] over HTTP and the
[`RelayClient`][peerroom.relay.client.RelayClient] talks to it.
"""
from __future__ import annotations
