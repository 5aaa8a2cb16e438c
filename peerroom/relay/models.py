"""Relay data types and room identifier helpers."""
from __future__ import annotations

import dataclasses
import random
import re
import time

from peerroom.relay.constants import APP_ID_PATTERN
from peerroom.relay.constants import ROOM_CODE_DIGITS
from peerroom.relay.constants import ROOM_ID_PATTERN


@dataclasses.dataclass(frozen=True)
class RelayMessage:
    """Message appended to a room.

    Attributes:
        id: Relay-assigned identifier. Identifiers increase strictly in
            the order messages are appended but are not guaranteed to be
            contiguous within a room.
        body: Opaque message body.
    """

    id: int
    body: str


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def random_code() -> str:
    """Generate a random zero-padded room code."""
    return str(random.randrange(10**ROOM_CODE_DIGITS)).zfill(
        ROOM_CODE_DIGITS,
    )


def validate_app_id(app_id: str) -> bool:
    """Check an application namespace is 1-24 lowercase letters/dashes."""
    return re.fullmatch(APP_ID_PATTERN, app_id) is not None


def validate_room_id(room: str) -> bool:
    """Check a full room identifier has the `{app_id}-{6 digits}` form."""
    return re.fullmatch(ROOM_ID_PATTERN, room) is not None
