"""Relay constants."""
from __future__ import annotations

ROOM_TTL_MS = 600 * 1000
"""Lifetime (milliseconds) of a room that is not extended."""

NEW_ROOM_RETRIES = 3
"""Attempts at finding an unused random room code before giving up."""

ROOM_CODE_DIGITS = 6
"""Number of digits in a room code."""

VACUUM_PROBABILITY = 0.01
"""Fraction of create requests that also purge expired rooms."""

MESSAGE_MAX_SIZE = 100 * 1024
"""Maximum size (bytes) of a single posted message body."""

APP_ID_PATTERN = r'^[a-z\-]{1,24}$'
"""Valid application namespaces."""

ROOM_ID_PATTERN = r'^[a-z\-]{1,24}-[0-9]{6}$'
"""Valid full room identifiers (`{app_id}-{code}`)."""

DEFAULT_ALLOWED_ORIGINS = (
    'http://localhost',
    'http://localhost:*',
    'https://tauri.localhost',
)
"""Origins accepted by a relay unless configured otherwise."""
