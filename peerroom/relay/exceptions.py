"""Exception types raised by the relay store and client."""
from __future__ import annotations


class RelayError(Exception):
    """Base exception type for relay errors."""

    pass


class RoomNotFoundError(RelayError):
    """Room does not exist or has already expired."""

    pass


class RoomExhaustedError(RelayError):
    """No unused room code was found within the retry limit."""

    pass


class MessageSizeExceededError(RelayError):
    """Message body exceeds the relay's size limit."""

    pass


class RelayResponseError(RelayError):
    """Relay replied with a response that could not be understood."""

    pass
