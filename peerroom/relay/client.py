"""Client for the relay REST API."""
from __future__ import annotations

from typing import Any

import requests

from peerroom.relay.constants import DEFAULT_ALLOWED_ORIGINS
from peerroom.relay.exceptions import MessageSizeExceededError
from peerroom.relay.exceptions import RelayResponseError
from peerroom.relay.exceptions import RoomExhaustedError
from peerroom.relay.exceptions import RoomNotFoundError
from peerroom.relay.models import RelayMessage

DEFAULT_APP_ID = 'remote-stylus'
"""Application namespace used when none is given."""

DEFAULT_ORIGIN = DEFAULT_ALLOWED_ORIGINS[0]
"""`Origin` header sent when none is given."""


class RelayClient:
    """Client for a relay serving rooms for one application namespace.

    Rooms are addressed by their short code. The client prefixes codes with
    the namespace to form the full room identifier used by the relay.

    The client holds no room state and never retries. Failures surface
    as-is so callers can decide what a failure means for their session.

    Example:
        ```python
        from peerroom.relay.client import RelayClient

        client = RelayClient('http://localhost:8780', app_id='demo')
        code = client.create_room()
        client.post_message(code, 'hello')
        messages = client.list_messages(code)
        assert messages[0].body == 'hello'
        client.delete_room(code)
        ```

    Args:
        address: Base address of the relay (e.g., `http://localhost:8780`).
        app_id: Application namespace of the rooms.
        origin: Value of the `Origin` header sent with each request. Relays
            reject origins outside their allow-list.
        session: Session instance to use for making requests. Reusing the
            same session across multiple requests to the same host can
            improve performance.
    """

    def __init__(
        self,
        address: str,
        app_id: str = DEFAULT_APP_ID,
        *,
        origin: str | None = DEFAULT_ORIGIN,
        session: requests.Session | None = None,
    ) -> None:
        self.address = address.rstrip('/')
        self.app_id = app_id
        self._headers = {} if origin is None else {'Origin': origin}
        self._session = session

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(address={self.address!r}, '
            f'app_id={self.app_id!r})'
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        request = (
            requests.request
            if self._session is None
            else self._session.request
        )
        return request(
            method,
            f'{self.address}{path}',
            headers={**self._headers, **(headers or {})},
            **kwargs,
        )

    def room_id(self, code: str) -> str:
        """Full relay identifier of a room code."""
        return f'{self.app_id}-{code}'

    def create_room(self) -> str:
        """Create a new room.

        Returns:
            Code of the new room.

        Raises:
            RoomExhaustedError: If the relay could not find an unused code.
            RelayResponseError: If the relay replied with a room identifier
                outside this client's namespace.
            RequestException: If the request results in an unexpected
                error code.
        """
        response = self._request(
            'POST',
            '/rooms',
            params={'app_id': self.app_id},
        )
        if response.status_code == 500:
            raise RoomExhaustedError(
                f'Relay failed to create a room: {response.text}',
            )
        _raise_for_status(response)

        room = response.json().get('room')
        prefix = f'{self.app_id}-'
        if not isinstance(room, str) or not room.startswith(prefix):
            raise RelayResponseError(
                f'Relay returned room {room!r} outside of namespace '
                f'{self.app_id}.',
            )
        return room[len(prefix) :]

    def extend_room(self, code: str) -> None:
        """Reset the expiry of a room.

        Raises:
            RoomNotFoundError: If the room does not exist or has expired.
            RequestException: If the request results in an unexpected
                error code.
        """
        response = self._request(
            'POST',
            f'/rooms/{self.room_id(code)}/extend',
        )
        _raise_for_status(response)

    def delete_room(self, code: str) -> None:
        """Delete a room. Deleting a missing room succeeds.

        Raises:
            RequestException: If the request results in an unexpected
                error code.
        """
        response = self._request('DELETE', f'/rooms/{self.room_id(code)}')
        _raise_for_status(response)

    def list_messages(self, code: str, since: int = -1) -> list[RelayMessage]:
        """List messages in a room.

        Args:
            code: Room code.
            since: Only return messages with an identifier greater than this.

        Returns:
            Messages in ascending identifier order.

        Raises:
            RoomNotFoundError: If the room does not exist or has expired.
            RelayResponseError: If the response is not a list of messages.
            RequestException: If the request results in an unexpected
                error code.
        """
        response = self._request(
            'GET',
            f'/rooms/{self.room_id(code)}/messages',
            params={'since': since},
        )
        _raise_for_status(response)

        messages = response.json().get('messages')
        if not isinstance(messages, list):
            raise RelayResponseError(
                f'Expected a list of messages but got {messages!r}.',
            )
        try:
            return [
                RelayMessage(id=int(m['id']), body=str(m['body']))
                for m in messages
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise RelayResponseError(f'Malformed message list: {e}') from e

    def post_message(self, code: str, body: str) -> None:
        """Append a message to a room.

        Raises:
            RoomNotFoundError: If the room does not exist or has expired.
            MessageSizeExceededError: If the body exceeds the relay's limit.
            RequestException: If the request results in an unexpected
                error code.
        """
        response = self._request(
            'POST',
            f'/rooms/{self.room_id(code)}/messages',
            data=body.encode('utf-8'),
            headers={'Content-Type': 'text/plain; charset=utf-8'},
        )
        _raise_for_status(response)


def _raise_for_status(response: requests.Response) -> None:
    if response.status_code == 404:
        raise RoomNotFoundError(response.text or 'Room not found')
    if response.status_code == 413:
        raise MessageSizeExceededError(response.text or 'Message too large')
    if not response.ok:
        raise requests.exceptions.RequestException(
            f'Relay returned HTTP error code {response.status_code}. '
            f'{response.text}',
            response=response,
        )
