"""Client-side lifecycle of a relay room."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any
from typing import Awaitable
from typing import Callable

import requests

from peerroom.p2p.exceptions import EnvelopeDecodeError
from peerroom.p2p.exceptions import RoomExpiredError
from peerroom.p2p.messages import decode_envelope
from peerroom.p2p.messages import encode_envelope
from peerroom.p2p.messages import SignalEnvelope
from peerroom.relay.client import RelayClient
from peerroom.relay.exceptions import RelayError
from peerroom.relay.exceptions import RoomNotFoundError

logger = logging.getLogger(__name__)

ROOM_EXTEND_INTERVAL = 60.0
"""Seconds between extensions of a hosted room."""

MESSAGE_POLL_INTERVAL = 2.0
"""Seconds between polls for new room messages."""

_RELAY_ERRORS = (RelayError, requests.exceptions.RequestException)


class RoomState(enum.Enum):
    """State of a room session."""

    CREATING = 'creating'
    """Room created by this session, not polled yet."""
    JOINED = 'joined'
    """Room joined by code, not polled yet."""
    ACTIVE = 'active'
    """At least one poll succeeded."""
    EXPIRED = 'expired'
    """Session ended by a failure or disposal."""


class RoomSession:
    """Session polling, and for the host extending, a relay room.

    Sessions are created with
    [`create()`][peerroom.p2p.room.RoomSession.create] by the peer that
    hosts the room or with [`join()`][peerroom.p2p.room.RoomSession.join]
    by the peer that was given the room code. Both start a background task
    polling the room for new messages. Only the host also starts a task
    periodically extending the room, so the room expires on its own once the
    host is gone.

    Any failed relay call ends the session. The session does not retry
    because a room that silently stopped working would leave the remote
    peer waiting forever.

    Example:
        ```python
        from peerroom.p2p.room import RoomSession
        from peerroom.relay.client import RelayClient

        async def on_message(envelope):
            print(envelope)

        client = RelayClient('http://localhost:8780')
        room = await RoomSession.create(client, on_message)
        print(f'Join with code {room.code}')
        ...
        await room.dispose()
        ```

    Args:
        client: Client of the relay hosting the room.
        code: Room code.
        host: If this session created the room.
        on_message: Coroutine awaited with each new envelope in relay order.
        on_expired: Optional coroutine awaited with the exception that ended
            the session when a background poll, delivery or extension fails.
        poll_interval: Seconds between polls.
        extend_interval: Seconds between extensions (host only).
    """

    def __init__(
        self,
        client: RelayClient,
        code: str,
        *,
        host: bool,
        on_message: Callable[[SignalEnvelope], Awaitable[None]],
        on_expired: Callable[[Exception], Awaitable[None]] | None = None,
        poll_interval: float = MESSAGE_POLL_INTERVAL,
        extend_interval: float = ROOM_EXTEND_INTERVAL,
    ) -> None:
        self._client = client
        self.code = code
        self.host = host
        self._on_message = on_message
        self._on_expired = on_expired
        self._poll_interval = poll_interval
        self._extend_interval = extend_interval

        self._state = RoomState.CREATING if host else RoomState.JOINED
        self._cursor = -1
        self._deleted = False
        self._poll_task: asyncio.Task[None] | None = None
        self._extend_task: asyncio.Task[None] | None = None

    @classmethod
    async def create(
        cls,
        client: RelayClient,
        on_message: Callable[[SignalEnvelope], Awaitable[None]],
        **kwargs: Any,
    ) -> RoomSession:
        """Create a new room and start hosting it.

        Args:
            client: Client of the relay to create the room on.
            on_message: Coroutine awaited with each new envelope.
            kwargs: Remaining keyword arguments of
                [`RoomSession`][peerroom.p2p.room.RoomSession].

        Raises:
            RoomExhaustedError: If the relay could not find an unused code.
            RequestException: If the relay could not be reached.
        """
        code = await asyncio.to_thread(client.create_room)
        session = cls(client, code, host=True, on_message=on_message, **kwargs)
        session._start()
        logger.info(f'{session._log_prefix}: created room')
        return session

    @classmethod
    def join(
        cls,
        client: RelayClient,
        code: str,
        on_message: Callable[[SignalEnvelope], Awaitable[None]],
        **kwargs: Any,
    ) -> RoomSession:
        """Join an existing room by its code.

        Joining does not contact the relay. A wrong or expired code shows up
        as the first poll failing.

        Note:
            Must be called from within a running event loop.
        """
        session = cls(
            client,
            code,
            host=False,
            on_message=on_message,
            **kwargs,
        )
        session._start()
        logger.info(f'{session._log_prefix}: joined room')
        return session

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self.room_id}]'

    @property
    def room_id(self) -> str:
        """Full relay identifier of the room."""
        return self._client.room_id(self.code)

    @property
    def state(self) -> RoomState:
        """Current session state."""
        return self._state

    @property
    def expired(self) -> bool:
        """If the session has ended."""
        return self._state is RoomState.EXPIRED

    @property
    def cursor(self) -> int:
        """Identifier of the last message consumed (-1 if none)."""
        return self._cursor

    def _start(self) -> None:
        loop = asyncio.get_running_loop()
        self._poll_task = loop.create_task(
            self._poll(),
            name=f'room-poll-{self.room_id}',
        )
        if self.host:
            self._extend_task = loop.create_task(
                self._extend(),
                name=f'room-extend-{self.room_id}',
            )

    async def _poll(self) -> None:
        while not self.expired:
            try:
                messages = await asyncio.to_thread(
                    self._client.list_messages,
                    self.code,
                    self._cursor,
                )
            except _RELAY_ERRORS as e:
                await self._fail('poll', e)
                return

            if self.expired:
                return
            self._state = RoomState.ACTIVE

            for message in messages:
                self._cursor = message.id
                try:
                    envelope = decode_envelope(message.body)
                except EnvelopeDecodeError as e:
                    await self._fail('decode', e)
                    return
                try:
                    await self._on_message(envelope)
                except Exception as e:
                    await self._fail('deliver', e)
                    return
                if self.expired:
                    return

            await asyncio.sleep(self._poll_interval)

    async def _extend(self) -> None:
        while True:
            await asyncio.sleep(self._extend_interval)
            if self.expired:
                return
            try:
                await asyncio.to_thread(self._client.extend_room, self.code)
            except _RELAY_ERRORS as e:
                await self._fail('extend', e)
                return
            logger.debug(f'{self._log_prefix}: extended room')

    async def _fail(self, operation: str, error: Exception) -> None:
        if self.expired:
            return
        if isinstance(error, RoomNotFoundError):
            logger.warning(
                f'{self._log_prefix}: room not found during {operation}',
            )
        else:
            logger.error(f'{self._log_prefix}: {operation} failed: {error!r}')
        self.expire()
        if self._on_expired is not None:
            await self._on_expired(error)

    async def send(self, envelope: SignalEnvelope) -> None:
        """Post an envelope to the room.

        A failed post ends the session. The `on_expired` callback is not
        invoked because the failure is raised to the caller.

        Raises:
            RoomExpiredError: If the session has ended or the post failed.
        """
        if self.expired:
            raise RoomExpiredError(f'Room {self.room_id} has expired.')
        try:
            await asyncio.to_thread(
                self._client.post_message,
                self.code,
                encode_envelope(envelope),
            )
        except _RELAY_ERRORS as e:
            logger.error(f'{self._log_prefix}: send failed: {e!r}')
            self.expire()
            raise RoomExpiredError(
                f'Failed to post message to room {self.room_id}: {e}',
            ) from e
        logger.debug(f'{self._log_prefix}: sent envelope {envelope.i}')

    def expire(self) -> None:
        """End the session and stop the background tasks.

        Cancels both tasks immediately so no further relay call is issued.
        When called from within one of the tasks, that task is left to exit
        at its next state check. Calling this more than once has no effect.
        """
        if self.expired:
            return
        self._state = RoomState.EXPIRED
        self._cancel_tasks()
        logger.info(f'{self._log_prefix}: session expired')

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._poll_task, self._extend_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

    async def dispose(self) -> None:
        """End the session and delete the room if this session created it.

        Safe to call multiple times and after the room already expired on
        the relay. A failed delete is logged because the room will expire
        on its own.
        """
        self.expire()
        # A task may still be running a callback after a failure-triggered
        # expiry.
        self._cancel_tasks()

        current = asyncio.current_task()
        for task in (self._poll_task, self._extend_task):
            if task is not None and task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error(
                        f'{self._log_prefix}: task {task.get_name()} '
                        f'failed: {e!r}',
                    )

        if self.host and not self._deleted:
            self._deleted = True
            try:
                await asyncio.to_thread(self._client.delete_room, self.code)
            except _RELAY_ERRORS as e:
                logger.warning(
                    f'{self._log_prefix}: failed to delete room: {e!r}',
                )
            else:
                logger.info(f'{self._log_prefix}: deleted room')
