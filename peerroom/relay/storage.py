"""Room storage backends for the relay.

A room is a row mapping a room identifier to an absolute expiry time in
milliseconds. Messages are rows in an append-only log keyed by a
relay-assigned, strictly increasing identifier.

A room whose expiry time has passed is treated as missing by every
operation, whether or not it has been purged yet. Extensions only apply to
live rooms, so an expired room can never be brought back.

Warning:
    Appending and listing check that the room exists and then act on it in
    a separate statement. A room that expires (or is deleted) between the
    two statements can therefore still receive one message, and a listing
    can fail spuriously for a room that expires in that instant. Both peers
    simply observe the failure and end their session, so the race is left
    open rather than closed with locking.
"""
from __future__ import annotations

import pathlib
import sqlite3
from typing import Callable
from typing import Protocol
from typing import runtime_checkable

import aiosqlite

from peerroom.relay.constants import NEW_ROOM_RETRIES
from peerroom.relay.constants import ROOM_TTL_MS
from peerroom.relay.exceptions import RoomExhaustedError
from peerroom.relay.exceptions import RoomNotFoundError
from peerroom.relay.models import now_ms
from peerroom.relay.models import random_code
from peerroom.relay.models import RelayMessage


@runtime_checkable
class RoomStorage(Protocol):
    """Relay storage protocol for rooms and their messages."""

    async def create_room(self, app_id: str) -> str:
        """Create a new room with a random code.

        Args:
            app_id: Application namespace prefixed to the room code.

        Returns:
            Full room identifier (`{app_id}-{code}`).

        Raises:
            RoomExhaustedError: If no unused code was found within
                `NEW_ROOM_RETRIES` attempts.
        """
        ...

    async def extend_room(self, room: str) -> None:
        """Reset the expiry of a live room to now plus the TTL.

        Raises:
            RoomNotFoundError: If the room does not exist or has expired.
        """
        ...

    async def delete_room(self, room: str) -> None:
        """Delete a room and its messages. Missing rooms are ignored."""
        ...

    async def append_message(self, room: str, body: str) -> int:
        """Append a message to a live room.

        Returns:
            Identifier assigned to the message.

        Raises:
            RoomNotFoundError: If the room does not exist or has expired.
        """
        ...

    async def list_messages(
        self,
        room: str,
        since: int = -1,
    ) -> list[RelayMessage]:
        """List messages of a live room with identifiers greater than `since`.

        Returns:
            Messages in ascending identifier order.

        Raises:
            RoomNotFoundError: If the room does not exist or has expired.
        """
        ...

    async def vacuum(self) -> int:
        """Purge expired rooms and their messages.

        Returns:
            Number of rooms purged.
        """
        ...

    async def close(self) -> None:
        """Close the storage."""
        ...


class MemoryRoomStorage:
    """Dictionary-based room storage.

    Data only lives as long as the process. Useful for tests and for
    single-process relays where losing rooms on restart is acceptable.

    Args:
        ttl_ms: Lifetime of a room in milliseconds.
        clock: Callable returning the current time in milliseconds.
    """

    def __init__(
        self,
        *,
        ttl_ms: int = ROOM_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._ttl_ms = ttl_ms
        self._clock = clock
        self._rooms: dict[str, int] = {}
        self._messages: dict[str, list[RelayMessage]] = {}
        self._last_message_id = 0

    def _check_room(self, room: str, now: int) -> None:
        expires_at = self._rooms.get(room)
        if expires_at is None or expires_at <= now:
            raise RoomNotFoundError(f'Room {room} not found.')

    async def create_room(self, app_id: str) -> str:
        """Create a new room with a random code."""
        now = self._clock()
        for _ in range(NEW_ROOM_RETRIES):
            room = f'{app_id}-{random_code()}'
            if room not in self._rooms:
                self._rooms[room] = now + self._ttl_ms
                return room
        raise RoomExhaustedError(
            f'Failed to find an unused room code for {app_id} after '
            f'{NEW_ROOM_RETRIES} attempts.',
        )

    async def extend_room(self, room: str) -> None:
        """Reset the expiry of a live room to now plus the TTL."""
        now = self._clock()
        self._check_room(room, now)
        self._rooms[room] = now + self._ttl_ms

    async def delete_room(self, room: str) -> None:
        """Delete a room and its messages."""
        self._rooms.pop(room, None)
        self._messages.pop(room, None)

    async def append_message(self, room: str, body: str) -> int:
        """Append a message to a live room."""
        self._check_room(room, self._clock())
        self._last_message_id += 1
        message = RelayMessage(id=self._last_message_id, body=body)
        self._messages.setdefault(room, []).append(message)
        return message.id

    async def list_messages(
        self,
        room: str,
        since: int = -1,
    ) -> list[RelayMessage]:
        """List messages of a live room newer than `since`."""
        self._check_room(room, self._clock())
        return [m for m in self._messages.get(room, []) if m.id > since]

    async def vacuum(self) -> int:
        """Purge expired rooms and their messages."""
        now = self._clock()
        expired = [
            room
            for room, expires_at in self._rooms.items()
            if expires_at < now
        ]
        for room in expired:
            await self.delete_room(room)
        return len(expired)

    async def close(self) -> None:
        """Clear all rooms and messages."""
        self._rooms.clear()
        self._messages.clear()


class SQLiteRoomStorage:
    """SQLite room storage.

    Args:
        database_path: Path to database file. Defaults to an in-memory
            database.
        ttl_ms: Lifetime of a room in milliseconds.
        clock: Callable returning the current time in milliseconds.
    """

    def __init__(
        self,
        database_path: str | pathlib.Path = ':memory:',
        *,
        ttl_ms: int = ROOM_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if database_path == ':memory:':
            self.database_path = database_path
        else:
            path = pathlib.Path(database_path).expanduser().resolve()
            self.database_path = str(path)

        self._ttl_ms = ttl_ms
        self._clock = clock
        self._db: aiosqlite.Connection | None = None

    async def db(self) -> aiosqlite.Connection:
        """Get the database connection object."""
        if self._db is None:
            self._db = await aiosqlite.connect(self.database_path)
            await self._db.execute(
                'CREATE TABLE IF NOT EXISTS rooms '
                '(id TEXT PRIMARY KEY, expires_at INTEGER NOT NULL)',
            )
            await self._db.execute(
                'CREATE TABLE IF NOT EXISTS messages '
                '(id INTEGER PRIMARY KEY AUTOINCREMENT, '
                'room TEXT NOT NULL, body TEXT NOT NULL)',
            )
            await self._db.execute(
                'CREATE INDEX IF NOT EXISTS messages_room_id '
                'ON messages (room, id)',
            )
            await self._db.commit()
        return self._db

    async def _room_exists(self, room: str, now: int) -> bool:
        db = await self.db()
        async with db.execute(
            'SELECT 1 FROM rooms WHERE id = ? AND expires_at > ?',
            (room, now),
        ) as cursor:
            return (await cursor.fetchone()) is not None

    async def create_room(self, app_id: str) -> str:
        """Create a new room with a random code."""
        db = await self.db()
        now = self._clock()
        for _ in range(NEW_ROOM_RETRIES):
            room = f'{app_id}-{random_code()}'
            try:
                await db.execute(
                    'INSERT INTO rooms (id, expires_at) VALUES (?, ?)',
                    (room, now + self._ttl_ms),
                )
            except sqlite3.IntegrityError:
                continue
            await db.commit()
            return room
        raise RoomExhaustedError(
            f'Failed to find an unused room code for {app_id} after '
            f'{NEW_ROOM_RETRIES} attempts.',
        )

    async def extend_room(self, room: str) -> None:
        """Reset the expiry of a live room to now plus the TTL."""
        db = await self.db()
        now = self._clock()
        cursor = await db.execute(
            'UPDATE rooms SET expires_at = ? WHERE id = ? AND expires_at > ?',
            (now + self._ttl_ms, room, now),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise RoomNotFoundError(f'Room {room} not found.')

    async def delete_room(self, room: str) -> None:
        """Delete a room and its messages."""
        db = await self.db()
        await db.execute('DELETE FROM rooms WHERE id = ?', (room,))
        await db.execute('DELETE FROM messages WHERE room = ?', (room,))
        await db.commit()

    async def append_message(self, room: str, body: str) -> int:
        """Append a message to a live room."""
        if not await self._room_exists(room, self._clock()):
            raise RoomNotFoundError(f'Room {room} not found.')
        db = await self.db()
        cursor = await db.execute(
            'INSERT INTO messages (room, body) VALUES (?, ?)',
            (room, body),
        )
        await db.commit()
        # lastrowid is only None for statements other than INSERT
        assert cursor.lastrowid is not None
        return cursor.lastrowid

    async def list_messages(
        self,
        room: str,
        since: int = -1,
    ) -> list[RelayMessage]:
        """List messages of a live room newer than `since`."""
        if not await self._room_exists(room, self._clock()):
            raise RoomNotFoundError(f'Room {room} not found.')
        db = await self.db()
        async with db.execute(
            'SELECT id, body FROM messages WHERE room = ? AND id > ? '
            'ORDER BY id ASC',
            (room, since),
        ) as cursor:
            rows = await cursor.fetchall()
        return [RelayMessage(id=row[0], body=row[1]) for row in rows]

    async def vacuum(self) -> int:
        """Purge expired rooms and their messages."""
        db = await self.db()
        now = self._clock()
        await db.execute(
            'DELETE FROM messages WHERE room IN '
            '(SELECT id FROM rooms WHERE expires_at < ?)',
            (now,),
        )
        cursor = await db.execute(
            'DELETE FROM rooms WHERE expires_at < ?',
            (now,),
        )
        await db.commit()
        return cursor.rowcount

    async def close(self) -> None:
        """Close the storage."""
        if self._db is not None:
            await self._db.close()
            self._db = None
