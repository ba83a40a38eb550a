"""In-memory broadcast hub for room members.

This module tracks which WebSocket connections are joined to which room and
fans room events out to them. The hub holds no data of record: it is rebuilt
purely from live connections and is dropped entirely when the process exits.

Key features:
    - One explicit registry object, owned by the application lifespan
    - Each connection joined to at most one room at a time
    - Room-scoped and global broadcasts, optionally excluding the sender
    - Per-connection outbound queue drained by a single writer task, so
      events reach a connection in the order they were enqueued and a slow
      client never blocks delivery to anyone else
    - Automatic cleanup of connections whose socket stops accepting sends
      or that fall too far behind on their queue

Thread Safety:
    Designed for a single asyncio event loop. Enqueueing is synchronous, so
    every method except ``connect``, ``disconnect``, ``close`` and ``flush``
    may be called from plain code running on the loop.
"""
import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Seconds to wait for a connection's queue to drain on disconnect
WRITER_SHUTDOWN_TIMEOUT = 5.0

# Events a connection may fall behind by before it is treated as dead
MAX_PENDING_EVENTS = 1000


class HubEvent(str, Enum):
    """Event names pushed to clients.

    Attributes:
        CONNECTED: Sent once to a new connection with its connection ID.
        USER_JOINED: A connection joined the room (payload: connection ID).
        USERS_IN_ROOM: Reply to a joiner with the current member list.
        USER_LEFT: A connection left the room (payload: connection ID).
        RECEIVE_TEXT: Shared text changed.
        NEW_FILES: Files were committed to the room.
        FILE_DELETED: A file was removed from the room.
        ALL_FILES_CLEARED: Every file in every room was cleared.
        FILES_EXPIRED: The sweeper removed expired files from the room.
        ERROR: A client message could not be handled.
    """
    CONNECTED = "connected"
    USER_JOINED = "user-joined"
    USERS_IN_ROOM = "users-in-room"
    USER_LEFT = "user-left"
    RECEIVE_TEXT = "receive-text"
    NEW_FILES = "new-files"
    FILE_DELETED = "file-deleted"
    ALL_FILES_CLEARED = "all-files-cleared"
    FILES_EXPIRED = "files-expired"
    ERROR = "error"


def make_event(event: HubEvent, payload: Any = None) -> dict:
    """Build the wire envelope for an event."""
    return {"type": event.value, "data": payload}


class Connection:
    """One connected client and its ordered outbound queue."""

    def __init__(
        self,
        connection_id: str,
        websocket: WebSocket,
        on_failure: Callable[[str], None],
    ) -> None:
        self.id = connection_id
        self.websocket = websocket
        self.room_code: Optional[str] = None
        self.closed = False
        self._on_failure = on_failure
        self._queue: "asyncio.Queue[Optional[dict]]" = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._writer = asyncio.create_task(self._write_loop())

    def enqueue(self, message: dict) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                f"[Hub] {self.id} is {MAX_PENDING_EVENTS} events behind; dropping connection"
            )
            self.closed = True
            if self._writer is not None:
                self._writer.cancel()
            self._discard_pending()
            self._on_failure(self.id)

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the socket."""
        if self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def _write_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                if message is None:
                    return
                try:
                    await self.websocket.send_json(message)
                except Exception as e:
                    logger.debug(f"[Hub] Failed to send to {self.id}: {e}")
                    self.closed = True
                    self._on_failure(self.id)
                    self._discard_pending()
                    return
            finally:
                self._queue.task_done()

    def _discard_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def stop(self) -> None:
        """Flush pending events and stop the writer task."""
        self.closed = True
        if self._writer is None:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._writer.cancel()
        if self._writer is asyncio.current_task():
            return
        done, _ = await asyncio.wait({self._writer}, timeout=WRITER_SHUTDOWN_TIMEOUT)
        if not done:
            self._writer.cancel()
            logger.warning(f"[Hub] Writer for {self.id} did not drain in time; cancelled")
        # Release queue.join() callers if the writer died early.
        self._discard_pending()


class BroadcastHub:
    """Registry of live connections and their room memberships.

    Created once per serving process at startup and passed by reference to
    every component that needs to notify clients.
    """

    def __init__(self) -> None:
        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}

        # room_code -> {connection_id -> Connection}, in join order
        self.rooms: Dict[str, Dict[str, Connection]] = {}

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a WebSocket, register it and tell the client its ID.

        Returns:
            The backend-generated connection ID.
        """
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        conn = Connection(connection_id, websocket, self._handle_dead_connection)
        self.connections[connection_id] = conn
        conn.start()
        conn.enqueue(make_event(HubEvent.CONNECTED, {"connectionId": connection_id}))
        logger.info(f"[Hub] Connection {connection_id} opened ({len(self.connections)} total)")
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Remove a connection, implicitly leaving whatever room it was in."""
        conn = self._forget(connection_id)
        if conn is not None:
            await conn.stop()

    def _forget(self, connection_id: str) -> Optional[Connection]:
        conn = self.connections.pop(connection_id, None)
        if conn is None:
            return None
        if conn.room_code is not None:
            self._remove_member(conn, conn.room_code)
        logger.info(f"[Hub] Connection {connection_id} closed ({len(self.connections)} total)")
        return conn

    def _handle_dead_connection(self, connection_id: str) -> None:
        logger.debug(f"[Hub] Removing dead connection {connection_id}")
        self._forget(connection_id)

    async def close(self) -> None:
        """Disconnect every client (process shutdown)."""
        for connection_id in list(self.connections):
            await self.disconnect(connection_id)
        self.rooms.clear()

    async def flush(self) -> None:
        """Wait until every connection has sent its queued events."""
        await asyncio.gather(
            *[conn.drain() for conn in list(self.connections.values())],
            return_exceptions=True,
        )

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, connection_id: str, room_code: str) -> List[str]:
        """Add a connection to a room.

        A connection already in another room leaves it first. Existing members
        receive ``user-joined`` and the joiner receives ``users-in-room``.

        Returns:
            The room's member list after the join, joiner included.
        """
        conn = self.connections.get(connection_id)
        if conn is None:
            raise KeyError(f"Unknown connection: {connection_id}")

        if conn.room_code is not None and conn.room_code != room_code:
            self._remove_member(conn, conn.room_code)

        members = self.rooms.setdefault(room_code, {})
        if connection_id not in members:
            members[connection_id] = conn
            conn.room_code = room_code
            self.broadcast_to_room(
                room_code, HubEvent.USER_JOINED, connection_id, exclude=connection_id
            )
            logger.info(
                f"[Hub] {connection_id} joined {room_code} ({len(members)} members)"
            )

        member_ids = list(members)
        conn.enqueue(make_event(HubEvent.USERS_IN_ROOM, member_ids))
        return member_ids

    def leave(self, connection_id: str, room_code: str) -> bool:
        """Remove a connection from a room and notify the remaining members.

        Returns:
            True if the connection was a member of the room.
        """
        conn = self.connections.get(connection_id)
        if conn is None or conn.room_code != room_code:
            return False
        self._remove_member(conn, room_code)
        return True

    def _remove_member(self, conn: Connection, room_code: str) -> None:
        members = self.rooms.get(room_code)
        conn.room_code = None
        if not members or conn.id not in members:
            return
        del members[conn.id]
        if not members:
            del self.rooms[room_code]
        else:
            self.broadcast_to_room(room_code, HubEvent.USER_LEFT, conn.id)
        logger.info(f"[Hub] {conn.id} left {room_code}")

    def members(self, room_code: str) -> List[str]:
        return list(self.rooms.get(room_code, {}))

    def room_of(self, connection_id: str) -> Optional[str]:
        conn = self.connections.get(connection_id)
        return conn.room_code if conn else None

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    # =========================================================================
    # Broadcast
    # =========================================================================

    def broadcast_to_room(
        self,
        room_code: str,
        event: HubEvent,
        payload: Any = None,
        exclude: Optional[str] = None,
    ) -> int:
        """Queue an event for every member of a room except *exclude*.

        Returns:
            Number of connections the event was queued for.
        """
        message = make_event(event, payload)
        recipients = [
            conn for cid, conn in self.rooms.get(room_code, {}).items()
            if cid != exclude
        ]
        for conn in recipients:
            conn.enqueue(message)
        return len(recipients)

    def broadcast_global(self, event: HubEvent, payload: Any = None) -> int:
        """Queue an event for every connected client regardless of room."""
        message = make_event(event, payload)
        recipients = list(self.connections.values())
        for conn in recipients:
            conn.enqueue(message)
        logger.info(f"[Hub] Global {event.value} queued for {len(recipients)} connections")
        return len(recipients)

    def send_to(self, connection_id: str, event: HubEvent, payload: Any = None) -> bool:
        """Queue an event for a single connection."""
        conn = self.connections.get(connection_id)
        if conn is None:
            return False
        conn.enqueue(make_event(event, payload))
        return True
