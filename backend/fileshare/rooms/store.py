"""DuckDB-backed room store.

Holds room metadata, each room's file index and its text log. The store is the
single source of truth for which files belong to which room; the broadcast hub
never persists anything.

Database Schema:
    rooms table:
        - room_code: Upper-case room code (primary key)
        - created_at: Creation time (UTC)
    room_files table:
        - storage_key: Blob store key (primary key, unique across all rooms)
        - room_code: Owning room
        - original_name, upload_time, file_size: FileRecord fields
        - position: Sequence value preserving upload order
    room_texts table:
        - id: Sequence value preserving edit order
        - room_code, content, added_by, added_at: TextRevision fields

Thread Safety:
    DuckDB connections are NOT thread-safe. Every statement runs under a
    single lock so the store can be shared between the event loop and the
    threads TestClient or a threadpool may call it from. Timestamps are stored
    as naive UTC and re-tagged as UTC on read.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import duckdb

from fileshare.errors import FileNotFound, RoomNotFound, StorageFailure

from .schemas import FileRecord, Room, TextRevision, utcnow

logger = logging.getLogger(__name__)

_CREATE_SEQUENCES = [
    "CREATE SEQUENCE IF NOT EXISTS room_files_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS room_texts_seq START 1",
]

_CREATE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS rooms (
        room_code  VARCHAR PRIMARY KEY,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_files (
        storage_key   VARCHAR PRIMARY KEY,
        room_code     VARCHAR NOT NULL,
        original_name VARCHAR NOT NULL,
        upload_time   TIMESTAMP NOT NULL,
        file_size     BIGINT NOT NULL,
        position      BIGINT DEFAULT nextval('room_files_seq')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_texts (
        id        BIGINT DEFAULT nextval('room_texts_seq') PRIMARY KEY,
        room_code VARCHAR NOT NULL,
        content   VARCHAR NOT NULL,
        added_by  VARCHAR NOT NULL,
        added_at  TIMESTAMP NOT NULL
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_room_files_room ON room_files(room_code)",
    "CREATE INDEX IF NOT EXISTS idx_room_texts_room ON room_texts(room_code)",
]

_FILE_COLUMNS = "storage_key, original_name, upload_time, file_size"


def _to_db(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _from_db(ts: datetime) -> datetime:
    return ts.replace(tzinfo=timezone.utc)


def _file_from_row(row: tuple) -> FileRecord:
    return FileRecord(
        storageKey=row[0],
        originalName=row[1],
        uploadTime=_from_db(row[2]),
        fileSize=row[3],
    )


class RoomStore:
    """CRUD over Room records keyed by room code."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[RoomStore] Initialized with db=%s", self._db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _CREATE_SEQUENCES + _CREATE_TABLES + _INDEXES:
            conn.execute(statement)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # -----------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # -----------------------------------------------------------------------

    def _room_exists(self, conn: duckdb.DuckDBPyConnection, room_code: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM rooms WHERE room_code = ?", [room_code]
        ).fetchone()
        return row is not None

    def _load_room(self, conn: duckdb.DuckDBPyConnection, room_code: str) -> Optional[Room]:
        row = conn.execute(
            "SELECT room_code, created_at FROM rooms WHERE room_code = ?", [room_code]
        ).fetchone()
        if row is None:
            return None
        files = conn.execute(
            f"SELECT {_FILE_COLUMNS} FROM room_files WHERE room_code = ? ORDER BY position",
            [room_code],
        ).fetchall()
        texts = conn.execute(
            """
            SELECT content, added_by, added_at FROM room_texts
            WHERE room_code = ?
            ORDER BY id
            """,
            [room_code],
        ).fetchall()
        return Room(
            roomCode=row[0],
            createdAt=_from_db(row[1]),
            files=[_file_from_row(f) for f in files],
            texts=[
                TextRevision(content=t[0], addedBy=t[1], addedAt=_from_db(t[2]))
                for t in texts
            ],
        )

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def find_or_create(self, room_code: str) -> Room:
        """Return the room, creating it if absent.

        Concurrent first joiners converge on a single record: the insert is a
        no-op when the primary key already exists and the loser re-reads the
        winner's row.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO rooms (room_code, created_at) VALUES (?, ?) "
                    "ON CONFLICT DO NOTHING",
                    [room_code, _to_db(utcnow())],
                )
            except duckdb.ConstraintException:
                logger.debug("[RoomStore] Lost create race for %s, re-reading", room_code)
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to create room {room_code}: {exc}") from exc
            try:
                room = self._load_room(conn, room_code)
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to read room {room_code}: {exc}") from exc
        if room is None:
            raise StorageFailure(f"Room {room_code} vanished after creation")
        return room

    def find(self, room_code: str) -> Room:
        """Return a room.

        Raises:
            RoomNotFound: If the room does not exist.
        """
        with self._lock:
            try:
                room = self._load_room(self._get_connection(), room_code)
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to read room {room_code}: {exc}") from exc
        if room is None:
            raise RoomNotFound(f"Room not found: {room_code}")
        return room

    def find_all(self) -> List[Room]:
        """Return every room with its files and texts, oldest room first."""
        with self._lock:
            conn = self._get_connection()
            try:
                rooms = conn.execute(
                    "SELECT room_code, created_at FROM rooms ORDER BY created_at, room_code"
                ).fetchall()
                files = conn.execute(
                    f"SELECT room_code, {_FILE_COLUMNS} FROM room_files ORDER BY position"
                ).fetchall()
                texts = conn.execute(
                    "SELECT room_code, content, added_by, added_at FROM room_texts ORDER BY id"
                ).fetchall()
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to list rooms: {exc}") from exc

        files_by_room: Dict[str, List[FileRecord]] = {}
        for row in files:
            files_by_room.setdefault(row[0], []).append(_file_from_row(row[1:]))
        texts_by_room: Dict[str, List[TextRevision]] = {}
        for row in texts:
            texts_by_room.setdefault(row[0], []).append(
                TextRevision(content=row[1], addedBy=row[2], addedAt=_from_db(row[3]))
            )
        return [
            Room(
                roomCode=code,
                createdAt=_from_db(created_at),
                files=files_by_room.get(code, []),
                texts=texts_by_room.get(code, []),
            )
            for code, created_at in rooms
        ]

    # -----------------------------------------------------------------------
    # Files
    # -----------------------------------------------------------------------

    def append_file(self, room_code: str, record: FileRecord) -> None:
        """Append a FileRecord to a room's file index.

        Raises:
            RoomNotFound: If the room does not exist.
            StorageFailure: If the write fails or the storage key is already used.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                if not self._room_exists(conn, room_code):
                    raise RoomNotFound(f"Room not found: {room_code}")
                conn.execute(
                    """
                    INSERT INTO room_files
                    (storage_key, room_code, original_name, upload_time, file_size)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        record.storageKey,
                        room_code,
                        record.originalName,
                        _to_db(record.uploadTime),
                        record.fileSize,
                    ],
                )
            except duckdb.ConstraintException as exc:
                raise StorageFailure(
                    f"Storage key already recorded: {record.storageKey}"
                ) from exc
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to record file {record.storageKey}: {exc}") from exc

    def remove_file(self, room_code: str, storage_key: str) -> None:
        """Remove one FileRecord from a room.

        Raises:
            RoomNotFound: If the room does not exist.
            FileNotFound: If the room has no record with *storage_key*.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                if not self._room_exists(conn, room_code):
                    raise RoomNotFound(f"Room not found: {room_code}")
                row = conn.execute(
                    "SELECT 1 FROM room_files WHERE room_code = ? AND storage_key = ?",
                    [room_code, storage_key],
                ).fetchone()
                if row is None:
                    raise FileNotFound(f"File not found: {storage_key}")
                conn.execute(
                    "DELETE FROM room_files WHERE room_code = ? AND storage_key = ?",
                    [room_code, storage_key],
                )
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to remove file {storage_key}: {exc}") from exc

    def remove_files(self, room_code: str, storage_keys: Iterable[str]) -> int:
        """Remove several FileRecords from a room, leaving every other record intact.

        Only the named keys are deleted, so files appended after the caller
        read the room are kept.

        Returns:
            Number of records removed.
        """
        keys = list(storage_keys)
        if not keys:
            return 0
        placeholders = ", ".join("?" for _ in keys)
        with self._lock:
            conn = self._get_connection()
            try:
                if not self._room_exists(conn, room_code):
                    raise RoomNotFound(f"Room not found: {room_code}")
                count = conn.execute(
                    f"SELECT count(*) FROM room_files "
                    f"WHERE room_code = ? AND storage_key IN ({placeholders})",
                    [room_code, *keys],
                ).fetchone()[0]
                conn.execute(
                    f"DELETE FROM room_files "
                    f"WHERE room_code = ? AND storage_key IN ({placeholders})",
                    [room_code, *keys],
                )
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to update files of {room_code}: {exc}") from exc
        return count

    def find_file(self, storage_key: str) -> Optional[Tuple[str, FileRecord]]:
        """Return ``(room_code, record)`` owning *storage_key*, or None."""
        with self._lock:
            try:
                row = self._get_connection().execute(
                    f"SELECT room_code, {_FILE_COLUMNS} FROM room_files WHERE storage_key = ?",
                    [storage_key],
                ).fetchone()
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to look up {storage_key}: {exc}") from exc
        if row is None:
            return None
        return row[0], _file_from_row(row[1:])

    def clear_all_files(self) -> int:
        """Empty every room's file index; texts are untouched.

        Returns:
            Number of records removed.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                count = conn.execute("SELECT count(*) FROM room_files").fetchone()[0]
                conn.execute("DELETE FROM room_files")
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to clear files: {exc}") from exc
        logger.warning("[RoomStore] Cleared %d file records across all rooms", count)
        return count

    # -----------------------------------------------------------------------
    # Text
    # -----------------------------------------------------------------------

    def append_text(self, room_code: str, revision: TextRevision) -> None:
        """Append a TextRevision to a room's text log.

        Raises:
            RoomNotFound: If the room does not exist.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                if not self._room_exists(conn, room_code):
                    raise RoomNotFound(f"Room not found: {room_code}")
                conn.execute(
                    """
                    INSERT INTO room_texts (room_code, content, added_by, added_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [room_code, revision.content, revision.addedBy, _to_db(revision.addedAt)],
                )
            except duckdb.Error as exc:
                raise StorageFailure(f"Failed to append text to {room_code}: {exc}") from exc
