"""Room service: coordinates the blob store, the room store and the hub.

Every client-facing operation lives here. File uploads and deletes touch the
blob store and the room store and then notify room members through the
broadcast hub; text edits only touch the room store and the hub.

The blob store and the room store are not transactional with respect to each
other. The ordering rules below keep the visible state sane:
    - a FileRecord is appended only after its blob write is confirmed
    - a FileRecord is removed only after its blob delete succeeded
      (or the blob was already gone)
"""
import logging
import random
import re
import time
from pathlib import PurePath
from typing import Optional, Sequence

from fileshare.blobs.store import BlobStore
from fileshare.errors import (
    BlobNotFound,
    FileNotFound,
    FileShareError,
    PayloadTooLarge,
    StorageFailure,
)
from fileshare.hub.manager import BroadcastHub, HubEvent

from .policy import RoomPolicy
from .schemas import (
    DownloadResult,
    FailedUpload,
    FileRecord,
    Room,
    RoomView,
    TextRevision,
    UploadResult,
    UploadSource,
)
from .store import RoomStore

logger = logging.getLogger(__name__)

# Longest filename fragment kept inside a storage key
MAX_KEY_NAME_LENGTH = 120

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def generate_storage_key(original_name: str) -> str:
    """Build a globally unique storage key for an upload.

    Combines a millisecond timestamp, a random nine-digit number and a
    filesystem-safe form of the original name, e.g.
    ``1718000000000-482913377-report.pdf``.
    """
    base = PurePath(original_name.replace("\\", "/")).name
    safe = _UNSAFE_KEY_CHARS.sub("_", base).lstrip(".")[:MAX_KEY_NAME_LENGTH] or "file"
    return f"{int(time.time() * 1000)}-{random.randint(0, 999_999_999):09d}-{safe}"


class RoomService:
    """Client-facing room operations."""

    def __init__(
        self,
        blobs: BlobStore,
        rooms: RoomStore,
        hub: BroadcastHub,
        policy: RoomPolicy,
    ) -> None:
        self.blobs = blobs
        self.rooms = rooms
        self.hub = hub
        self.policy = policy

    # -----------------------------------------------------------------------
    # Room read / join
    # -----------------------------------------------------------------------

    def _view(self, room: Room) -> RoomView:
        if self.policy.aggregates_all_rooms(room.roomCode):
            files = [f for r in self.rooms.find_all() for f in r.files]
            return RoomView(
                room=room,
                files=files,
                currentText=room.current_text,
                isAdminView=True,
            )
        return RoomView(room=room, files=list(room.files), currentText=room.current_text)

    def create_or_join_room(self, room_code: str) -> RoomView:
        """Return a room's view, creating the room on first use."""
        code = self.policy.normalize(room_code)
        room = self.rooms.find_or_create(code)
        return self._view(room)

    def get_room(self, room_code: str) -> RoomView:
        """Return an existing room's view.

        Raises:
            RoomNotFound: If the room has never been created.
        """
        code = self.policy.normalize(room_code)
        return self._view(self.rooms.find(code))

    # -----------------------------------------------------------------------
    # Upload
    # -----------------------------------------------------------------------

    async def upload_files(
        self, room_code: str, files: Sequence[UploadSource]
    ) -> UploadResult:
        """Stream a batch of files into a room.

        Failures are isolated per file: a file whose blob write or record
        append fails is reported in ``failed`` and the rest of the batch
        continues.

        A file with no declared size that turns out to reach the ceiling
        while streaming is one of those per-file failures; it is listed in
        ``failed`` and does not raise.

        Raises:
            RoomNotFound: If the room does not exist.
            PayloadTooLarge: If any file declares a size at or over the ceiling.
        """
        code = self.policy.normalize(room_code)
        self.rooms.find(code)

        for source in files:
            if source.size_hint is not None and self.blobs.too_large(source.size_hint):
                raise PayloadTooLarge(
                    f"{source.name} ({source.size_hint} bytes) exceeds limit "
                    f"of {self.blobs.max_size_bytes} bytes"
                )

        result = UploadResult()
        try:
            for source in files:
                record = await self._upload_one(code, source, result)
                if record is not None:
                    result.committed.append(record)
        finally:
            # Records already appended stay visible, so announce them even if
            # the request is being torn down.
            if result.committed:
                self.hub.broadcast_to_room(
                    code,
                    HubEvent.NEW_FILES,
                    {"files": [r.model_dump(mode="json") for r in result.committed]},
                )
        logger.info(
            f"[Upload] Room {code}: {len(result.committed)} committed, "
            f"{len(result.failed)} failed"
        )
        return result

    async def _upload_one(
        self, room_code: str, source: UploadSource, result: UploadResult
    ) -> Optional[FileRecord]:
        key = generate_storage_key(source.name)
        try:
            size = await self.blobs.put(
                key,
                source.chunks,
                {"originalName": source.name, "roomCode": room_code},
                size_hint=source.size_hint,
            )
        except (PayloadTooLarge, StorageFailure) as e:
            logger.warning(f"[Upload] Blob write failed for {source.name}: {e.message}")
            result.failed.append(FailedUpload(originalName=source.name, error=e.message))
            return None

        record = FileRecord(storageKey=key, originalName=source.name, fileSize=size)
        try:
            self.rooms.append_file(room_code, record)
        except FileShareError as e:
            logger.error(f"[Upload] Could not record {key} in {room_code}: {e.message}")
            result.failed.append(FailedUpload(originalName=source.name, error=e.message))
            try:
                await self.blobs.delete(key)
            except FileShareError as cleanup_error:
                logger.warning(f"[Upload] Orphaned blob {key} left behind: {cleanup_error}")
            return None
        return record

    # -----------------------------------------------------------------------
    # Download
    # -----------------------------------------------------------------------

    async def download_file(self, storage_key: str) -> DownloadResult:
        """Resolve a storage key to a filename and a lazy byte stream.

        The filename comes from the owning FileRecord. A blob nobody
        references is still served, under its storage key.

        Raises:
            FileNotFound: If no blob is stored under the key.
        """
        owner = self.rooms.find_file(storage_key)
        try:
            blob = await self.blobs.get(storage_key)
        except BlobNotFound:
            if owner is not None:
                logger.warning(
                    f"[Inconsistent] Record {storage_key} in room {owner[0]} has no blob"
                )
            raise FileNotFound(f"File not found: {storage_key}")

        if owner is not None:
            filename = owner[1].originalName
        else:
            logger.warning(f"[Inconsistent] Blob {storage_key} has no owning record")
            filename = storage_key
        return DownloadResult(filename=filename, size=blob.size, chunks=blob.iter_chunks())

    # -----------------------------------------------------------------------
    # Delete
    # -----------------------------------------------------------------------

    async def delete_file(
        self, room_code: str, storage_key: str, origin: Optional[str] = None
    ) -> None:
        """Delete a file's blob and then its record, and notify the room.

        A blob delete failure aborts the operation with the record intact.
        A blob that is already gone only means the record was dangling, so
        the record is still removed.

        The admin room may delete any file it lists, whichever room owns
        it; the owning room and the admin room are both notified.

        Raises:
            RoomNotFound: If the room does not exist.
            FileNotFound: If the room has no such file.
            StorageFailure: If the blob could not be deleted.
        """
        code = self.policy.normalize(room_code)
        room = self.rooms.find(code)
        if self.policy.aggregates_all_rooms(code):
            owner = self.rooms.find_file(storage_key)
            if owner is None:
                raise FileNotFound(f"File not found: {storage_key}")
            owner_code = owner[0]
        elif any(f.storageKey == storage_key for f in room.files):
            owner_code = code
        else:
            raise FileNotFound(f"File not found: {storage_key}")

        try:
            await self.blobs.delete(storage_key)
        except BlobNotFound:
            logger.warning(
                f"[Inconsistent] Blob {storage_key} already missing; "
                f"removing record from {owner_code}"
            )

        self.rooms.remove_file(owner_code, storage_key)
        payload = {"roomCode": owner_code, "storageKey": storage_key}
        self.hub.broadcast_to_room(owner_code, HubEvent.FILE_DELETED, payload, exclude=origin)
        if owner_code != code:
            self.hub.broadcast_to_room(code, HubEvent.FILE_DELETED, payload, exclude=origin)
        logger.info(f"[Delete] Removed {storage_key} from room {owner_code} (via {code})")

    # -----------------------------------------------------------------------
    # Bulk clear
    # -----------------------------------------------------------------------

    async def bulk_clear(self, room_code: str) -> int:
        """Drop every blob and every room's file list.

        Only the admin room may do this. Texts are untouched.

        Returns:
            Number of file records cleared.

        Raises:
            Unauthorized: If *room_code* is not the admin room.
        """
        code = (room_code or "").strip().upper()
        self.policy.authorize_bulk_clear(code)
        await self.blobs.drop_all()
        cleared = self.rooms.clear_all_files()
        self.hub.broadcast_global(HubEvent.ALL_FILES_CLEARED)
        logger.warning(f"[BulkClear] Room {code} cleared {cleared} files")
        return cleared

    # -----------------------------------------------------------------------
    # Text
    # -----------------------------------------------------------------------

    def update_text(self, room_code: str, content: str, author: str) -> TextRevision:
        """Append a text revision and push it to the room's other members.

        Raises:
            RoomNotFound: If the room does not exist.
        """
        code = self.policy.normalize(room_code)
        revision = TextRevision(content=content, addedBy=author)
        self.rooms.append_text(code, revision)
        self.hub.broadcast_to_room(
            code,
            HubEvent.RECEIVE_TEXT,
            {"roomCode": code, "text": content},
            exclude=author,
        )
        return revision
