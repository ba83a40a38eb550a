"""Pydantic schemas for rooms, their file index and their shared text.

Field names follow the camelCase wire format consumed by the browser client,
the same way the chat models do, so records can be returned from routes and
pushed through the hub with a plain ``model_dump(mode="json")``.
"""
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(BaseModel):
    """Metadata entry linking a room to a stored blob.

    ``storageKey`` is unique across the whole blob store; ``originalName`` is
    whatever the uploader called the file and may repeat.
    """
    storageKey: str = Field(..., description="Blob store key (globally unique)")
    originalName: str = Field(..., description="User-supplied filename")
    uploadTime: datetime = Field(default_factory=utcnow, description="Upload timestamp (UTC)")
    fileSize: int = Field(..., ge=0, description="File size in bytes")


class TextRevision(BaseModel):
    """One entry in a room's shared-text history."""
    content: str = Field(..., description="Full text content")
    addedBy: str = Field(..., description="Connection ID of the author")
    addedAt: datetime = Field(default_factory=utcnow, description="Edit timestamp (UTC)")


class Room(BaseModel):
    """A room with its file index and append-only text log.

    Only the last text revision is ever displayed; the rest is history that
    grows without bound.
    """
    roomCode: str = Field(..., description="Upper-case room code")
    createdAt: datetime = Field(default_factory=utcnow, description="Creation timestamp (UTC)")
    files: List[FileRecord] = Field(default_factory=list)
    texts: List[TextRevision] = Field(default_factory=list)

    @property
    def current_text(self) -> str:
        return self.texts[-1].content if self.texts else ""


class RoomView(BaseModel):
    """What a client sees when it opens a room.

    For the admin room ``files`` is the union of every room's files while
    ``room.files`` still holds only the admin room's own uploads.
    """
    room: Room
    files: List[FileRecord] = Field(default_factory=list)
    currentText: str = ""
    isAdminView: bool = False


class FailedUpload(BaseModel):
    """A single file from an upload batch that was not committed."""
    originalName: str
    error: str


class UploadResult(BaseModel):
    committed: List[FileRecord] = Field(default_factory=list)
    failed: List[FailedUpload] = Field(default_factory=list)


class UploadSource:
    """One file of an upload batch, read sequentially in chunks.

    Attributes:
        name: Original filename.
        chunks: Async iterator producing the file bytes.
        size_hint: Declared size in bytes, when the transport knows it.
    """

    def __init__(
        self,
        name: str,
        chunks: AsyncIterator[bytes],
        size_hint: Optional[int] = None,
    ) -> None:
        self.name = name or "unnamed"
        self.chunks = chunks
        self.size_hint = size_hint


class DownloadResult:
    """A resolved download: the filename to suggest plus the lazy byte stream."""

    def __init__(self, filename: str, size: int, chunks: AsyncIterator[bytes]) -> None:
        self.filename = filename
        self.size = size
        self.chunks = chunks


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class JoinRoomRequest(BaseModel):
    roomCode: str = Field(..., description="Room code to create or join")


class UpdateTextRequest(BaseModel):
    content: str = Field(..., description="New shared text")
    authorId: str = Field(default="http", description="Connection ID of the author")
