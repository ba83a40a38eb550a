"""FastAPI router for room, file and text endpoints.

All endpoints live under /api. Domain errors raised by the room service are
turned into ``{"success": false, "error": ...}`` responses by the exception
handler registered in main.py, so the handlers here only shape successes.
"""
import logging
from typing import AsyncIterator, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from starlette.datastructures import UploadFile as StarletteUploadFile

from fileshare.config import StorageSettings
from fileshare.errors import PayloadTooLarge

from .schemas import JoinRoomRequest, UpdateTextRequest, UploadSource
from .service import RoomService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["rooms"])

# Allowance for multipart boundaries and part headers on top of the file bytes
MULTIPART_OVERHEAD = 64 * 1024


def get_room_service(request: Request) -> RoomService:
    return request.app.state.room_service


async def _iter_upload(file: StarletteUploadFile, chunk_size: int) -> AsyncIterator[bytes]:
    """Read an uploaded file sequentially without loading it whole."""
    while True:
        chunk = await file.read(chunk_size)
        if not chunk:
            break
        yield chunk


def _content_disposition(filename: str) -> str:
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


@router.post("/rooms")
async def create_or_join_room(
    body: JoinRoomRequest,
    svc: RoomService = Depends(get_room_service),
) -> dict:
    """Create a room if needed and return its view."""
    view = svc.create_or_join_room(body.roomCode)
    return {"success": True, **view.model_dump(mode="json")}


@router.get("/rooms/{room_code}")
async def get_room(
    room_code: str,
    svc: RoomService = Depends(get_room_service),
) -> dict:
    """Return an existing room's view (404 if the room was never created)."""
    view = svc.get_room(room_code)
    return {"success": True, **view.model_dump(mode="json")}


def _check_content_length(request: Request, storage: StorageSettings) -> None:
    """Refuse a body that cannot fit before any of it is read.

    The multipart parser spools every part to disk, so the declared
    Content-Length is checked first. Requests without one fall through to
    the per-file checks after parsing.
    """
    declared = request.headers.get("content-length")
    if declared is None or not declared.isdigit():
        return
    limit = storage.max_file_size_bytes * storage.max_files_per_upload + MULTIPART_OVERHEAD
    if int(declared) > limit:
        raise PayloadTooLarge(
            f"Request body ({declared} bytes) exceeds upload limit ({limit} bytes)"
        )


@router.post("/rooms/{room_code}/upload")
async def upload_files(
    request: Request,
    room_code: str,
    svc: RoomService = Depends(get_room_service),
) -> dict:
    """Upload one or more files (multipart field ``files``) to a room.

    Files are streamed into the blob store in chunks. Per-file failures are
    reported in ``failed`` next to the committed files. The body size is
    checked before the form is parsed.

    Raises:
        400: No files in the request, or too many.
        404: Room does not exist.
        413: The body or a file is at or over the size limit.
    """
    storage = request.app.state.settings.storage
    _check_content_length(request, storage)

    async with request.form(max_files=storage.max_files_per_upload) as form:
        files = [f for f in form.getlist("files") if isinstance(f, StarletteUploadFile)]
        if not files:
            raise HTTPException(status_code=400, detail="No files uploaded")
        sources = [
            UploadSource(
                name=f.filename or "unnamed",
                chunks=_iter_upload(f, storage.chunk_size),
                size_hint=f.size,
            )
            for f in files
        ]
        result = await svc.upload_files(room_code, sources)
    return {
        "success": not result.failed,
        "files": [r.model_dump(mode="json") for r in result.committed],
        "failed": [f.model_dump() for f in result.failed],
    }


@router.get("/files/{storage_key}")
async def download_file(
    storage_key: str,
    svc: RoomService = Depends(get_room_service),
) -> StreamingResponse:
    """Stream a file back with its original name as the suggested filename."""
    result = await svc.download_file(storage_key)
    return StreamingResponse(
        result.chunks,
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": _content_disposition(result.filename),
            "Content-Length": str(result.size),
        },
    )


@router.delete("/rooms/{room_code}/files/{storage_key}")
async def delete_file(
    room_code: str,
    storage_key: str,
    origin: Optional[str] = None,
    svc: RoomService = Depends(get_room_service),
) -> dict:
    """Delete a file from a room.

    ``origin`` is the caller's connection ID; it is excluded from the
    ``file-deleted`` broadcast since the caller already knows.
    """
    await svc.delete_file(room_code, storage_key, origin=origin)
    return {"success": True, "message": "File deleted"}


@router.delete("/admin/clear-all/{room_code}")
async def clear_all(
    room_code: str,
    svc: RoomService = Depends(get_room_service),
) -> dict:
    """Delete every file in every room. Only the admin room may call this."""
    cleared = await svc.bulk_clear(room_code)
    return {"success": True, "message": "All files cleared", "cleared": cleared}


@router.post("/rooms/{room_code}/text")
async def update_text(
    room_code: str,
    body: UpdateTextRequest,
    svc: RoomService = Depends(get_room_service),
) -> dict:
    """Replace the room's shared text (appends a new revision)."""
    revision = svc.update_text(room_code, body.content, body.authorId)
    return {"success": True, "text": revision.model_dump(mode="json")}
