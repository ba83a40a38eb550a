"""Streaming blob store on the local filesystem.

Blobs live under ``{blob_dir}/data/{key}`` with a JSON metadata sidecar in
``{blob_dir}/meta/{key}.json``. Uploads are streamed chunk by chunk into
``{blob_dir}/tmp`` and renamed into place only once every byte has been
written, so a failed ``put`` never leaves a readable blob behind. Reads return
a lazy chunk iterator instead of loading the file into memory.

All file I/O goes through aiofiles so a slow upload or download never stalls
the event loop for other connections.
"""
import asyncio
import json
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import aiofiles
import aiofiles.os

from fileshare.errors import BlobNotFound, PayloadTooLarge, StorageFailure

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class BlobHandle:
    """A stored blob ready to be streamed out."""

    def __init__(self, store: "BlobStore", key: str, size: int, metadata: Dict[str, str]) -> None:
        self._store = store
        self.key = key
        self.size = size
        self.metadata = metadata

    def iter_chunks(self) -> AsyncIterator[bytes]:
        return self._store._read_chunks(self.key)


class BlobStore:
    """Filesystem blob store with streaming put/get and atomic commit."""

    def __init__(
        self,
        blob_dir: str,
        max_size_bytes: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._root = Path(blob_dir)
        self._max_size = max_size_bytes
        self._chunk_size = chunk_size
        self._ensure_dirs()

    @property
    def max_size_bytes(self) -> int:
        return self._max_size

    def _ensure_dirs(self) -> None:
        for sub in ("data", "meta", "tmp"):
            (self._root / sub).mkdir(parents=True, exist_ok=True)

    def _data_path(self, key: str) -> Path:
        # Keys are flat names; anything that could escape the store is simply absent.
        if not key or key.startswith(".") or "/" in key or "\\" in key or "\x00" in key:
            raise BlobNotFound(f"Blob not found: {key}")
        return self._root / "data" / key

    def _meta_path(self, key: str) -> Path:
        return self._root / "meta" / f"{key}.json"

    def too_large(self, size: int) -> bool:
        return size >= self._max_size

    # -----------------------------------------------------------------------
    # Write
    # -----------------------------------------------------------------------

    async def put(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        metadata: Optional[Dict[str, str]] = None,
        size_hint: Optional[int] = None,
    ) -> int:
        """Stream *chunks* into the store under *key*.

        Args:
            key: Storage key (must not already exist).
            chunks: Async iterator of file bytes, consumed once.
            metadata: Side metadata such as originalName and roomCode.
            size_hint: Declared size, checked before anything is written.

        Returns:
            Number of bytes committed.

        Raises:
            PayloadTooLarge: If the blob reaches the size ceiling.
            StorageFailure: If the write or commit fails, or the source stream
                raises. Nothing is left behind in either case.
        """
        if size_hint is not None and self.too_large(size_hint):
            raise PayloadTooLarge(
                f"File size ({size_hint} bytes) exceeds limit ({self._max_size} bytes)"
            )

        data_path = self._data_path(key)
        if await aiofiles.os.path.exists(data_path):
            raise StorageFailure(f"Blob already exists: {key}")

        tmp_path = self._root / "tmp" / f"{key}.{uuid.uuid4().hex}.part"
        written = 0
        committed = False
        try:
            async with aiofiles.open(tmp_path, "wb") as fh:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    written += len(chunk)
                    if self.too_large(written):
                        raise PayloadTooLarge(
                            f"File exceeds limit ({self._max_size} bytes)"
                        )
                    await fh.write(chunk)

            async with aiofiles.open(self._meta_path(key), "w", encoding="utf-8") as fh:
                await fh.write(json.dumps(metadata or {}))
            await aiofiles.os.replace(tmp_path, data_path)
            committed = True
        except PayloadTooLarge:
            raise
        except OSError as exc:
            logger.error("[BlobStore] Write failed for %s: %s", key, exc)
            raise StorageFailure(f"Failed to store blob {key}: {exc}") from exc
        except Exception as exc:
            # The source stream broke (client went away, parser error, ...)
            logger.error("[BlobStore] Upload stream for %s aborted: %r", key, exc)
            raise StorageFailure(f"Upload of {key} aborted: {exc}") from exc
        finally:
            # Also runs on cancellation, which is re-raised untouched.
            if not committed:
                await self._discard(tmp_path)
                await self._discard(self._meta_path(key))

        logger.info("[BlobStore] Stored %s (%d bytes)", key, written)
        return written

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("[BlobStore] Could not remove %s: %s", path, exc)

    # -----------------------------------------------------------------------
    # Read
    # -----------------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        try:
            return await aiofiles.os.path.exists(self._data_path(key))
        except BlobNotFound:
            return False

    async def get(self, key: str) -> BlobHandle:
        """Look up a blob without reading its content.

        Raises:
            BlobNotFound: If no blob is stored under *key*.
        """
        data_path = self._data_path(key)
        try:
            stat = await aiofiles.os.stat(data_path)
        except FileNotFoundError:
            raise BlobNotFound(f"Blob not found: {key}")
        except OSError as exc:
            raise StorageFailure(f"Failed to read blob {key}: {exc}") from exc
        return BlobHandle(self, key, stat.st_size, await self._read_metadata(key))

    async def _read_metadata(self, key: str) -> Dict[str, str]:
        try:
            async with aiofiles.open(self._meta_path(key), "r", encoding="utf-8") as fh:
                return json.loads(await fh.read())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("[BlobStore] Unreadable metadata for %s: %s", key, exc)
            return {}

    async def _read_chunks(self, key: str) -> AsyncIterator[bytes]:
        try:
            async with aiofiles.open(self._data_path(key), "rb") as fh:
                while True:
                    chunk = await fh.read(self._chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except FileNotFoundError:
            raise BlobNotFound(f"Blob not found: {key}")

    async def list_keys(self) -> List[str]:
        names = await asyncio.to_thread(os.listdir, self._root / "data")
        return sorted(names)

    # -----------------------------------------------------------------------
    # Delete
    # -----------------------------------------------------------------------

    async def delete(self, key: str) -> None:
        """Remove a blob and its metadata.

        Raises:
            BlobNotFound: If no blob is stored under *key*.
            StorageFailure: If the file could not be removed.
        """
        data_path = self._data_path(key)
        try:
            await aiofiles.os.remove(data_path)
        except FileNotFoundError:
            raise BlobNotFound(f"Blob not found: {key}")
        except OSError as exc:
            logger.error("[BlobStore] Delete failed for %s: %s", key, exc)
            raise StorageFailure(f"Failed to delete blob {key}: {exc}") from exc
        await self._discard(self._meta_path(key))
        logger.info("[BlobStore] Deleted %s", key)

    async def drop_all(self) -> None:
        """Delete every blob and reinitialize an empty store."""
        try:
            await asyncio.to_thread(shutil.rmtree, self._root, True)
            await asyncio.to_thread(self._ensure_dirs)
        except OSError as exc:
            raise StorageFailure(f"Failed to drop blob store: {exc}") from exc
        logger.warning("[BlobStore] All blobs dropped from %s", self._root)
