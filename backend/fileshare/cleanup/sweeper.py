"""Background expiry sweeper.

Every ``interval_seconds`` the sweeper walks all rooms and removes files older
than ``retention_seconds``, measured from each FileRecord's upload time. Rooms
whose policy exempts them from cleanup (the permanent vault and the admin
room) are skipped entirely.

The sweep is best-effort: a failure in one room is logged and the sweep moves
on to the next room, and a failed sweep is simply retried on the next tick.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fileshare.blobs.store import BlobStore
from fileshare.errors import BlobNotFound, FileShareError
from fileshare.hub.manager import BroadcastHub, HubEvent
from fileshare.rooms.policy import RoomPolicy
from fileshare.rooms.schemas import FileRecord, Room
from fileshare.rooms.store import RoomStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    rooms_scanned: int = 0
    rooms_skipped: int = 0
    files_expired: int = 0
    blobs_missing: int = 0
    rooms_failed: int = 0


class CleanupSweeper:
    """Periodic task that reclaims expired files."""

    def __init__(
        self,
        rooms: RoomStore,
        blobs: BlobStore,
        hub: BroadcastHub,
        policy: RoomPolicy,
        interval_seconds: int = 3600,
        retention_seconds: int = 86400,
    ) -> None:
        self._rooms = rooms
        self._blobs = blobs
        self._hub = hub
        self._policy = policy
        self._interval = interval_seconds
        self._retention = timedelta(seconds=retention_seconds)
        self._sweep_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the background sweep task."""
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "[Sweeper] Started (interval=%ss, retention=%ss)",
            self._interval,
            int(self._retention.total_seconds()),
        )

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("[Sweeper] Stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("[Sweeper] Sweep failed; retrying next tick")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def _partition(self, room: Room, now: datetime):
        expired: List[FileRecord] = []
        kept: List[FileRecord] = []
        for record in room.files:
            if now - record.uploadTime >= self._retention:
                expired.append(record)
            else:
                kept.append(record)
        return expired, kept

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run a single sweep over every room.

        Args:
            now: Reference time (UTC); defaults to the current time.

        Returns:
            Counts of what the sweep did.
        """
        now = now or datetime.now(timezone.utc)
        report = SweepReport()
        logger.info("[Sweeper] Running cleanup job")

        for room in self._rooms.find_all():
            report.rooms_scanned += 1
            if self._policy.is_exempt_from_cleanup(room.roomCode):
                report.rooms_skipped += 1
                continue

            expired, _kept = self._partition(room, now)
            if not expired:
                continue

            removable: List[str] = []
            for record in expired:
                try:
                    await self._blobs.delete(record.storageKey)
                    removable.append(record.storageKey)
                    logger.info(
                        "[Sweeper] Auto-deleted %s (%s) from room %s",
                        record.originalName, record.storageKey, room.roomCode,
                    )
                except BlobNotFound:
                    report.blobs_missing += 1
                    removable.append(record.storageKey)
                    logger.warning(
                        "[Inconsistent] Expired record %s in room %s had no blob",
                        record.storageKey, room.roomCode,
                    )
                except FileShareError as exc:
                    # Record stays so the next tick retries the blob.
                    logger.error(
                        "[Sweeper] Could not delete blob %s: %s", record.storageKey, exc
                    )

            if not removable:
                continue

            try:
                removed = self._rooms.remove_files(room.roomCode, removable)
            except FileShareError as exc:
                report.rooms_failed += 1
                logger.error(
                    "[Sweeper] Failed to update room %s: %s", room.roomCode, exc
                )
                continue

            report.files_expired += removed
            self._hub.broadcast_to_room(
                room.roomCode,
                HubEvent.FILES_EXPIRED,
                {"roomCode": room.roomCode, "remaining": len(room.files) - len(removable)},
            )

        logger.info(
            "[Sweeper] Done: scanned=%d skipped=%d expired=%d missing=%d failed=%d",
            report.rooms_scanned,
            report.rooms_skipped,
            report.files_expired,
            report.blobs_missing,
            report.rooms_failed,
        )
        return report
