"""Tests for the background expiry sweeper."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeWebSocket, chunks_of
from fileshare.cleanup.sweeper import CleanupSweeper
from fileshare.errors import StorageFailure
from fileshare.rooms.schemas import FileRecord

DAY = 24 * 60 * 60
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sweeper(room_store, blob_store, hub, policy):
    return CleanupSweeper(
        rooms=room_store,
        blobs=blob_store,
        hub=hub,
        policy=policy,
        interval_seconds=3600,
        retention_seconds=DAY,
    )


async def _add_file(room_store, blob_store, room_code: str, key: str, age: timedelta,
                    with_blob: bool = True) -> None:
    room_store.find_or_create(room_code)
    if with_blob:
        await blob_store.put(key, chunks_of(b"content"))
    room_store.append_file(
        room_code,
        FileRecord(storageKey=key, originalName=f"{key}.txt", fileSize=7, uploadTime=NOW - age),
    )


def _keys(room_store, room_code):
    return [f.storageKey for f in room_store.find(room_code).files]


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_expired_files_removed_fresh_kept(self, sweeper, room_store, blob_store):
        await _add_file(room_store, blob_store, "AB12CD", "old", timedelta(hours=25))
        await _add_file(room_store, blob_store, "AB12CD", "new", timedelta(hours=1))

        report = await sweeper.run_once(now=NOW)

        assert report.files_expired == 1
        assert _keys(room_store, "AB12CD") == ["new"]
        assert not await blob_store.exists("old")
        assert await blob_store.exists("new")

    @pytest.mark.asyncio
    async def test_age_exactly_at_retention_expires(self, sweeper, room_store, blob_store):
        await _add_file(room_store, blob_store, "AB12CD", "edge", timedelta(seconds=DAY))
        await sweeper.run_once(now=NOW)
        assert _keys(room_store, "AB12CD") == []

    @pytest.mark.asyncio
    async def test_reserved_rooms_never_expire(self, sweeper, room_store, blob_store):
        await _add_file(room_store, blob_store, "RAM123", "vault", timedelta(days=30))
        await _add_file(room_store, blob_store, "RAMRAM", "admin", timedelta(days=30))

        report = await sweeper.run_once(now=NOW)

        assert report.rooms_skipped == 2
        assert report.files_expired == 0
        assert _keys(room_store, "RAM123") == ["vault"]
        assert _keys(room_store, "RAMRAM") == ["admin"]
        assert await blob_store.exists("vault")

    @pytest.mark.asyncio
    async def test_missing_blob_still_clears_record(self, sweeper, room_store, blob_store):
        await _add_file(room_store, blob_store, "AB12CD", "ghost", timedelta(days=2),
                        with_blob=False)

        report = await sweeper.run_once(now=NOW)

        assert report.blobs_missing == 1
        assert report.files_expired == 1
        assert _keys(room_store, "AB12CD") == []

    @pytest.mark.asyncio
    async def test_blob_delete_failure_keeps_record_for_retry(
        self, sweeper, room_store, blob_store, monkeypatch
    ):
        await _add_file(room_store, blob_store, "AB12CD", "stuck", timedelta(days=2))
        await _add_file(room_store, blob_store, "AB12CD", "gone", timedelta(days=2))
        real_delete = blob_store.delete

        async def flaky_delete(key):
            if key == "stuck":
                raise StorageFailure("device busy")
            await real_delete(key)

        monkeypatch.setattr(blob_store, "delete", flaky_delete)
        report = await sweeper.run_once(now=NOW)

        assert report.files_expired == 1
        assert _keys(room_store, "AB12CD") == ["stuck"]

        monkeypatch.setattr(blob_store, "delete", real_delete)
        await sweeper.run_once(now=NOW)
        assert _keys(room_store, "AB12CD") == []

    @pytest.mark.asyncio
    async def test_failing_room_does_not_stop_sweep(
        self, sweeper, room_store, blob_store, monkeypatch
    ):
        await _add_file(room_store, blob_store, "AB12CD", "a-old", timedelta(days=2))
        await _add_file(room_store, blob_store, "XY99ZZ", "x-old", timedelta(days=2))
        real_remove = room_store.remove_files

        def flaky_remove(room_code, keys):
            if room_code == "AB12CD":
                raise StorageFailure("write failed")
            return real_remove(room_code, keys)

        monkeypatch.setattr(room_store, "remove_files", flaky_remove)
        report = await sweeper.run_once(now=NOW)

        assert report.rooms_failed == 1
        assert report.files_expired == 1
        assert _keys(room_store, "XY99ZZ") == []

    @pytest.mark.asyncio
    async def test_members_notified_with_remaining_count(
        self, sweeper, room_store, blob_store, hub
    ):
        await _add_file(room_store, blob_store, "AB12CD", "old", timedelta(days=2))
        await _add_file(room_store, blob_store, "AB12CD", "new", timedelta(minutes=5))
        await _add_file(room_store, blob_store, "XY99ZZ", "fresh", timedelta(minutes=5))
        ws = FakeWebSocket()
        cid = await hub.connect(ws)
        hub.join(cid, "AB12CD")
        other = FakeWebSocket()
        other_id = await hub.connect(other)
        hub.join(other_id, "XY99ZZ")

        await sweeper.run_once(now=NOW)
        await hub.flush()

        assert ws.of_type("files-expired") == [
            {"type": "files-expired", "data": {"roomCode": "AB12CD", "remaining": 1}}
        ]
        assert other.of_type("files-expired") == []
        await hub.close()

    @pytest.mark.asyncio
    async def test_empty_store(self, sweeper):
        report = await sweeper.run_once(now=NOW)
        assert report.rooms_scanned == 0
        assert report.files_expired == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeper):
        assert not sweeper.running
        await sweeper.start()
        assert sweeper.running
        await sweeper.stop()
        assert not sweeper.running

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self, sweeper):
        await sweeper.start()
        task = sweeper._sweep_task
        await sweeper.start()
        assert sweeper._sweep_task is task
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_loop_sweeps_on_each_tick(self, room_store, blob_store, hub, policy):
        sweeper = CleanupSweeper(
            rooms=room_store, blobs=blob_store, hub=hub, policy=policy,
            interval_seconds=0, retention_seconds=DAY,
        )
        room_store.find_or_create("AB12CD")
        await blob_store.put("old", chunks_of(b"x"))
        room_store.append_file(
            "AB12CD",
            FileRecord(
                storageKey="old",
                originalName="old.txt",
                fileSize=1,
                uploadTime=datetime.now(timezone.utc) - timedelta(days=2),
            ),
        )

        await sweeper.start()
        for _ in range(50):
            if not room_store.find("AB12CD").files:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert room_store.find("AB12CD").files == []
