"""Shared test fixtures and configuration for backend tests."""
from typing import AsyncIterator, List

import pytest
from fastapi.testclient import TestClient

from fileshare.blobs.store import BlobStore
from fileshare.config import AppSettings, CleanupSettings, StorageSettings
from fileshare.hub.manager import BroadcastHub
from fileshare.main import create_app
from fileshare.rooms.policy import RoomPolicy
from fileshare.rooms.service import RoomService
from fileshare.rooms.store import RoomStore

# Small ceiling so size-limit tests do not need megabytes of payload
TEST_MAX_FILE_SIZE = 64 * 1024


class FakeWebSocket:
    """Stands in for a Starlette WebSocket inside the hub."""

    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.sent: List[dict] = []
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, event_type: str) -> List[dict]:
        return [m for m in self.sent if m["type"] == event_type]


async def chunks_of(data: bytes, size: int = 1024) -> AsyncIterator[bytes]:
    """Yield *data* in fixed-size chunks, like an upload stream would."""
    for start in range(0, len(data), size):
        yield data[start:start + size]


@pytest.fixture
def settings(tmp_path):
    """AppSettings rooted in a per-test temp directory, sweeper off."""
    return AppSettings(
        storage=StorageSettings(
            blob_dir=str(tmp_path / "blobs"),
            db_path=str(tmp_path / "rooms.duckdb"),
            max_file_size_bytes=TEST_MAX_FILE_SIZE,
            chunk_size=4096,
        ),
        cleanup=CleanupSettings(enabled=False),
    )


@pytest.fixture
def policy(settings):
    return RoomPolicy(settings.rooms)


@pytest.fixture
def blob_store(tmp_path):
    return BlobStore(
        blob_dir=str(tmp_path / "blobs"),
        max_size_bytes=TEST_MAX_FILE_SIZE,
        chunk_size=4096,
    )


@pytest.fixture
def room_store():
    store = RoomStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def service(blob_store, room_store, hub, policy):
    return RoomService(blobs=blob_store, rooms=room_store, hub=hub, policy=policy)


@pytest.fixture
def api_client(settings):
    """TestClient over a fully wired app; the context manager runs the lifespan."""
    app = create_app(settings)
    with TestClient(app) as client:
        yield client
