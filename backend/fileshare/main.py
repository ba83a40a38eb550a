"""File Share Backend Application.

This is the main entry point for the room file share service. Groups share a
short-lived text note and a set of uploaded files under a room code, with live
updates pushed to every connected participant.

Modules:
    - blobs: Streaming filesystem blob store
    - rooms: DuckDB room store, room policy, room service and HTTP routes
    - hub: In-memory broadcast hub and the WebSocket endpoint
    - cleanup: Background expiry sweeper
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fileshare.blobs.store import BlobStore
from fileshare.cleanup.sweeper import CleanupSweeper
from fileshare.config import AppSettings, get_config
from fileshare.errors import FileShareError
from fileshare.hub.manager import BroadcastHub
from fileshare.hub.router import router as hub_router
from fileshare.rooms.policy import RoomPolicy
from fileshare.rooms.router import router as rooms_router
from fileshare.rooms.service import RoomService
from fileshare.rooms.store import RoomStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request noise from the HTTP stack.
for _noisy in ("httpx", "httpcore", "multipart", "python_multipart"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def _file_share_error_handler(request: Request, exc: FileShareError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        {"success": False, "error": exc.message},
        status_code=exc.status_code,
    )


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Explicit settings; loaded from YAML when omitted.
    """
    config = settings or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Construct every component at startup and tear them down at shutdown."""
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        blobs = BlobStore(
            blob_dir=config.storage.blob_dir,
            max_size_bytes=config.storage.max_file_size_bytes,
            chunk_size=config.storage.chunk_size,
        )
        rooms = RoomStore(db_path=config.storage.db_path)
        hub = BroadcastHub()
        policy = RoomPolicy(config.rooms)
        sweeper = CleanupSweeper(
            rooms=rooms,
            blobs=blobs,
            hub=hub,
            policy=policy,
            interval_seconds=config.cleanup.interval_seconds,
            retention_seconds=config.cleanup.retention_seconds,
        )

        app.state.settings = config
        app.state.hub = hub
        app.state.sweeper = sweeper
        app.state.room_service = RoomService(blobs=blobs, rooms=rooms, hub=hub, policy=policy)

        if config.cleanup.enabled:
            await sweeper.start()
        else:
            logger.info("Cleanup sweeper disabled in config.")

        logger.info(
            f"File share ready: blobs={config.storage.blob_dir} db={config.storage.db_path}"
        )

        yield  # Application runs here

        # Shutdown
        await sweeper.stop()
        await hub.close()
        rooms.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="File Share API",
        description="Room-based file and text sharing with live updates",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(FileShareError, _file_share_error_handler)

    app.include_router(rooms_router)
    app.include_router(hub_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
