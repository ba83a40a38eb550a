"""WebSocket endpoint for live room updates.

Protocol Flow:
    1. Client connects → Server sends {type: "connected", data: {connectionId}}
    2. Client sends {type: "join-room", roomCode}
       → Room created if it does not exist yet
       → Other members receive {type: "user-joined", data: connectionId}
       → Joiner receives {type: "users-in-room", data: [connectionId, ...]}
    3. Client sends {type: "send-text", roomCode, text}
       → Text revision stored, other members receive "receive-text"
    4. Client sends {type: "file-deleted", roomCode, storageKey}
       → Relayed to the other members
    5. Client sends {type: "leave-room", roomCode}
       → Remaining members receive "user-left"
    6. On disconnect the connection leaves its room implicitly

Server-initiated events (new-files, file-deleted, files-expired,
all-files-cleared) arrive on the same socket at any time.
"""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from fileshare.errors import FileShareError
from fileshare.rooms.service import RoomService

from .manager import BroadcastHub, HubEvent

logger = logging.getLogger(__name__)

router = APIRouter()

# Client messages that address a room
ROOM_MESSAGES = ("join-room", "leave-room", "send-text", "file-deleted")


async def _handle_message(
    data: dict, connection_id: str, hub: BroadcastHub, service: RoomService
) -> None:
    message_type = data.get("type")
    room_code = data.get("roomCode", "")
    if message_type in ROOM_MESSAGES and not isinstance(room_code, str):
        hub.send_to(connection_id, HubEvent.ERROR, {"error": "roomCode must be a string"})
        return

    if message_type == "join-room":
        # Joining creates the room on first use, like the HTTP join does.
        view = service.create_or_join_room(room_code)
        hub.join(connection_id, view.room.roomCode)
        return

    if message_type == "leave-room":
        code = service.policy.normalize(room_code)
        hub.leave(connection_id, code)
        return

    if message_type == "send-text":
        text = data.get("text")
        if not isinstance(text, str):
            hub.send_to(connection_id, HubEvent.ERROR, {"error": "text must be a string"})
            return
        service.update_text(room_code, text, connection_id)
        return

    if message_type == "file-deleted":
        code = service.policy.normalize(room_code)
        hub.broadcast_to_room(
            code,
            HubEvent.FILE_DELETED,
            {"roomCode": code, "storageKey": data.get("storageKey")},
            exclude=connection_id,
        )
        return

    hub.send_to(
        connection_id, HubEvent.ERROR, {"error": f"Unknown message type: {message_type}"}
    )


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint translating client messages into hub operations."""
    hub: BroadcastHub = websocket.app.state.hub
    service: RoomService = websocket.app.state.room_service

    connection_id = await hub.connect(websocket)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                hub.send_to(connection_id, HubEvent.ERROR, {"error": "Invalid JSON"})
                continue
            if connection_id not in hub.connections:
                # Dropped by the hub (send failure or backlog); end the session.
                logger.info(f"[WS] {connection_id} was dropped by the hub; closing")
                break
            if not isinstance(data, dict):
                hub.send_to(connection_id, HubEvent.ERROR, {"error": "Expected an object"})
                continue

            logger.debug("[WS] %s received: type=%s", connection_id, data.get("type", "?"))
            try:
                await _handle_message(data, connection_id, hub, service)
            except FileShareError as e:
                logger.info(f"[WS] {data.get('type')} from {connection_id} failed: {e.message}")
                hub.send_to(connection_id, HubEvent.ERROR, {"error": e.message})
    except WebSocketDisconnect:
        logger.info(f"[WS] {connection_id} disconnected")
    finally:
        await hub.disconnect(connection_id)
