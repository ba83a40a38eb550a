"""Room code classification.

Two reserved room codes get special treatment: the permanent vault, whose files
never expire, and the admin aggregator, which sees every room's files and is
the only code allowed to bulk-clear storage. Everything else is a normal room.
Callers consume the ``RoomClass`` returned by ``RoomPolicy.classify`` instead
of comparing room code strings themselves.
"""
from enum import Enum

from fileshare.config import RoomSettings
from fileshare.errors import InvalidRoomCode, Unauthorized


class RoomClass(str, Enum):
    """Policy class of a room code.

    Attributes:
        NORMAL: Ad-hoc room, subject to cleanup.
        PERMANENT_VAULT: Reserved room exempt from cleanup.
        ADMIN_AGGREGATOR: Reserved room that reads across all rooms and may bulk-clear.
    """
    NORMAL = "normal"
    PERMANENT_VAULT = "permanent_vault"
    ADMIN_AGGREGATOR = "admin_aggregator"


class RoomPolicy:
    """Classifies room codes and answers per-class policy questions."""

    def __init__(self, settings: RoomSettings) -> None:
        self._code_length = settings.code_length
        self._vault_code = settings.permanent_vault_code
        self._admin_code = settings.admin_code

    @property
    def admin_code(self) -> str:
        return self._admin_code

    @property
    def permanent_vault_code(self) -> str:
        return self._vault_code

    def normalize(self, room_code: str) -> str:
        """Upper-case a room code and check its shape.

        Reserved codes are fixed literals and skip the length rule.

        Raises:
            InvalidRoomCode: If the code is empty or has the wrong length.
        """
        code = (room_code or "").strip().upper()
        if code in (self._vault_code, self._admin_code):
            return code
        if len(code) != self._code_length:
            raise InvalidRoomCode(
                f"Room code must be exactly {self._code_length} characters"
            )
        return code

    def classify(self, room_code: str) -> RoomClass:
        code = (room_code or "").strip().upper()
        if code == self._admin_code:
            return RoomClass.ADMIN_AGGREGATOR
        if code == self._vault_code:
            return RoomClass.PERMANENT_VAULT
        return RoomClass.NORMAL

    def is_exempt_from_cleanup(self, room_code: str) -> bool:
        return self.classify(room_code) is not RoomClass.NORMAL

    def aggregates_all_rooms(self, room_code: str) -> bool:
        return self.classify(room_code) is RoomClass.ADMIN_AGGREGATOR

    def authorize_bulk_clear(self, room_code: str) -> None:
        """Raise ``Unauthorized`` unless *room_code* is the admin aggregator."""
        if self.classify(room_code) is not RoomClass.ADMIN_AGGREGATOR:
            raise Unauthorized("Only the admin room can clear all files")
