"""Error taxonomy shared by the storage layers, the orchestrator and the routers.

Every error carries the HTTP status code the route layer maps it to; a single
exception handler in main.py turns any ``FileShareError`` into an error
response, so the routers never catch them.
"""


class FileShareError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.message = message or str(self.args[0])


class NotFound(FileShareError):
    """Requested room or file does not exist."""

    status_code = 404


class RoomNotFound(NotFound):
    """Room not found."""


class FileNotFound(NotFound):
    """File not found."""


class BlobNotFound(NotFound):
    """Blob not found in the blob store."""


class Unauthorized(FileShareError):
    """Room code is not allowed to perform this operation."""

    status_code = 403


class PayloadTooLarge(FileShareError):
    """Upload exceeds the configured size ceiling."""

    status_code = 413


class StorageFailure(FileShareError):
    """Blob or record read/write failed."""

    status_code = 500


class InvalidRoomCode(FileShareError):
    """Room code is malformed."""

    status_code = 400
