"""Error taxonomy shared by the recording controller and its transports."""

from __future__ import annotations


class RecordingError(Exception):
    """Base class for failures surfaced to HTTP and WebSocket clients."""

    status: int = 500
    default_message = "Recording error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class RecordingNotFound(RecordingError):
    status = 404
    default_message = "Recording not found"


class InvalidRecordingState(RecordingError):
    status = 400
    default_message = "Recording is not active"


class ChunkWriteError(RecordingError):
    """Disk write, open or close failure for a recording's backing file."""

    status = 500
    default_message = "Failed to write chunk"


class RecordingNotReady(RecordingError):
    status = 400
    default_message = "Recording not yet completed"


class RecordingFileMissing(RecordingError):
    status = 404
    default_message = "Recording file not found"


class StreamProtocolError(RecordingError):
    """Malformed command or out-of-order data on a streaming channel."""

    status = 400
    default_message = "Protocol error"
