"""Per-connection command dispatch for the recording WebSocket."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from ..recording_errors import (
    InvalidRecordingState,
    RecordingError,
    RecordingNotFound,
    StreamProtocolError,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    from ..recording_manager import RecordingManager


def error_message(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}


class StreamChannel:
    """Track the single recording a streaming client is feeding.

    Text frames carry JSON commands (``start`` / ``stop``); binary frames are
    chunks for the active recording. Each handler returns the reply to send
    back; failures become ``error`` replies and never end the channel.
    """

    def __init__(
        self,
        manager: "RecordingManager",
        *,
        channel_id: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self._manager = manager
        self.channel_id = channel_id
        self.recording_id: str | None = None
        self._log = logger or logging.getLogger("web_server")

    @property
    def active(self) -> bool:
        return self.recording_id is not None

    async def handle_text(self, text: str) -> dict[str, Any]:
        try:
            command = self._parse_command(text)
            command_type = command.get("type")
            if command_type == "start":
                return await self._start()
            if command_type == "stop":
                return await self._stop()
            raise StreamProtocolError("Unknown command")
        except RecordingError as exc:
            return self._error_reply(exc)

    async def handle_binary(self, data: bytes) -> dict[str, Any]:
        try:
            if self.recording_id is None:
                raise StreamProtocolError("No active recording; send a start command first")
            receipt = await self._manager.append_chunk(self.recording_id, data)
        except (RecordingNotFound, InvalidRecordingState) as exc:
            # Stopped or deleted through another transport.
            self.recording_id = None
            return self._error_reply(exc)
        except RecordingError as exc:
            return self._error_reply(exc)
        return {
            "type": "chunk_ack",
            "chunkNumber": receipt.chunk_number,
            "totalSize": receipt.total_size,
        }

    async def close(self) -> None:
        """Release the active recording after the connection ended."""

        recording_id = self.recording_id
        self.recording_id = None
        if recording_id is None:
            return
        await self._manager.abort(recording_id)

    def _parse_command(self, text: str) -> dict[str, Any]:
        try:
            command = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StreamProtocolError(f"Invalid command: {exc.msg}") from exc
        if not isinstance(command, dict):
            raise StreamProtocolError("Command must be a JSON object")
        return command

    async def _start(self) -> dict[str, Any]:
        if self.recording_id is not None and self._recording_is_open():
            raise StreamProtocolError(
                f"Recording {self.recording_id} is already active on this connection"
            )
        session = await self._manager.start(transport="websocket")
        self.recording_id = session.recording_id
        return {
            "type": "started",
            "recordingId": session.recording_id,
            "filename": session.filename,
        }

    def _recording_is_open(self) -> bool:
        try:
            session = self._manager.get(self.recording_id)
        except RecordingNotFound:
            return False
        return not session.completed

    async def _stop(self) -> dict[str, Any]:
        recording_id = self.recording_id
        if recording_id is None:
            raise StreamProtocolError("No active recording")
        try:
            stats = await self._manager.stop(recording_id)
        finally:
            self.recording_id = None
        return {"type": "stopped", **stats.to_payload()}

    def _error_reply(self, exc: RecordingError) -> dict[str, Any]:
        self._log.warning("WebSocket %s error: %s", self.channel_id or "client", exc.message)
        return error_message(exc.message)
