"""In-memory registry of recording sessions."""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .chunk_writer import ChunkWriter
from .recording_errors import RecordingNotFound

STATE_ACTIVE = "active"
STATE_COMPLETED = "completed"

DEFAULT_FILENAME_PREFIX = "recording-"
DEFAULT_FILE_EXTENSION = ".webm"


@dataclass(slots=True)
class RecordingSession:
    """One recording attempt bound to exactly one backing file and writer."""

    recording_id: str
    filename: str
    filepath: Path
    writer: ChunkWriter
    transport: str = "http"
    state: str = STATE_ACTIVE
    start_time: float = field(default_factory=time.time)
    started_monotonic: float = field(default_factory=time.monotonic)
    chunk_count: int = 0
    total_size: int = 0
    duration: float | None = None
    completed_at: float | None = None
    interrupted: bool = False
    deleted: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def completed(self) -> bool:
        return self.state == STATE_COMPLETED

    def elapsed_seconds(self) -> float:
        return round(max(0.0, time.monotonic() - self.started_monotonic), 2)

    def to_summary(self) -> dict[str, Any]:
        return {
            "recordingId": self.recording_id,
            "filename": self.filename,
            "startTime": self.start_time,
            "chunkCount": self.chunk_count,
            "totalSize": self.total_size,
            "completed": self.completed,
            "state": self.state,
            "duration": self.duration,
            "interrupted": self.interrupted,
            "transport": self.transport,
        }


class SessionStore:
    """Thread-safe mapping from recording id to session state.

    Creation, counter updates, completion and removal each happen under a
    single lock, so readers never see a half-updated session.
    """

    def __init__(
        self,
        recordings_dir: str | Path,
        *,
        filename_prefix: str = DEFAULT_FILENAME_PREFIX,
        file_extension: str = DEFAULT_FILE_EXTENSION,
        fsync: bool = False,
    ) -> None:
        self.recordings_dir = Path(recordings_dir)
        self._filename_prefix = filename_prefix
        extension = file_extension or ""
        if extension and not extension.startswith("."):
            extension = f".{extension}"
        self._file_extension = extension
        self._fsync = bool(fsync)
        self._lock = threading.Lock()
        self._sessions: dict[str, RecordingSession] = {}

    def _new_id(self) -> str:
        while True:
            candidate = str(uuid.uuid4())
            if candidate not in self._sessions:
                return candidate

    def filename_for(self, recording_id: str) -> str:
        return f"{self._filename_prefix}{recording_id}{self._file_extension}"

    def create(self, *, transport: str = "http") -> RecordingSession:
        with self._lock:
            recording_id = self._new_id()
        filename = self.filename_for(recording_id)
        filepath = self.recordings_dir / filename
        writer = ChunkWriter.open(filepath, fsync=self._fsync)
        session = RecordingSession(
            recording_id=recording_id,
            filename=filename,
            filepath=filepath,
            writer=writer,
            transport=transport,
        )
        with self._lock:
            self._sessions[recording_id] = session
        return session

    def get(self, recording_id: str) -> RecordingSession:
        with self._lock:
            session = self._sessions.get(recording_id)
        if session is None:
            raise RecordingNotFound()
        return session

    def remove(self, recording_id: str) -> RecordingSession:
        with self._lock:
            session = self._sessions.pop(recording_id, None)
            if session is not None:
                session.deleted = True
        if session is None:
            raise RecordingNotFound()
        return session

    def record_chunk(self, session: RecordingSession, size: int) -> tuple[int, int]:
        with self._lock:
            session.chunk_count += 1
            session.total_size += int(size)
            return session.chunk_count, session.total_size

    def mark_completed(self, session: RecordingSession, *, interrupted: bool = False) -> None:
        with self._lock:
            session.duration = session.elapsed_seconds()
            session.completed_at = time.time()
            session.state = STATE_COMPLETED
            session.interrupted = bool(interrupted)

    def summary(self, session: RecordingSession) -> dict[str, Any]:
        with self._lock:
            return session.to_summary()

    def list_all(self) -> list[dict[str, Any]]:
        with self._lock:
            return [session.to_summary() for session in self._sessions.values()]

    def sessions(self) -> list[RecordingSession]:
        with self._lock:
            return list(self._sessions.values())

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for session in self._sessions.values() if session.state == STATE_ACTIVE)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, recording_id: object) -> bool:
        with self._lock:
            return recording_id in self._sessions
