"""Recording lifecycle controller.

A recording moves from ``active`` to ``completed`` through ``stop`` (or
``abort`` when its channel goes away), and can be deleted from either state.
Each session owns an ``asyncio.Lock`` that serialises appends, stop and
delete, so chunk N+1 is never written before chunk N has been acknowledged by
the writer. Blocking file I/O runs in worker threads.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .recording_errors import (
    ChunkWriteError,
    InvalidRecordingState,
    RecordingFileMissing,
    RecordingNotFound,
    RecordingNotReady,
)
from .session_store import STATE_ACTIVE, RecordingSession, SessionStore

DEFAULT_STOP_TIMEOUT_SECONDS = 30.0
DEFAULT_PROGRESS_LOG_INTERVAL = 10
DOWNLOAD_URL_TEMPLATE = "/api/recording/{recording_id}/download"


def _format_megabytes(size: int) -> str:
    return f"{size / 1024 / 1024:.2f} MB"


@dataclass(frozen=True)
class ChunkReceipt:
    """Counters observed right after a chunk became durable."""

    recording_id: str
    chunk_number: int
    chunk_size: int
    total_size: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "chunkNumber": self.chunk_number,
            "chunkSize": self.chunk_size,
            "totalSize": self.total_size,
        }


@dataclass(frozen=True)
class RecordingStats:
    """Frozen statistics of a completed recording."""

    recording_id: str
    filename: str
    duration: float
    total_size: int
    chunk_count: int
    download_url: str
    interrupted: bool = False
    flush_timed_out: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "recordingId": self.recording_id,
            "filename": self.filename,
            "duration": self.duration,
            "totalSize": self.total_size,
            "chunkCount": self.chunk_count,
            "downloadUrl": self.download_url,
        }
        if self.flush_timed_out:
            payload["flushTimedOut"] = True
        return payload


@dataclass(frozen=True)
class RecordingDownload:
    path: Path
    filename: str
    size: int


class RecordingManager:
    def __init__(
        self,
        store: SessionStore,
        *,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS,
        progress_log_interval: int = DEFAULT_PROGRESS_LOG_INTERVAL,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        timeout = float(stop_timeout or 0.0)
        self._stop_timeout = timeout if timeout > 0 else DEFAULT_STOP_TIMEOUT_SECONDS
        self._progress_interval = max(0, int(progress_log_interval))
        self._log = logger or logging.getLogger("recording_manager")
        self._pending_closes: set[asyncio.Task] = set()

    # --- Lifecycle ---
    async def start(self, *, transport: str = "http") -> RecordingSession:
        session = await asyncio.to_thread(self.store.create, transport=transport)
        self._log.info("Started recording %s via %s", session.recording_id, transport)
        return session

    def get(self, recording_id: str) -> RecordingSession:
        return self.store.get(recording_id)

    async def append_chunk(self, recording_id: str, data: bytes) -> ChunkReceipt:
        session = self.store.get(recording_id)
        async with session.lock:
            self._ensure_active(session)
            try:
                size = await asyncio.to_thread(session.writer.append, data)
            except ChunkWriteError as exc:
                self._log.error("Error writing chunk for %s: %s", recording_id, exc)
                raise
            chunk_number, total_size = self.store.record_chunk(session, size)

        self._log.debug(
            "Chunk %d written for %s (%.2f KB) - Total: %s",
            chunk_number,
            recording_id,
            size / 1024,
            _format_megabytes(total_size),
        )
        if self._progress_interval and chunk_number % self._progress_interval == 0:
            self._log.info(
                "Recording %s: %d chunks, %s",
                recording_id,
                chunk_number,
                _format_megabytes(total_size),
            )
        return ChunkReceipt(recording_id, chunk_number, size, total_size)

    async def stop(self, recording_id: str) -> RecordingStats:
        """Close the recording's file and freeze its statistics.

        Waiting for an in-flight chunk and for the close share one
        ``stop_timeout`` budget. When the budget runs out the session is
        completed anyway and the stats carry ``flush_timed_out``.
        """

        session = self.store.get(recording_id)
        self._ensure_active(session)
        deadline = self._deadline()

        if not await self._acquire(session, self._stop_timeout):
            self._ensure_active(session)
            self.store.mark_completed(session)
            self._close_when_idle(session)
            self._log.warning(
                "Timed out after %.1fs waiting for a pending chunk on %s; marking completed",
                self._stop_timeout,
                recording_id,
            )
            return self._stopped(session, flush_timed_out=True)

        try:
            self._ensure_active(session)
            timed_out = False
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(session.writer.close),
                    timeout=self._remaining(deadline),
                )
            except asyncio.TimeoutError:
                timed_out = True
                self._log.warning(
                    "Timed out after %.1fs waiting for %s to flush; marking completed",
                    self._stop_timeout,
                    recording_id,
                )
            except ChunkWriteError:
                # Handle is released even when the flush fails.
                self.store.mark_completed(session, interrupted=True)
                raise
            self.store.mark_completed(session)
        finally:
            session.lock.release()

        return self._stopped(session, flush_timed_out=timed_out)

    async def abort(self, recording_id: str) -> RecordingStats | None:
        """Finalise a recording whose owning channel went away without a stop."""

        try:
            session = self.store.get(recording_id)
        except RecordingNotFound:
            return None
        if session.deleted or session.state != STATE_ACTIVE:
            return None
        deadline = self._deadline()

        if not await self._acquire(session, self._stop_timeout):
            if session.deleted or session.state != STATE_ACTIVE:
                return None
            self.store.mark_completed(session, interrupted=True)
            self._close_when_idle(session)
        else:
            try:
                if session.deleted or session.state != STATE_ACTIVE:
                    return None
                await self._close_quietly(session, self._remaining(deadline))
                self.store.mark_completed(session, interrupted=True)
            finally:
                session.lock.release()
        self._log.warning("Force-closed recording %s", recording_id)
        return self._stats_for(session)

    async def download(self, recording_id: str) -> RecordingDownload:
        session = self.store.get(recording_id)
        if not session.completed:
            raise RecordingNotReady()
        try:
            stat_result = await asyncio.to_thread(os.stat, session.filepath)
        except FileNotFoundError:
            raise RecordingFileMissing() from None
        except OSError as exc:
            raise ChunkWriteError(f"Unable to read {session.filename}: {exc}") from exc
        self._log.info("Downloading %s", session.filename)
        return RecordingDownload(session.filepath, session.filename, stat_result.st_size)

    async def delete(self, recording_id: str) -> None:
        """Drop a recording and its file.

        The session stays registered until its file is gone, so a failed
        unlink can be retried. If a pending chunk outlasts ``stop_timeout``
        the session is dropped at once and the file is removed after that
        chunk lands.
        """

        session = self.store.get(recording_id)
        deadline = self._deadline()

        if not await self._acquire(session, self._stop_timeout):
            self.store.remove(recording_id)
            self._close_when_idle(session, unlink=True)
            self._log.warning("Deferred cleanup of %s until its pending chunk lands", recording_id)
            return

        try:
            if session.deleted:
                raise RecordingNotFound()
            if session.state == STATE_ACTIVE:
                await self._close_quietly(session, self._remaining(deadline))
                self.store.mark_completed(session, interrupted=True)
            try:
                await asyncio.to_thread(session.filepath.unlink, missing_ok=True)
            except OSError as exc:
                raise ChunkWriteError(f"Unable to delete {session.filename}: {exc}") from exc
            self.store.remove(recording_id)
        finally:
            session.lock.release()
        self._log.info("Deleted recording %s (%s)", recording_id, session.filename)

    async def shutdown(self) -> int:
        """Close every writer that is still open. Returns the number closed."""

        closed = 0
        for session in self.store.sessions():
            if await self.abort(session.recording_id) is not None:
                self._log.info("Closed stream for %s", session.recording_id)
                closed += 1
        if self._pending_closes:
            _done, pending = await asyncio.wait(set(self._pending_closes), timeout=self._stop_timeout)
            if pending:
                self._log.warning("%d writer(s) still busy at shutdown", len(pending))
        return closed

    # --- Queries ---
    def list_recordings(self) -> list[dict[str, Any]]:
        return self.store.list_all()

    def health(self) -> dict[str, Any]:
        return {
            "status": "running",
            "activeRecordings": self.store.active_count(),
            "totalRecordings": len(self.store),
        }

    # --- Helpers ---
    @staticmethod
    def _ensure_active(session: RecordingSession) -> None:
        if session.deleted:
            raise RecordingNotFound()
        if session.state != STATE_ACTIVE:
            raise InvalidRecordingState("Recording already completed")

    def _deadline(self) -> float:
        return asyncio.get_running_loop().time() + self._stop_timeout

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.001, deadline - asyncio.get_running_loop().time())

    @staticmethod
    async def _acquire(session: RecordingSession, timeout: float) -> bool:
        try:
            await asyncio.wait_for(session.lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _close_when_idle(self, session: RecordingSession, *, unlink: bool = False) -> None:
        task = asyncio.create_task(self._finish_close(session, unlink=unlink))
        self._pending_closes.add(task)
        task.add_done_callback(self._pending_closes.discard)

    async def _finish_close(self, session: RecordingSession, *, unlink: bool) -> None:
        async with session.lock:
            try:
                await asyncio.to_thread(session.writer.close)
            except ChunkWriteError as exc:
                self._log.warning("Error closing writer for %s: %s", session.recording_id, exc)
            if unlink:
                try:
                    await asyncio.to_thread(session.filepath.unlink, missing_ok=True)
                except OSError as exc:
                    self._log.warning("Unable to delete %s: %s", session.filename, exc)
        self._log.debug("Deferred close finished for %s", session.recording_id)

    async def _close_quietly(self, session: RecordingSession, timeout: float) -> None:
        try:
            await asyncio.wait_for(asyncio.to_thread(session.writer.close), timeout=timeout)
        except asyncio.TimeoutError:
            self._log.warning("Timed out closing writer for %s", session.recording_id)
        except ChunkWriteError as exc:
            self._log.warning("Error closing writer for %s: %s", session.recording_id, exc)

    def _stopped(self, session: RecordingSession, *, flush_timed_out: bool) -> RecordingStats:
        stats = self._stats_for(session, flush_timed_out=flush_timed_out)
        self._log.info(
            "Stopped recording %s: duration %.2fs, %d chunks, %s, file %s",
            session.recording_id,
            stats.duration,
            stats.chunk_count,
            _format_megabytes(stats.total_size),
            stats.filename,
        )
        return stats

    def _stats_for(self, session: RecordingSession, *, flush_timed_out: bool = False) -> RecordingStats:
        summary = self.store.summary(session)
        return RecordingStats(
            recording_id=session.recording_id,
            filename=session.filename,
            duration=summary["duration"] if summary["duration"] is not None else 0.0,
            total_size=summary["totalSize"],
            chunk_count=summary["chunkCount"],
            download_url=DOWNLOAD_URL_TEMPLATE.format(recording_id=session.recording_id),
            interrupted=summary["interrupted"],
            flush_timed_out=flush_timed_out,
        )
