"""Append-only sink for a single recording's backing file."""

from __future__ import annotations

import contextlib
import logging
import os
import threading
from pathlib import Path
from typing import BinaryIO

from .recording_errors import ChunkWriteError


class ChunkWriter:
    """Write chunks sequentially to one file.

    Every ``append`` hands the bytes to the OS before returning, so a
    successful return means the chunk is durable from the caller's point of
    view. ``close`` may be called any number of times.
    """

    def __init__(self, path: Path, handle: BinaryIO, *, fsync: bool = False) -> None:
        self.path = path
        self._handle: BinaryIO | None = handle
        self._fsync = bool(fsync)
        self._lock = threading.Lock()
        self._bytes_written = 0
        self._log = logging.getLogger("chunk_writer")

    @classmethod
    def open(cls, path: str | os.PathLike[str], *, fsync: bool = False) -> "ChunkWriter":
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            handle = target.open("wb")
        except OSError as exc:
            raise ChunkWriteError(f"Unable to open {target.name}: {exc}") from exc
        return cls(target, handle, fsync=fsync)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._handle is None

    @property
    def bytes_written(self) -> int:
        with self._lock:
            return self._bytes_written

    def append(self, data: bytes | bytearray | memoryview) -> int:
        with self._lock:
            handle = self._handle
            if handle is None:
                raise ChunkWriteError(f"Writer for {self.path.name} is closed")
            try:
                if data:
                    handle.write(data)
                handle.flush()
                if self._fsync:
                    os.fsync(handle.fileno())
            except (OSError, ValueError) as exc:
                raise ChunkWriteError(f"Failed to write chunk to {self.path.name}: {exc}") from exc
            size = len(data)
            self._bytes_written += size
            return size

    def close(self) -> None:
        with self._lock:
            handle = self._handle
            if handle is None:
                return
            self._handle = None
            try:
                handle.flush()
                if self._fsync:
                    os.fsync(handle.fileno())
            except (OSError, ValueError) as exc:
                with contextlib.suppress(OSError, ValueError):
                    handle.close()
                raise ChunkWriteError(f"Failed to flush {self.path.name}: {exc}") from exc
            try:
                handle.close()
            except OSError as exc:
                raise ChunkWriteError(f"Failed to close {self.path.name}: {exc}") from exc
        self._log.debug("Closed %s after %d bytes", self.path.name, self._bytes_written)

    def __enter__(self) -> "ChunkWriter":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()
