"""An append-only log of WAL frames and commits, stored in fixed-size slots."""

from __future__ import annotations

import os
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

PAGE_SIZE = 4096

_VARIANT_FRAME = 0
_VARIANT_COMMIT = 1
_FRAME_PREFIX = struct.Struct("<IIQ")
_COMMIT = struct.Struct("<IiIBi")
_HEADER = struct.Struct("<BQ")


@dataclass(frozen=True)
class Frame:
    """A page written to the WAL."""

    page_no: int
    data: bytes


@dataclass(frozen=True)
class Commit:
    """The end of a transaction's frames."""

    page_size: int
    size_after: int
    is_commit: bool
    sync_flags: int


WalLogEntry = Union[Frame, Commit]


def encode_entry(entry: WalLogEntry) -> bytes:
    """Serialize an entry: a little-endian u32 variant tag followed by its fields."""
    if isinstance(entry, Frame):
        data = bytes(entry.data)
        return _FRAME_PREFIX.pack(_VARIANT_FRAME, entry.page_no, len(data)) + data
    if isinstance(entry, Commit):
        return _COMMIT.pack(
            _VARIANT_COMMIT,
            entry.page_size,
            entry.size_after,
            1 if entry.is_commit else 0,
            entry.sync_flags,
        )
    raise TypeError(f"not a log entry: {type(entry).__name__}")


def decode_entry(data: bytes) -> WalLogEntry:
    """Deserialize an entry; trailing bytes are ignored."""
    if len(data) < 4:
        raise ValueError("truncated log entry")
    (variant,) = struct.unpack_from("<I", data)
    if variant == _VARIANT_FRAME:
        if len(data) < _FRAME_PREFIX.size:
            raise ValueError("truncated frame entry")
        _, page_no, length = _FRAME_PREFIX.unpack_from(data)
        end = _FRAME_PREFIX.size + length
        if len(data) < end:
            raise ValueError("truncated frame data")
        return Frame(page_no, bytes(data[_FRAME_PREFIX.size : end]))
    if variant == _VARIANT_COMMIT:
        if len(data) < _COMMIT.size:
            raise ValueError("truncated commit entry")
        _, page_size, size_after, is_commit, sync_flags = _COMMIT.unpack_from(data)
        if is_commit not in (0, 1):
            raise ValueError(f"invalid boolean value: {is_commit}")
        return Commit(page_size, size_after, bool(is_commit), sync_flags)
    raise ValueError(f"invalid log entry variant: {variant}")


class WalLogger:
    """A file of log entries, each in a slot of FRAME_SIZE bytes after a header."""

    FRAME_SIZE = 4112
    HEADER_SIZE = 4096
    VERSION = 1

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.path = Path(path)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        self._file = os.fdopen(fd, "r+b")
        self._lock = threading.Lock()
        try:
            file_end = os.fstat(self._file.fileno()).st_size
            if file_end == 0:
                header = _HEADER.pack(self.VERSION, 0).ljust(self.HEADER_SIZE, b"\0")
                self._file.write(header)
                self._file.flush()
                file_end = self.HEADER_SIZE
                start_index = 0
            else:
                header = self._file.read(self.HEADER_SIZE)
                if len(header) < self.HEADER_SIZE:
                    raise ValueError("log file header is truncated")
                _version, start_index = _HEADER.unpack_from(header)
        except BaseException:
            self._file.close()
            raise
        self._current_offset = file_end
        self.start_offset = start_index

    def current_offset(self) -> int:
        """The byte offset at which the next entry will be written."""
        with self._lock:
            return self._current_offset

    def append(self, entries: Iterable[WalLogEntry]) -> None:
        """Write entries at the end of the log."""
        slots = []
        for entry in entries:
            if isinstance(entry, Frame) and len(entry.data) != PAGE_SIZE:
                raise ValueError(
                    f"frame data must be {PAGE_SIZE} bytes, got {len(entry.data)}"
                )
            encoded = encode_entry(entry)
            if len(encoded) > self.FRAME_SIZE:
                raise ValueError("log entry does not fit in a frame slot")
            slots.append(encoded.ljust(self.FRAME_SIZE, b"\0"))

        with self._lock:
            self._file.seek(self._current_offset)
            for slot in slots:
                self._file.write(slot)
            self._file.flush()
            self._current_offset += len(slots) * self.FRAME_SIZE

    def get_entry(self, offset: int) -> Optional[WalLogEntry]:
        """The entry at index `offset`, or None if it is outside the log."""
        if offset < self.start_offset:
            return None
        read_offset = self.HEADER_SIZE + (offset - self.start_offset) * self.FRAME_SIZE
        with self._lock:
            if read_offset >= self._current_offset:
                return None
            self._file.seek(read_offset)
            buffer = self._file.read(self.FRAME_SIZE)
        if len(buffer) < self.FRAME_SIZE:
            raise ValueError(f"log entry {offset} is truncated")
        return decode_entry(buffer)

    def close(self) -> None:
        with self._lock:
            self._file.close()

    def __enter__(self) -> "WalLogger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class WalLoggerHook:
    """Buffers the frames of a transaction and logs them when it commits."""

    def __init__(self, logger: WalLogger) -> None:
        self.logger = logger
        self.buffer: list[WalLogEntry] = []

    def on_frames(
        self,
        frames: Iterable[tuple[int, bytes]],
        page_size: int,
        ntruncate: int,
        is_commit: bool,
        sync_flags: int,
    ) -> None:
        """Record written pages; on commit, flush them with a commit entry."""
        if page_size != PAGE_SIZE:
            raise ValueError(f"unsupported page size: {page_size}")
        for page_no, data in frames:
            self.buffer.append(Frame(page_no, bytes(data)))
        if is_commit:
            self.buffer.append(Commit(page_size, ntruncate, True, sync_flags))
            try:
                self.logger.append(self.buffer)
            finally:
                self.buffer.clear()

    def on_undo(self) -> None:
        """Forget the frames of a rolled-back transaction."""
        self.buffer.clear()