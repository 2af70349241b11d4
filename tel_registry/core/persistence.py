"""
TEL Persistence Backends

Append-only byte storage keyed by ``(member_id, sequence_number)``. The
backends know nothing about events: they store and return the canonical
record bytes produced by ``TelEvent.to_record``.

    MemoryBackend   process-local, for tests and ephemeral registries
    FileBackend     one append-only file per member

File layout (``FileBackend``):

    u32 + bytes     member_id (utf-8), written once at file creation
    u32 + bytes     record 0
    u32 + bytes     record 1
    ...
"""

import hashlib
import logging
import os
import struct
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from tel_registry.core.errors import StorageError


logger = logging.getLogger(__name__)

_U32 = struct.Struct(">I")


@contextmanager
def _storage_errors(member_id: str, action: str) -> Iterator[None]:
    try:
        yield
    except OSError as e:
        raise StorageError(f"Could not {action}: {e}", member_id=member_id) from e


class StorageBackend(ABC):
    """Append-only record stream per member."""

    @abstractmethod
    def append(self, member_id: str, sequence_number: int, data: bytes) -> None:
        """
        Append the record for ``sequence_number``.

        Raises:
            StorageError: If ``sequence_number`` is not the next free slot
        """

    @abstractmethod
    def read(self, member_id: str, sequence_number: int) -> Optional[bytes]:
        """Return the stored record or None."""

    @abstractmethod
    def scan(self, member_id: str) -> List[bytes]:
        """Return every record of a member in sequence order."""

    @abstractmethod
    def members(self) -> List[str]:
        """Return every member with at least a stream."""

    def close(self) -> None:
        """Release resources. Further use is undefined."""


class MemoryBackend(StorageBackend):
    """In-memory backend."""

    def __init__(self):
        self._lock = threading.Lock()
        self._streams: Dict[str, List[bytes]] = {}

    def append(self, member_id: str, sequence_number: int, data: bytes) -> None:
        with self._lock:
            stream = self._streams.setdefault(member_id, [])
            if sequence_number != len(stream):
                raise StorageError(
                    f"Expected sequence {len(stream)}, got {sequence_number}",
                    member_id=member_id
                )
            stream.append(bytes(data))

    def read(self, member_id: str, sequence_number: int) -> Optional[bytes]:
        with self._lock:
            stream = self._streams.get(member_id, [])
            if 0 <= sequence_number < len(stream):
                return stream[sequence_number]
            return None

    def scan(self, member_id: str) -> List[bytes]:
        with self._lock:
            return list(self._streams.get(member_id, []))

    def members(self) -> List[str]:
        with self._lock:
            return list(self._streams)

    def overwrite(self, member_id: str, sequence_number: int, data: bytes) -> None:
        """
        Replace a stored record in place.

        Exists only to simulate tampering with stored data in tests and
        drills; the registry never calls it.
        """
        with self._lock:
            self._streams[member_id][sequence_number] = bytes(data)


class FileBackend(StorageBackend):
    """
    One append-only file per member under ``root``.

    Record offsets are indexed when a stream is first touched; a truncated
    trailing record (interrupted write) is cut off with a warning.
    """

    SUFFIX = ".tel"

    def __init__(self, root: Union[str, Path]):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._offsets: Dict[str, List[int]] = {}
        self._members: Dict[str, Path] = {}
        self._closed = False
        for path in sorted(self._root.glob(f"*{self.SUFFIX}")):
            member_id = self._read_header(path)
            self._members[member_id] = path

    def _path_for(self, member_id: str) -> Path:
        name = hashlib.sha256(member_id.encode('utf-8')).hexdigest()
        return self._root / f"{name}{self.SUFFIX}"

    @staticmethod
    def _read_header(path: Path) -> str:
        with open(path, 'rb') as f:
            raw = f.read(_U32.size)
            if len(raw) != _U32.size:
                raise StorageError(f"Stream file {path} has no header")
            (size,) = _U32.unpack(raw)
            member = f.read(size)
            if len(member) != size:
                raise StorageError(f"Stream file {path} has a truncated header")
        return member.decode('utf-8')

    def _index(self, member_id: str) -> List[int]:
        """Offsets of every complete record; caller holds the lock."""
        if member_id in self._offsets:
            return self._offsets[member_id]
        path = self._members.get(member_id)
        offsets: List[int] = []
        if path is not None:
            with open(path, 'r+b') as f:
                (size,) = _U32.unpack(f.read(_U32.size))
                position = _U32.size + size
                end = f.seek(0, os.SEEK_END)
                while position < end:
                    f.seek(position)
                    raw = f.read(_U32.size)
                    if len(raw) < _U32.size:
                        break
                    (size,) = _U32.unpack(raw)
                    if position + _U32.size + size > end:
                        break
                    offsets.append(position)
                    position += _U32.size + size
                if position != end:
                    logger.warning(
                        "Truncating %d trailing bytes of interrupted write in %s",
                        end - position, path
                    )
                    f.truncate(position)
        self._offsets[member_id] = offsets
        return offsets

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("Backend is closed")

    def append(self, member_id: str, sequence_number: int, data: bytes) -> None:
        with self._lock:
            self._check_open()
            with _storage_errors(member_id, "index stream"):
                offsets = self._index(member_id)
            if sequence_number != len(offsets):
                raise StorageError(
                    f"Expected sequence {len(offsets)}, got {sequence_number}",
                    member_id=member_id
                )
            path = self._members.get(member_id)
            if path is None:
                path = self._create_stream(member_id)
            position = None
            try:
                with open(path, 'ab') as f:
                    position = f.seek(0, os.SEEK_END)
                    f.write(_U32.pack(len(data)) + data)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                if position is not None:
                    self._rollback(member_id, path, position)
                raise StorageError(
                    f"Could not write record {sequence_number}: {e}",
                    member_id=member_id
                ) from e
            offsets.append(position)

    def _create_stream(self, member_id: str) -> Path:
        path = self._path_for(member_id)
        header = member_id.encode('utf-8')
        try:
            with open(path, 'wb') as f:
                f.write(_U32.pack(len(header)) + header)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(
                f"Could not create stream file {path}: {e}", member_id=member_id
            ) from e
        self._members[member_id] = path
        return path

    def _rollback(self, member_id: str, path: Path, position: int) -> None:
        """Cut a failed write back to ``position``; caller holds the lock."""
        try:
            with open(path, 'r+b') as f:
                f.truncate(position)
        except OSError:
            logger.error(
                "Could not roll back partial write in %s; stream will be re-indexed",
                path, exc_info=True
            )
            self._offsets.pop(member_id, None)

    def read(self, member_id: str, sequence_number: int) -> Optional[bytes]:
        with self._lock, _storage_errors(member_id, f"read record {sequence_number}"):
            self._check_open()
            offsets = self._index(member_id)
            if not 0 <= sequence_number < len(offsets):
                return None
            with open(self._members[member_id], 'rb') as f:
                f.seek(offsets[sequence_number])
                (size,) = _U32.unpack(f.read(_U32.size))
                return f.read(size)

    def scan(self, member_id: str) -> List[bytes]:
        with self._lock, _storage_errors(member_id, "scan stream"):
            self._check_open()
            offsets = self._index(member_id)
            if not offsets:
                return []
            records = []
            with open(self._members[member_id], 'rb') as f:
                for offset in offsets:
                    f.seek(offset)
                    (size,) = _U32.unpack(f.read(_U32.size))
                    records.append(f.read(size))
            return records

    def members(self) -> List[str]:
        with self._lock:
            return list(self._members)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._offsets.clear()
