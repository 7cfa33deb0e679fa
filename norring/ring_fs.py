"""File handles and the interface shared by ring-buffer file stores."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass


class ErrorKind(enum.Enum):
    """The ways a ring file store operation can fail."""

    OUT_OF_SPACE = "out of space"
    FILE_OVERRUN = "write past the end of the file"
    MISSING_FILE_LENGTH = "first write must start with a 4 byte file length"
    IN_USE = "file store is in use"
    UNRECOVERABLE_DISK = "disk cannot be recovered"
    FILE_TOO_LARGE = "file too large"
    FILE_NOT_FOUND = "file not found"
    FILE_CLOSED = "file is closed"
    NOT_ALIGNED = "flash access not aligned"
    OUT_OF_BOUNDS = "flash access out of bounds"
    UNKNOWN = "unknown error"


class RingFsError(Exception):
    """Raised when a ring file store operation fails."""

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class FileState(enum.Enum):
    """What an open file handle is used for."""

    CLOSED = enum.auto()
    READER = enum.auto()
    WRITER = enum.auto()


@dataclass
class FileDescriptor:
    """Position and extent of an open file.

    ``location`` is the address of the file on disk, ``length`` the file
    length and ``offset`` the current read or write position relative to
    ``location``.
    """

    state: FileState
    location: int = 0
    length: int = 0
    offset: int = 0

    @classmethod
    def new_writer(cls) -> FileDescriptor:
        return cls(FileState.WRITER)

    @classmethod
    def new_reader(cls, location: int, length: int) -> FileDescriptor:
        return cls(FileState.READER, location=location, length=length)

    def is_closed(self) -> bool:
        return self.state is FileState.CLOSED

    def close(self) -> None:
        self.state = FileState.CLOSED


class RingFs(abc.ABC):
    """A store of files kept in a ring; the oldest files are overwritten."""

    @abc.abstractmethod
    def create_file(self) -> RingFsWriter:
        """Open a new file for writing."""

    @abc.abstractmethod
    def file_reader_by_index(self, index: int) -> RingFsReader:
        """Open a file for reading; index 0 is the newest file."""

    @abc.abstractmethod
    def file_reader_by_location(self, location: int) -> RingFsReader:
        """Open the file stored at a disk location for reading."""

    @abc.abstractmethod
    def close_file(self, desc: FileDescriptor) -> None:
        """Release an open file; closing a closed file does nothing."""

    @abc.abstractmethod
    def write_file(self, desc: FileDescriptor, data: bytes) -> None:
        """Append data to a file open for writing."""

    @abc.abstractmethod
    def read_file(self, desc: FileDescriptor, size: int) -> bytes:
        """Read up to ``size`` bytes from a file open for reading."""


class RingFsWriter:
    """A file open for writing; closes itself when fully written."""

    def __init__(self, fs: RingFs, desc: FileDescriptor) -> None:
        self.fs = fs
        self.desc = desc

    def close(self) -> None:
        self.fs.close_file(self.desc)

    def is_closed(self) -> bool:
        return self.desc.is_closed()

    def write(self, data: bytes) -> None:
        self.fs.write_file(self.desc, data)

    def location(self) -> int:
        return self.desc.location

    def __enter__(self) -> RingFsWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class RingFsReader:
    """A file open for reading; closes itself when fully read."""

    def __init__(self, fs: RingFs, desc: FileDescriptor) -> None:
        self.fs = fs
        self.desc = desc

    def close(self) -> None:
        self.fs.close_file(self.desc)

    def is_closed(self) -> bool:
        return self.desc.is_closed()

    def read(self, size: int) -> bytes:
        return self.fs.read_file(self.desc, size)

    def __enter__(self) -> RingFsReader:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()