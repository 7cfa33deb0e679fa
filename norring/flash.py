"""NOR flash devices and an in-memory flash for tests and simulation."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import Callable, Optional

from norring.ring_fs import ErrorKind, RingFsError


class FlashErrorKind(enum.Enum):
    """Why a flash operation failed."""

    NOT_ALIGNED = "not aligned"
    OUT_OF_BOUNDS = "out of bounds"
    OTHER = "other"


class FlashError(Exception):
    """Raised by a flash device when an operation fails."""

    def __init__(self, kind: FlashErrorKind, message: str | None = None) -> None:
        super().__init__(message or kind.value)
        self.kind = kind


@dataclass(frozen=True)
class FlashAction:
    """A modifying flash operation, as shown to an observer.

    ``op`` is ``"erase"`` (with ``offset`` and ``end``) or ``"write"``
    (with ``offset`` and ``data``).
    """

    op: str
    offset: int
    end: Optional[int] = None
    data: Optional[bytes] = None


class NorFlash(abc.ABC):
    """A NOR flash: writes can only clear bits; erase sets bytes to 0xff."""

    erase_size: int

    @abc.abstractmethod
    def read(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``offset``."""

    @abc.abstractmethod
    def write(self, offset: int, data: bytes) -> None:
        """Program ``data`` at ``offset``."""

    @abc.abstractmethod
    def erase(self, start: int, end: int) -> None:
        """Erase the range ``start`` to ``end`` (exclusive)."""


Observer = Callable[[FlashAction, bytearray], None]


class MemoryFlash(NorFlash):
    """A NOR flash held in memory.

    An optional observer sees each write and erase, with the raw buffer,
    before it happens; it may change the buffer or raise ``FlashError`` to
    make the operation fail.
    """

    def __init__(
        self,
        size: int,
        erase_size: int = 64,
        observer: Optional[Observer] = None,
    ) -> None:
        self.data = bytearray(size)
        self.erase_size = erase_size
        self.observer = observer

    def _check(self, offset: int, length: int) -> None:
        if offset < 0 or length < 0 or offset + length > len(self.data):
            raise FlashError(FlashErrorKind.OUT_OF_BOUNDS)

    def read(self, offset: int, length: int) -> bytes:
        self._check(offset, length)
        return bytes(self.data[offset:offset + length])

    def write(self, offset: int, data: bytes) -> None:
        if self.observer is not None:
            self.observer(FlashAction("write", offset, data=bytes(data)), self.data)
        self._check(offset, len(data))
        current = self.data[offset:offset + len(data)]
        self.data[offset:offset + len(data)] = bytes(a & b for a, b in zip(current, data))

    def erase(self, start: int, end: int) -> None:
        if self.observer is not None:
            self.observer(FlashAction("erase", start, end=end), self.data)
        self._check(start, end - start)
        self.data[start:end] = b"\xff" * (end - start)

    def capacity(self) -> int:
        return len(self.data)


def map_flash_error(err: BaseException) -> RingFsError:
    """Turn a flash failure into the matching file store error."""
    kind = getattr(err, "kind", None)
    if kind is FlashErrorKind.NOT_ALIGNED:
        return RingFsError(ErrorKind.NOT_ALIGNED)
    if kind is FlashErrorKind.OUT_OF_BOUNDS:
        return RingFsError(ErrorKind.OUT_OF_BOUNDS)
    return RingFsError(ErrorKind.UNKNOWN)