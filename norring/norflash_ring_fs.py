"""A ring file store laid out on a NOR flash.

The disk starts with a directory region of ``dir_size`` bytes holding a
header and a list of file start offsets, followed by the file store, which
starts with a copy of the header. Files are written one after another and
wrap around to the start of the store; the oldest files are deleted as
their space is erased for new ones.
"""

from __future__ import annotations

from typing import Callable, Optional, TypeVar

from norring.flash import FlashError, NorFlash, map_flash_error
from norring.ring_fs import (
    ErrorKind,
    FileDescriptor,
    FileState,
    RingFs,
    RingFsError,
    RingFsReader,
    RingFsWriter,
)

FORMAT_MAGIC_NUMBER = (0x6E0FAC0B).to_bytes(4, "big")
FORMAT_VERSION = 1
END_PAGE_PATTERN = (0x00FFFF00).to_bytes(4, "little")
PREAMBLE_LEN = 4 * 2 + len(FORMAT_MAGIC_NUMBER)
U32_MAX = 0xFFFFFFFF
RING_END_MARKER = U32_MAX >> 1

_T = TypeVar("_T")


def _check_params(base: int, size: int, dir_size: int, page_size: int, erase_size: int) -> None:
    checks = [
        (base % dir_size == 0, "base must be a multiple of dir_size"),
        (size % erase_size == 0, "size must be a multiple of the erase size"),
        (erase_size <= dir_size, "erase size must not exceed dir_size"),
        (page_size <= erase_size, "page_size must not exceed the erase size"),
        (erase_size % page_size == 0, "erase size must be a multiple of page_size"),
        (page_size >= 4, "page_size must be at least 4"),
        (dir_size % erase_size == 0, "dir_size must be a multiple of the erase size"),
        (dir_size >= 20, "dir_size must be at least 20"),
    ]
    for ok, message in checks:
        if not ok:
            raise ValueError(message)


class NorflashRingFs(RingFs):
    """A ring file store on a region of a NOR flash.

    Opening the store checks both header copies and formats or repairs
    the disk as needed.
    """

    def __init__(
        self,
        flash: NorFlash,
        size: int,
        dir_size: int,
        page_size: int,
        base: int = 0,
    ) -> None:
        erase_size = flash.erase_size
        _check_params(base, size, dir_size, page_size, erase_size)
        self.flash = flash
        self.base = base
        self.size = size
        self.dir_size = dir_size
        self.page_size = page_size
        self.erase_size = erase_size
        self.first_file_offset = self.align_next_page(dir_size + PREAMBLE_LEN)

        self.next_file_index = PREAMBLE_LEN
        self.oldest_file_index = PREAMBLE_LEN
        self.free_index = self.first_file_offset
        self._write_cache = bytearray(b"\xff" * page_size)
        self._cache_offset: Optional[int] = None
        self._writer = False
        self._read_counter = 0

        if self._check_formatted(0):
            self._init_dir_indices()
            if not self._check_formatted(dir_size):
                self._recover_store_from_dir()
            else:
                self._find_free_index()
        elif self._check_formatted(dir_size):
            self._recover_dir_from_store()
        else:
            self._create_header_page(0)
            self._create_header_page(dir_size)

    # -- file handles -------------------------------------------------

    def create_file(self) -> RingFsWriter:
        if self._writer or self._read_counter > 0:
            raise RingFsError(ErrorKind.IN_USE)
        self._writer = True
        return RingFsWriter(self, FileDescriptor.new_writer())

    def file_reader_by_index(self, index: int) -> RingFsReader:
        dir_index = self.next_file_index
        if index < 0 or index * 4 + PREAMBLE_LEN >= dir_index:
            raise RingFsError(ErrorKind.FILE_NOT_FOUND)
        start = self.read_u32(dir_index - index * 4 - 4)
        return self.file_reader_by_location(start)

    def file_reader_by_location(self, location: int) -> RingFsReader:
        if self._writer:
            raise RingFsError(ErrorKind.IN_USE)
        length = self.read_u32(location)
        self._read_counter += 1
        return RingFsReader(self, FileDescriptor.new_reader(location, length))

    def close_file(self, desc: FileDescriptor) -> None:
        if desc.state is FileState.CLOSED:
            return
        if desc.state is FileState.READER:
            self._read_counter -= 1
        else:
            self._writer = False
        desc.close()

    def write_file(self, desc: FileDescriptor, data: bytes) -> None:
        if desc.is_closed():
            raise RingFsError(ErrorKind.FILE_CLOSED)
        try:
            self._guarded_write_file(desc, bytes(data))
        except RingFsError:
            self.close_file(desc)
            raise
        if desc.offset >= desc.length:
            self.close_file(desc)

    def read_file(self, desc: FileDescriptor, size: int) -> bytes:
        if desc.is_closed():
            raise RingFsError(ErrorKind.FILE_CLOSED)
        try:
            result = self._guarded_read_file(desc, size)
        except RingFsError:
            self.close_file(desc)
            raise
        if desc.offset >= desc.length:
            self.close_file(desc)
        return result

    def _guarded_write_file(self, desc: FileDescriptor, data: bytes) -> None:
        if desc.location == 0:
            if len(data) < 4:
                raise RingFsError(ErrorKind.MISSING_FILE_LENGTH)
            length = int.from_bytes(data[:4], "little")
            if length > self.size - 4 - self.first_file_offset:
                raise RingFsError(ErrorKind.FILE_TOO_LARGE)

            # Taken before free space in case the directory page is recycled.
            index = self._take_next_file_index()
            start = self._free_space(length)

            self._write_u32(start, length)
            self._write_u32(index, start)
            self._commit_write_cache()

            desc.length = length
            desc.location = start

        count = len(data)
        if count > desc.length - desc.offset:
            raise RingFsError(ErrorKind.FILE_OVERRUN)

        offset = desc.location + desc.offset
        next_offset = offset + count

        if next_offset > self.size:
            if offset >= self.size:
                self._write(offset - self.size + self.first_file_offset + 4, data)
            else:
                split = self.size - offset
                self._write(offset, data[:split])
                self._write(self.first_file_offset + 4, data[split:])
        else:
            self._write(offset, data)
        desc.offset = next_offset - desc.location

    def _guarded_read_file(self, desc: FileDescriptor, size: int) -> bytes:
        count = max(0, min(size, desc.length - desc.offset))
        offset = desc.location + desc.offset
        next_offset = offset + count

        if next_offset > self.size:
            if offset >= self.size:
                data = self._read(offset - self.size + self.first_file_offset + 4, count)
            else:
                split = self.size - offset
                data = self._read(offset, split) + self._read(
                    self.first_file_offset + 4, count - split
                )
        else:
            data = self._read(offset, count)
        desc.offset = next_offset - desc.location
        return data

    # -- alignment ----------------------------------------------------

    def align_start_erase(self, offset: int) -> int:
        return offset - offset % self.erase_size

    def _align_start_page(self, offset: int) -> int:
        return offset - offset % self.page_size

    def align_next_page(self, offset: int) -> int:
        return self._align_start_page(offset + self.page_size - 1)

    # -- directory ----------------------------------------------------

    def _init_dir_indices(self) -> None:
        start = 0
        end = (self.dir_size - PREAMBLE_LEN - 4) >> 2
        live_start = 0

        while start < end:
            mid = (start + end) >> 1
            value = self.read_u32(PREAMBLE_LEN + mid * 4)
            if value == U32_MAX:
                end = mid
            else:
                start = mid + 1
                if value == 0:
                    live_start = start

        while live_start < end:
            mid = (live_start + end) >> 1
            value = self.read_u32(PREAMBLE_LEN + mid * 4)
            if value != 0:
                end = mid
            else:
                live_start = mid + 1

        self.next_file_index = PREAMBLE_LEN + start * 4
        self.oldest_file_index = PREAMBLE_LEN + live_start * 4

    def _find_free_index(self) -> None:
        if self.next_file_index == PREAMBLE_LEN:
            self.free_index = self.first_file_offset
            return
        offset = self.read_u32(self.next_file_index - 4)
        length = self.read_u32(offset)
        self.free_index = self.align_next_page(offset + length)
        if self.free_index > self.size:
            self.free_index = self.free_index - self.size + self.first_file_offset

    def _take_next_file_index(self) -> int:
        if self.next_file_index >= self.dir_size - 4:
            self.recycle_dir_page()
        index = self.next_file_index
        self.next_file_index += 4
        return index

    def _free_space(self, length: int) -> int:
        if length == 0:
            return self.free_index
        start = self.free_index

        start_erase = self.align_start_erase(start)
        page_end = self.align_next_page(start + length)

        if self.align_start_erase(page_end) > start_erase:
            erase_start = start_erase + self.erase_size
            if page_end < self.size:
                self._clear_space(
                    erase_start, self.align_start_erase(page_end) + self.erase_size
                )
            else:
                page_end = self.align_next_page(
                    start + length + 4 + self.first_file_offset - self.size
                )
                if erase_start < self.size:
                    self._clear_space(erase_start, self.size)
                self._clear_space(
                    self.dir_size, self.align_start_erase(page_end) + self.erase_size
                )
                if page_end > self.first_file_offset:
                    self._write_u32(
                        self.first_file_offset, page_end - self.first_file_offset
                    )
                    self._commit_write_cache()

        self.free_index = page_end
        return start

    def _clear_space(self, start: int, end: int) -> None:
        while self.oldest_file_index < self.next_file_index:
            offset = self.read_u32(self.oldest_file_index)
            if offset < start or offset >= end:
                break
            self.delete_oldest()

        self.erase(start, end)

        if start == self.dir_size:
            self._write(self.dir_size, self.header_sequence())

    def delete_oldest(self) -> None:
        """Mark the oldest live file as deleted."""
        if self.oldest_file_index < self.next_file_index:
            self._write_u32(self.oldest_file_index, 0)
            self.oldest_file_index += 4

    def _rebuild_dir(self, oldest: int) -> None:
        self.erase(0, self.dir_size)
        self.oldest_file_index = PREAMBLE_LEN
        index = PREAMBLE_LEN
        offset = oldest
        while True:
            length = self.read_u32(offset)
            if length == RING_END_MARKER:
                break
            self._write_u32(index, offset)
            index += 4
            offset = self.next_file_offset(offset, length)
        self.next_file_index = index
        self._find_free_index()
        self._write(0, self.header_sequence())
        self._write(self.dir_size - 4, END_PAGE_PATTERN)

    def recycle_dir_page(self) -> None:
        """Rewrite the directory so that it holds only the live files."""
        free_index = self.free_index
        erase_start = self.align_start_erase(free_index) + self.erase_size
        if erase_start + self.erase_size > self.size:
            erase_start = self.align_start_erase(self.first_file_offset) + self.erase_size
            self._clear_space(self.dir_size, erase_start + self.erase_size)
            self._write_u32(self.first_file_offset, RING_END_MARKER)
        else:
            self._clear_space(erase_start, erase_start + self.erase_size)

        oldest = self.read_u32(self.oldest_file_index)

        self._write_u32(free_index, RING_END_MARKER)
        self._write_u32(erase_start, oldest)

        self._rebuild_dir(oldest)

    def next_file_offset(self, offset: int, length: int) -> int:
        """Return where the file after the one at ``offset`` starts."""
        if length == U32_MAX:
            return self._next_page(offset)
        if length == RING_END_MARKER:
            mark = self.align_start_erase(offset) + self.erase_size
            if mark >= self.size:
                mark = self.align_start_erase(self.first_file_offset) + self.erase_size
            return self.read_u32(mark)
        page_end = self.align_next_page(offset + length)
        if page_end < self.size:
            return page_end
        return self.align_next_page(offset + length + 4 + self.first_file_offset - self.size)

    def _next_page(self, offset: int) -> int:
        following = self.align_next_page(offset + self.page_size)
        if following > self.size:
            return self.dir_size + PREAMBLE_LEN
        return following

    # -- format and recovery -----------------------------------------

    def _check_formatted(self, offset: int) -> bool:
        if self._read(self.dir_size - 4, 4) != END_PAGE_PATTERN:
            return False
        return self._read(offset, 12) == self.header_sequence()

    def header_sequence(self) -> bytes:
        """The 12 byte header written at the start of both disk regions."""
        version = ((FORMAT_VERSION << 24) | self.dir_size).to_bytes(4, "little")
        return FORMAT_MAGIC_NUMBER + version + self.size.to_bytes(4, "little")

    def _create_header_page(self, offset: int) -> None:
        end = self.dir_size if offset == 0 else offset + self.erase_size
        self.erase(offset, end)
        self._write(offset, self.header_sequence())
        if offset == 0:
            self._write(self.dir_size - 4, END_PAGE_PATTERN)

    def _recover_dir_from_store(self) -> None:
        offset = self.first_file_offset
        length = self.read_u32(offset)
        if length == U32_MAX:
            self._create_header_page(0)
            return
        while True:
            if length == RING_END_MARKER:
                self._rebuild_dir(self.next_file_offset(offset, length))
                return
            if length == U32_MAX:
                raise RingFsError(ErrorKind.UNRECOVERABLE_DISK)
            offset = self.align_next_page(offset + length)
            length = self.read_u32(offset)

    def _recover_store_from_dir(self) -> None:
        self.erase(self.dir_size, self.dir_size + self.erase_size)
        self._write(self.dir_size, self.header_sequence())

    # -- flash access -------------------------------------------------

    def _flash(self, action: Callable[[], _T]) -> _T:
        try:
            return action()
        except FlashError as err:
            raise map_flash_error(err) from err

    def _write_u32(self, offset: int, value: int) -> None:
        cache = self._cache_offset
        if cache is None or offset < cache or offset + 4 > cache + self.page_size:
            if cache is not None:
                self._commit_write_cache()
            self._cache_offset = self._align_start_page(offset)
        i = offset % self.page_size
        self._write_cache[i:i + 4] = value.to_bytes(4, "little")

    def _commit_write_cache(self) -> None:
        if self._cache_offset is None:
            return
        address = self.base + self._cache_offset
        page = bytes(self._write_cache)
        try:
            self._flash(lambda: self.flash.write(address, page))
        finally:
            self._write_cache[:] = b"\xff" * self.page_size
            self._cache_offset = None

    def _write(self, offset: int, data: bytes) -> None:
        if self._cache_offset is not None:
            self._commit_write_cache()
        self._flash(lambda: self.flash.write(self.base + offset, data))

    def erase(self, start: int, end: int) -> None:
        """Erase the disk range ``start`` to ``end``, flushing pending writes first."""
        if self._cache_offset is not None:
            self._commit_write_cache()
        self._flash(lambda: self.flash.erase(self.base + start, self.base + end))

    def read_u32(self, offset: int) -> int:
        """Read a little-endian word, seeing writes not yet flushed."""
        data = self._read(offset, 4)
        cache = self._cache_offset
        if cache is not None and offset >= cache and offset + 4 <= cache + self.page_size:
            i = offset % self.page_size
            data = bytes(a & b for a, b in zip(data, self._write_cache[i:i + 4]))
        return int.from_bytes(data, "little")

    def _read(self, offset: int, length: int) -> bytes:
        return self._flash(lambda: self.flash.read(self.base + offset, length))