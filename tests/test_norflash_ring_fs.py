import pytest

from norring.flash import FlashError, FlashErrorKind, MemoryFlash
from norring.norflash_ring_fs import NorflashRingFs
from norring.ring_fs import ErrorKind, RingFsError

DEFAULT_DSIZE = 512
DIR_SIZE = 64
PAGE_SIZE = 16
RING_END = 0xFFFFFFFF >> 1

FORMATTED = bytes([110, 15, 172, 11, 64, 0, 0, 1, 0, 2, 0, 0, 255, 255, 255, 255])


def le32(value):
    return value.to_bytes(4, "little")


def make_fs(flash):
    return NorflashRingFs(flash, size=flash.capacity(), dir_size=DIR_SIZE, page_size=PAGE_SIZE)


def len_prefixed_buf():
    return bytes(le32(154)[i] if i < 4 else i for i in range(154))


def test_ring_fs():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    data = bytes(range(30))
    with fs.create_file() as fw:
        fw.write(le32(34))
        fw.write(data)
        assert fw.is_closed()
    fr = fs.file_reader_by_index(0)
    rdata = fr.read(34)
    assert len(rdata) == 34
    assert rdata[:4] == le32(34)
    assert rdata[4:] == data
    assert fr.is_closed()
    fr.close()
    assert fr.is_closed()


def test_recycle_dir_page():
    stub = MemoryFlash(DEFAULT_DSIZE)
    buf = bytes(range(100))

    fs = make_fs(stub)
    for i in range(12):
        fw = fs.create_file()
        fw.write(le32(i + 34))
        fw.write(buf[i:i * 2 + 30])

    i = 12
    fw = fs.create_file()
    fw.write(le32(i * 2 + 34))
    fw.write(buf[i:i * 3 + 30])

    assert fs.oldest_file_index == 12
    assert fs.next_file_index == 44
    assert fs.read_u32(12) == 0x140
    assert fs.read_u32(40) == 0xE0
    fs.recycle_dir_page()

    assert fs.oldest_file_index == 12
    assert fs.next_file_index == 36
    assert fs.read_u32(12) == 0x1A0
    assert fs.read_u32(32) == 0xE0

    fw = fs.create_file()
    fw.write(le32(6))
    fw.write(buf[:2])

    fs.recycle_dir_page()
    assert fs.oldest_file_index == 12
    assert fs.next_file_index == 40
    assert fs.read_u32(12) == 0x1A0
    assert fs.read_u32(36) == 0x120
    assert fs.free_index == 0x130
    assert fs.read_u32(fs.free_index) == RING_END

    fs = make_fs(stub)
    fw = fs.create_file()
    fw.write(le32(7))
    fw.write(buf[:3])
    assert fs.free_index == 0x140


def test_marker_spans_end_recycle_dir_page():
    state = {"active": 0}
    oldest_offset = le32(272)

    def observer(action, raw):
        if state["active"] == 1 and action.op == "write" and action.offset == 128:
            if action.data[:4] == oldest_offset:
                raw[128:132] = oldest_offset
                raise FlashError(FlashErrorKind.OTHER)

    stub = MemoryFlash(DEFAULT_DSIZE, observer=observer)
    buf = bytes(range(200))

    fs = make_fs(stub)
    for i in range(4):
        n = i * 9 + 81
        fw = fs.create_file()
        fw.write(le32(n + 4))
        fw.write(buf[:n])

    state["active"] = 1
    assert fs.free_index == 496
    with pytest.raises(RingFsError) as info:
        fs.recycle_dir_page()
    assert info.value.kind is ErrorKind.UNKNOWN
    assert fs.next_file_offset(0x1F0, RING_END) == 272

    state["active"] = 0
    stub.data[0] = 0  # corrupt the directory

    fs = make_fs(stub)
    assert fs.oldest_file_index == 12
    assert fs.next_file_index == 20
    assert fs.free_index == 496
    assert fs.read_u32(80) == RING_END
    assert fs.read_u32(12) == 0x110
    assert fs.read_u32(16) == 0x180


def test_uninitialized_disk():
    stub = MemoryFlash(DEFAULT_DSIZE)
    make_fs(stub)
    assert bytes(stub.data[:16]) == FORMATTED
    assert bytes(stub.data[64:80]) == FORMATTED

    stub.data[12:16] = bytes([0, 0x01, 0, 0])
    fs = make_fs(stub)
    assert fs.oldest_file_index == 12
    assert fs.next_file_index == 16
    assert fs.free_index == 256
    assert bytes(stub.data[:16]) == bytes([110, 15, 172, 11, 64, 0, 0, 1, 0, 2, 0, 0, 0, 1, 0, 0])

    # damaged end page pattern: disk is formatted again
    stub.data[63] = 0xF0
    make_fs(stub)
    assert bytes(stub.data[:16]) == FORMATTED

    # corrupt empty directory
    stub.data[1] = 0
    stub.data[15] = 0
    make_fs(stub)
    assert bytes(stub.data[:16]) == FORMATTED
    assert bytes(stub.data[64:80]) == FORMATTED

    stub.data[64 + 15] = 0
    make_fs(stub)
    assert bytes(stub.data[64:80]) == bytes(
        [110, 15, 172, 11, 64, 0, 0, 1, 0, 2, 0, 0, 255, 255, 255, 0]
    )


def test_align():
    fs = NorflashRingFs(MemoryFlash(256), size=256, dir_size=64, page_size=16)
    assert fs.align_start_erase(63) == 0
    assert fs.align_start_erase(64) == 64
    assert fs.align_start_erase(65) == 64
    assert fs.align_start_erase(129) == 128
    assert fs.align_start_erase(0) == 0

    assert fs.align_next_page(15) == 16
    assert fs.align_next_page(16) == 16
    assert fs.align_next_page(17) == 32
    assert fs.align_next_page(0) == 0


def test_header_sequence():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    assert fs.header_sequence() == FORMATTED[:12]


def test_reader_writer_conflicts():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))

    fw = fs.create_file()
    fw.write(le32(5))
    assert not fw.is_closed()
    with pytest.raises(RingFsError) as info:
        fs.create_file()
    assert info.value.kind is ErrorKind.IN_USE
    with pytest.raises(RingFsError) as info:
        fs.file_reader_by_index(0)
    assert info.value.kind is ErrorKind.IN_USE

    fw.write(bytes([60]))
    assert fw.is_closed()

    fr1 = fs.file_reader_by_index(0)
    fr2 = fs.file_reader_by_index(0)

    buf1 = fr1.read(5)
    assert len(buf1) == 5
    with pytest.raises(RingFsError) as info:
        fs.create_file()
    assert info.value.kind is ErrorKind.IN_USE
    buf2 = fr2.read(5)
    assert len(buf2) == 5

    assert buf2 == bytes([5, 0, 0, 0, 60])
    assert buf1 == buf2

    with fs.create_file():
        pass
    fw = fs.create_file()
    fw.close()
    assert fw.is_closed()

    fr2 = fs.file_reader_by_index(0)
    buf2 = fr2.read(5)
    assert buf2 == bytes([5, 0, 0, 0, 60])


def test_create_file():
    stub = MemoryFlash(DEFAULT_DSIZE)
    fs = make_fs(stub)

    fw = fs.create_file()
    fw.write(le32(134))
    fw.write(b"0123456789abcdefghijklmnopqrstuvwxyz!@#$")
    assert not fw.is_closed()
    fw.write(bytes(range(90)))
    assert fw.is_closed(), "should auto close once full"
    start = fw.location()

    assert fs.read_u32(12) == 80

    fr = fs.file_reader_by_index(0)
    out = fr.read(140)
    assert len(out) == 134
    assert out[:4] == le32(134)
    data = out[4:]
    assert data[:10] == b"0123456789"
    assert sum(data[:130]) == 7545
    assert fr.is_closed()

    fr = fs.file_reader_by_location(start)
    assert fr.read(140) == out

    assert sum(stub.data[80:80 + 134]) == 7545 + 134


def test_fill_disk():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    buf = len_prefixed_buf()

    for i in range(3):
        fw = fs.create_file()
        fw.write(le32(54))
        fw.write(buf[i * 50:50 + i * 50])

    fw = fs.create_file()
    fw.write(buf)
    assert fs.read_u32(80) == 54
    assert fs.free_index == 432
    assert fs.next_file_index == 28

    # too big to fit at the end; split in two
    fw = fs.create_file()
    fw.write(le32(104))
    fw.write(buf[:100])
    assert fw.is_closed()

    fr = fs.file_reader_by_index(0)
    rbuf = fr.read(104)
    assert len(rbuf) == 104
    assert rbuf[4:] == buf[:100]

    fw = fs.create_file()
    fw.write(le32(24))
    fw.write(buf[130:150])

    assert fs.free_index == 144
    assert fs.next_file_index == 36
    assert fs.read_u32(12) == 0
    assert fs.read_u32(16) == 0
    assert fs.read_u32(20) == 208
    assert fs.read_u32(24) == 272
    assert fs.read_u32(28) == 432
    assert fs.read_u32(32) == 0x70

    assert fs.read_u32(0x50) == 32
    assert fs.read_u32(0x70) == 24


def test_recover_store_from_dir():
    stub = MemoryFlash(DEFAULT_DSIZE)
    fs = make_fs(stub)
    buf = len_prefixed_buf()

    for i in range(3):
        fw = fs.create_file()
        fw.write(le32(54))
        fw.write(buf[i * 50:50 + i * 50])

    fs.delete_oldest()
    fs.delete_oldest()
    fs.erase(64, 128)

    fs = make_fs(stub)
    assert fs.free_index == 80
    assert fs.next_file_index == 24
    assert fs.read_u32(12) == 0
    assert fs.read_u32(16) == 0
    assert fs.read_u32(20) == 208
    assert fs.read_u32(24) == 0xFFFFFFFF
    assert fs.read_u32(208) == 54

    assert bytes(stub.data[64:80]) == FORMATTED


def test_recover_dir_from_store():
    state = {"active": 0}

    def observer(action, raw):
        if state["active"] == 1:
            if action.op == "erase" and action.offset == 128 and action.end == 192:
                raise FlashError(FlashErrorKind.OTHER)
        elif state["active"] == 2:
            if action.op == "erase" and action.offset == 0 and action.end == 64:
                raw[0] = 0
                raise FlashError(FlashErrorKind.OTHER)

    stub = MemoryFlash(DEFAULT_DSIZE, observer=observer)
    buf = len_prefixed_buf()

    fs = make_fs(stub)
    for i in range(7):
        fw = fs.create_file()
        fw.write(le32(54))
        j = i % 3
        fw.write(buf[j * 50:50 + j * 50])
    assert fs.oldest_file_index == 16
    assert fs.next_file_index == 40
    assert fs.free_index == 96

    # no recovery needed
    fs = make_fs(stub)
    assert fs.oldest_file_index == 16
    assert fs.next_file_index == 40
    assert fs.free_index == 96

    state["active"] = 1
    with pytest.raises(RingFsError):
        fs.recycle_dir_page()
    state["active"] = 0

    # still no recovery needed
    fs = make_fs(stub)
    assert fs.free_index == 96
    assert fs.next_file_index == 40
    assert fs.read_u32(12) == 0
    assert fs.read_u32(16) == 0
    assert fs.read_u32(20) == 208
    assert fs.read_u32(36) == 464
    assert fs.read_u32(208) == 54

    state["active"] = 2
    with pytest.raises(RingFsError):
        fs.recycle_dir_page()
    state["active"] = 0

    # directory rebuilt from the store
    fs = make_fs(stub)
    fr = fs.file_reader_by_index(0)
    out = fr.read(54)
    assert len(out) == 54
    assert sum(out) == 1427

    assert fs.free_index == 96
    assert fs.next_file_index == 32
    assert fs.read_u32(12) == 0xD0
    assert fs.read_u32(16) == 0x110
    assert fs.read_u32(28) == 0x1D0
    assert fs.read_u32(80) == 16

    assert bytes(stub.data[:12]) == FORMATTED[:12]


def test_file_not_found_on_empty_disk():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    with pytest.raises(RingFsError) as info:
        fs.file_reader_by_index(0)
    assert info.value.kind is ErrorKind.FILE_NOT_FOUND


def test_missing_file_length_closes_writer():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    fw = fs.create_file()
    with pytest.raises(RingFsError) as info:
        fw.write(b"ab")
    assert info.value.kind is ErrorKind.MISSING_FILE_LENGTH
    assert fw.is_closed()
    with pytest.raises(RingFsError) as info:
        fw.write(le32(4))
    assert info.value.kind is ErrorKind.FILE_CLOSED


def test_file_too_large():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    fw = fs.create_file()
    with pytest.raises(RingFsError) as info:
        fw.write(le32(DEFAULT_DSIZE - 4 - 80 + 1))
    assert info.value.kind is ErrorKind.FILE_TOO_LARGE


def test_file_overrun():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    fw = fs.create_file()
    fw.write(le32(5))
    with pytest.raises(RingFsError) as info:
        fw.write(b"xy")
    assert info.value.kind is ErrorKind.FILE_OVERRUN
    assert fw.is_closed()


def test_read_in_pieces():
    fs = make_fs(MemoryFlash(DEFAULT_DSIZE))
    with fs.create_file() as fw:
        fw.write(le32(10) + b"abcdef")
    fr = fs.file_reader_by_index(0)
    assert fr.read(6) == le32(10) + b"ab"
    assert not fr.is_closed()
    assert fr.read(100) == b"cdef"
    assert fr.is_closed()
    with pytest.raises(RingFsError) as info:
        fr.read(1)
    assert info.value.kind is ErrorKind.FILE_CLOSED


@pytest.mark.parametrize(
    "size, dir_size, page_size",
    [(512, 64, 3), (512, 16, 16), (500, 64, 16), (512, 64, 128)],
)
def test_invalid_parameters(size, dir_size, page_size):
    with pytest.raises(ValueError):
        NorflashRingFs(MemoryFlash(512), size=size, dir_size=dir_size, page_size=page_size)