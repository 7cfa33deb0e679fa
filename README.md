# norring

`norring` is a small ring file store for NOR flash. Files are written one
after another around a circular data area. When the area fills up, the oldest
files are deleted and their space is erased to make room. A directory area
records where each file starts. The directory and the data area each carry a
12-byte header. When the store is opened, it checks both headers. It formats
a blank disk, and it rebuilds whichever region is damaged from the other.

The package also has a handler for the control requests a USB host sends to
one HID interface. It answers descriptor, report, idle and protocol requests.

## Installing

```
pip install norring
```

The package needs no third-party libraries.

## Modules

- `norring.ring_fs`: the file-handle types. It defines `RingFs` (the abstract
  store interface), `RingFsWriter`, `RingFsReader`, `FileDescriptor`,
  `FileState`, `RingFsError` and `ErrorKind`.
- `norring.flash`: the flash devices. It defines the abstract `NorFlash` and
  the in-memory `MemoryFlash`, along with `FlashError`, `FlashErrorKind`,
  `FlashAction` and `map_flash_error`.
- `norring.norflash_ring_fs`: `NorflashRingFs`, the ring store laid out on a
  `NorFlash`.
- `norring.hid_control`: `HidControl` and the request types, plus
  `RequestHandler`, `hid_class_descriptor`, `report_id_try_from` and
  `SHARED_REPORT_DESC`. `SHARED_REPORT_DESC` is a combined report descriptor
  for keyboard, mouse, system control and consumer control.

## The ring store

`MemoryFlash(size, erase_size=64, observer=None)` keeps a NOR flash in memory:

- A write can only clear bits, because it ANDs the new bytes into the old ones.
- An erase sets a range back to `0xff`.
- An access outside the buffer raises `FlashError` with kind
  `FlashErrorKind.OUT_OF_BOUNDS`.

The optional observer is called before each write and erase. It receives a
`FlashAction` and the raw buffer. It may change the buffer, or raise
`FlashError` to make the operation fail, which is useful for simulating power
loss.

To use real hardware, subclass `NorFlash`. Set `erase_size`, and implement
`read(offset, length)`, `write(offset, data)` and `erase(start, end)`.

```python
from norring.flash import MemoryFlash
from norring.norflash_ring_fs import NorflashRingFs

flash = MemoryFlash(512, erase_size=64)
fs = NorflashRingFs(flash, size=512, dir_size=64, page_size=16, base=0)

payload = bytes(range(30))
with fs.create_file() as writer:
    # The first four bytes of a file are its total length, little-endian.
    writer.write((len(payload) + 4).to_bytes(4, "little"))
    writer.write(payload)
    location = writer.location()

with fs.file_reader_by_index(0) as reader:   # 0 is the newest file
    data = reader.read(34)                   # returns bytes

with fs.file_reader_by_location(location) as reader:
    same = reader.read(34)
```

The constructor checks the layout parameters and raises `ValueError` if they
do not fit together:

- `base` must be a multiple of `dir_size`.
- `size` and `dir_size` must be multiples of the flash erase size.
- `page_size` must divide the erase size and be at least 4.
- `dir_size` must be at least 20.

How files open and close:

- Only one writer can be open at a time, and a writer cannot open while any
  reader is open. Any number of readers can be open together, but no reader
  can open while a writer is open. A conflict raises `RingFsError` with kind
  `ErrorKind.IN_USE`.
- The first write to a new file must start with the 4-byte length. Otherwise
  the store raises `ErrorKind.MISSING_FILE_LENGTH`.
- A length too large for the disk raises `ErrorKind.FILE_TOO_LARGE`.
- Writing past the declared length raises `ErrorKind.FILE_OVERRUN`.
- A writer closes itself once the declared length has been written. A reader
  closes itself once the whole file has been read. Any error also closes the
  file.
- Using a closed file raises `ErrorKind.FILE_CLOSED`.
- An index that does not exist raises `ErrorKind.FILE_NOT_FOUND`.
- Leaving a `with` block closes the handle.

When the data area wraps around, a file can be split across the end of the
disk and the start of the data area. Reading such a file returns it in one
piece.

Inside the store, flash errors are converted with `map_flash_error` and raised
as `RingFsError`:

- `FlashErrorKind.NOT_ALIGNED` becomes `ErrorKind.NOT_ALIGNED`.
- `FlashErrorKind.OUT_OF_BOUNDS` becomes `ErrorKind.OUT_OF_BOUNDS`.
- Anything else becomes `ErrorKind.UNKNOWN`.

## HID control requests

```python
from norring.hid_control import (
    HidControl, HidState, Recipient, Request, RequestHandler, RequestType,
    SHARED_REPORT_DESC,
)

control = HidControl(0, SHARED_REPORT_DESC, HidState(), RequestHandler())

req = Request(RequestType.STANDARD, Recipient.INTERFACE,
              Request.GET_DESCRIPTOR, value=0x2200, index=0, length=255)
response = control.control_in(req, 255)
assert response.accepted and response.data == SHARED_REPORT_DESC
```

The two entry points handle different directions:

- `control_in(req, size)` answers device-to-host requests.
- `control_out(req, data)` answers host-to-device requests.

Each returns a `Response`, or `None` when the request is not addressed to this
interface. A `Response` has `accepted` and `data`.

Supported requests:

- **Descriptors:** `GET_DESCRIPTOR` returns the report descriptor or the 9-byte
  HID class descriptor.
- **Idle rate:** `SET_IDLE` and `GET_IDLE` pass the rate to the request handler
  in milliseconds. A duration of zero means "forever".
- **Reports:** `SET_REPORT` and `GET_REPORT` go to the request handler.
- **Protocol:** `GET_PROTOCOL` always answers report protocol. `SET_PROTOCOL`
  accepts only report protocol; it rejects boot protocol and logs a warning.

The base `RequestHandler` keeps idle rates and reports in memory. Subclass it
to connect real report sources. Without a handler, idle and report requests
are rejected, except `SET_IDLE`, which is still accepted.

`HidControl.reset()` clears `HidState.out_report_offset`.

`hid_class_descriptor(report_descriptor)` builds the HID class descriptor.

`report_id_try_from(value)` decodes the report kind and number from a
request's value field. It raises `ValueError` for an unknown kind.

## What it does not do

- The package does not drive any hardware. It has no flash driver beyond
  `MemoryFlash`.
- It has no USB device stack. `HidControl` only decides the answer to a control
  request it is handed; setting up endpoints and moving packets is left to the
  caller.
- There is no command-line tool.

## Running the tests

```
pip install -e ".[test]"
pytest
```