"""Control request handling for a USB HID interface.

Answers the standard and class specific control requests a host sends to a
HID interface: descriptor requests, idle rate, reports and protocol.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import ClassVar, Dict, Optional

logger = logging.getLogger(__name__)

HID_DESC_DESCTYPE_HID = 0x21
HID_DESC_DESCTYPE_HID_REPORT = 0x22
HID_DESC_SPEC_1_11 = bytes([0x11, 0x01])
HID_DESC_COUNTRY_UNSPEC = 0x00

HID_REQ_SET_IDLE = 0x0A
HID_REQ_GET_IDLE = 0x02
HID_REQ_GET_REPORT = 0x01
HID_REQ_SET_REPORT = 0x09
HID_REQ_GET_PROTOCOL = 0x03
HID_REQ_SET_PROTOCOL = 0x0B

_IDLE_FOREVER = 0xFFFFFFFF

# Keyboard (NKRO, report 6), mouse (report 2), system control (report 3)
# and consumer control (report 4) report descriptors, back to back.
SHARED_REPORT_DESC = bytes([
    # keyboard, 59 bytes
    0x05, 0x01, 0x09, 0x06, 0xA1, 0x01, 0x85, 0x06,
    0x05, 0x07, 0x19, 0xE0, 0x29, 0xE7, 0x15, 0x00,
    0x25, 0x01, 0x95, 0x08, 0x75, 0x01, 0x81, 0x02,
    0x05, 0x07, 0x19, 0x00, 0x29, 0xFE, 0x15, 0x00,
    0x25, 0x01, 0x95, 0xFF, 0x75, 0x01, 0x81, 0x02,
    0x05, 0x08, 0x19, 0x01, 0x29, 0x05, 0x95, 0x05,
    0x75, 0x01, 0x91, 0x02, 0x95, 0x01, 0x75, 0x03,
    0x91, 0x01, 0xC0,
    # mouse, 73 bytes
    0x05, 0x01, 0x09, 0x02, 0xA1, 0x01, 0x85, 0x02,
    0x09, 0x01, 0xA1, 0x00, 0x05, 0x09, 0x19, 0x01,
    0x29, 0x08, 0x15, 0x00, 0x25, 0x01, 0x95, 0x08,
    0x75, 0x01, 0x81, 0x02, 0x05, 0x01, 0x09, 0x30,
    0x09, 0x31, 0x15, 0x81, 0x25, 0x7F, 0x95, 0x02,
    0x75, 0x08, 0x81, 0x06, 0x09, 0x38, 0x15, 0x81,
    0x25, 0x7F, 0x95, 0x01, 0x75, 0x08, 0x81, 0x06,
    0x05, 0x0C, 0x0A, 0x38, 0x02, 0x15, 0x81, 0x25,
    0x7F, 0x95, 0x01, 0x75, 0x08, 0x81, 0x06, 0xC0,
    0xC0,
    # system control, 25 bytes
    0x05, 0x01, 0x09, 0x80, 0xA1, 0x01, 0x85, 0x03,
    0x19, 0x01, 0x2A, 0xB7, 0x00, 0x15, 0x01, 0x26,
    0xB7, 0x00, 0x95, 0x01, 0x75, 0x10, 0x81, 0x00,
    0xC0,
    # consumer control, 25 bytes
    0x05, 0x0C, 0x09, 0x01, 0xA1, 0x01, 0x85, 0x04,
    0x19, 0x01, 0x2A, 0xA0, 0x02, 0x15, 0x01, 0x26,
    0xA0, 0x02, 0x95, 0x01, 0x75, 0x10, 0x81, 0x00,
    0xC0,
])


class RequestType(enum.Enum):
    """The type field of a control request."""

    STANDARD = 0
    CLASS = 1
    VENDOR = 2
    RESERVED = 3


class Recipient(enum.Enum):
    """The recipient field of a control request."""

    DEVICE = 0
    INTERFACE = 1
    ENDPOINT = 2
    OTHER = 3
    RESERVED = 4


@dataclass(frozen=True)
class Request:
    """A control request received in a setup packet."""

    GET_DESCRIPTOR: ClassVar[int] = 6

    request_type: RequestType
    recipient: Recipient
    request: int
    value: int = 0
    index: int = 0
    length: int = 0


class ReportKind(enum.Enum):
    """Whether a report goes to the host, from the host, or is a feature."""

    IN = 1
    OUT = 2
    FEATURE = 3


@dataclass(frozen=True)
class ReportId:
    """A report identified by its kind and number."""

    kind: ReportKind
    id: int


@dataclass(frozen=True)
class Response:
    """The answer to a control request; ``data`` is sent for accepted IN requests."""

    accepted: bool
    data: bytes = b""

    @classmethod
    def accept(cls, data: bytes = b"") -> Response:
        return cls(True, bytes(data))

    @classmethod
    def reject(cls) -> Response:
        return cls(False)


class RequestHandler:
    """Application hooks for HID class requests.

    The base handler keeps idle rates and reports in memory; subclasses
    override the hooks to connect them to real report sources.
    """

    def __init__(self) -> None:
        self.idle_rates: Dict[Optional[ReportId], int] = {}
        self.reports: Dict[ReportId, bytes] = {}

    def set_idle_ms(self, report_id: Optional[ReportId], duration_ms: int) -> None:
        """Set the idle rate of a report, or of all reports when ``report_id`` is None."""
        if report_id is None:
            self.idle_rates.clear()
        self.idle_rates[report_id] = duration_ms

    def get_idle_ms(self, report_id: Optional[ReportId]) -> Optional[int]:
        """Return the idle rate in milliseconds, or None if unknown."""
        if report_id in self.idle_rates:
            return self.idle_rates[report_id]
        return self.idle_rates.get(None)

    def set_report(self, report_id: ReportId, data: bytes) -> Response:
        """Receive a report from the host."""
        self.reports[report_id] = bytes(data)
        return Response.accept()

    def get_report(self, report_id: ReportId, size: int) -> Optional[bytes]:
        """Return up to ``size`` bytes of a report, or None to reject."""
        report = self.reports.get(report_id)
        if report is None:
            return None
        return report[:size]


@dataclass
class HidState:
    """State shared between the control handler and the report reader."""

    out_report_offset: int = 0


def report_id_try_from(value: int) -> ReportId:
    """Decode the report id in the value field of a report request."""
    try:
        kind = ReportKind(value >> 8)
    except ValueError:
        raise ValueError(f"invalid report type in request value {value:#06x}") from None
    return ReportId(kind, value & 0xFF)


def hid_class_descriptor(report_descriptor: bytes) -> bytes:
    """Build the 9 byte HID class descriptor for a report descriptor."""
    length = len(report_descriptor)
    return bytes([
        9,
        HID_DESC_DESCTYPE_HID,
        HID_DESC_SPEC_1_11[0],
        HID_DESC_SPEC_1_11[1],
        HID_DESC_COUNTRY_UNSPEC,
        1,
        HID_DESC_DESCTYPE_HID_REPORT,
        length & 0xFF,
        (length >> 8) & 0xFF,
    ])


def _idle_report_id(value: int) -> Optional[ReportId]:
    report = value & 0xFF
    return ReportId(ReportKind.IN, report) if report != 0 else None


class HidControl:
    """Handles control requests addressed to one HID interface."""

    def __init__(
        self,
        if_num: int,
        report_descriptor: bytes,
        state: Optional[HidState] = None,
        request_handler: Optional[RequestHandler] = None,
    ) -> None:
        self.if_num = if_num
        self.report_descriptor = bytes(report_descriptor)
        self.state = state if state is not None else HidState()
        self.request_handler = request_handler
        self.hid_descriptor = hid_class_descriptor(self.report_descriptor)

    def reset(self) -> None:
        """Forget any partly received OUT report."""
        self.state.out_report_offset = 0

    def control_out(self, req: Request, data: bytes) -> Optional[Response]:
        """Answer a host-to-device request; None if it is not for this interface."""
        if (req.request_type, req.recipient, req.index) != (
            RequestType.CLASS,
            Recipient.INTERFACE,
            self.if_num,
        ):
            return None

        handler = self.request_handler
        if req.request == HID_REQ_SET_IDLE:
            if handler is not None:
                duration = req.value >> 8
                duration = _IDLE_FOREVER if duration == 0 else 4 * duration
                handler.set_idle_ms(_idle_report_id(req.value), duration)
            return Response.accept()
        if req.request == HID_REQ_SET_REPORT:
            try:
                report_id = report_id_try_from(req.value)
            except ValueError:
                return Response.reject()
            if handler is None:
                return Response.reject()
            return handler.set_report(report_id, bytes(data))
        if req.request == HID_REQ_SET_PROTOCOL:
            if req.value == 1:
                return Response.accept()
            logger.warning("HID Boot Protocol is unsupported.")
            return Response.reject()
        return Response.reject()

    def control_in(self, req: Request, size: int) -> Optional[Response]:
        """Answer a device-to-host request; None if it is not for this interface."""
        if req.index != self.if_num:
            return None

        kind = (req.request_type, req.recipient)
        if kind == (RequestType.STANDARD, Recipient.INTERFACE):
            if req.request != Request.GET_DESCRIPTOR:
                return Response.reject()
            descriptor_type = (req.value >> 8) & 0xFF
            if descriptor_type == HID_DESC_DESCTYPE_HID_REPORT:
                return Response.accept(self.report_descriptor)
            if descriptor_type == HID_DESC_DESCTYPE_HID:
                return Response.accept(self.hid_descriptor)
            return Response.reject()

        if kind == (RequestType.CLASS, Recipient.INTERFACE):
            handler = self.request_handler
            if req.request == HID_REQ_GET_REPORT:
                try:
                    report_id = report_id_try_from(req.value)
                except ValueError:
                    return Response.reject()
                report = handler.get_report(report_id, size) if handler else None
                if report is None:
                    return Response.reject()
                if len(report) > size:
                    raise ValueError("report larger than the requested size")
                return Response.accept(report)
            if req.request == HID_REQ_GET_IDLE:
                if handler is None:
                    return Response.reject()
                duration = handler.get_idle_ms(_idle_report_id(req.value))
                if duration is None:
                    return Response.reject()
                units = duration // 4
                return Response.accept(bytes([units if units <= 0xFF else 0]))
            if req.request == HID_REQ_GET_PROTOCOL:
                return Response.accept(b"\x01")
            return Response.reject()

        return None