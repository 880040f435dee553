"""Scubapro / Uwatec Smart family (G2, G3, Aladin, Galileo, Luna, Mantis, Meridian).

USB HID and BLE carry ``[length, command, payload]`` packets. The serial
link (Smart/Galileo cradles) wraps each command in a fixed preamble with an
xor8 checksum, echoes it back and appends an ACK. The device hands over all
dives newer than a timestamp as one blob that is split by a backward search
for the dive header marker.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field

from divectl.core.errors import DataFormatError, DivectlError, ProtocolError
from divectl.core.model import Direction, DeviceInfo, ProtocolDive, Sample, SampleEvent, TransportType
from divectl.core.primitives import bcd2dec, search_backward, xor8
from divectl.protocols.base import BaseProtocol
from divectl.transports.base import Transport
from divectl.transports.ble_gatt import BLEGATTTransport
from divectl.transports.rfcomm import parse_bluetooth_address
from divectl.transports.serial_port import SerialTransport
from divectl.transports.usbhid import USBHIDTransport, enumerate_hid

LOGGER = logging.getLogger(__name__)

BAUDRATE = 57600
VENDOR_ID = 0x2E6C
PRODUCT_IDS = (0x3201, 0x3211, 0x4201, 0x1201, 0x2101, 0x2401, 0x2006)

PACKETSIZE_USBHID_RX = 64
PACKETSIZE_USBHID_TX = 32
MAXRETRIES = 2

CMD_MODEL = 0x10
CMD_HARDWARE = 0x11
CMD_SOFTWARE = 0x13
CMD_SERIAL = 0x14
CMD_DEVTIME = 0x1A
CMD_HANDSHAKE1 = 0x1B
CMD_HANDSHAKE2 = 0x1C
CMD_DATA = 0xC4
CMD_SIZE = 0xC6

OK = 0x01
ACK = 0x11
NAK = 0x66

SERIAL_PREAMBLE = bytes((0xFF, 0xFF, 0xFF, 0xA6, 0x59, 0xBD, 0xC2))
HANDSHAKE_PARAMS = bytes((0x10, 0x27, 0x00, 0x00))
DIVE_HEADER = bytes((0xA5, 0xA5, 0x5A, 0x5A))

MODELS = {
    0x10: "Smart Pro",
    0x11: "Galileo Sol",
    0x12: "Galileo Luna",
    0x13: "Galileo Terra",
    0x14: "Aladin TEC",
    0x15: "Aladin TEC 2G",
    0x16: "Aladin 2G",
    0x17: "Aladin Sport Matrix",
    0x18: "Smart TEC",
    0x19: "Smart Z",
    0x1A: "Meridian",
    0x1B: "Chromis",
    0x1C: "Mantis",
    0x1D: "Mantis 2",
    0x1E: "G2",
    0x1F: "Aladin Sport Matrix",
    0x20: "Aladin H Matrix",
    0x21: "G2 TEK",
    0x22: "Aladin Square",
    0x23: "Luna 2.0",
    0x24: "G2 Console",
    0x25: "Aladin A1",
    0x28: "Aladin A2",
    0x31: "G2 TEK",
    0x32: "G2",
    0x34: "G3",
    0x42: "G2 HUD",
    0x50: "Luna 2.0",
    0x51: "Luna 2.0",
}

HEART_RATE_MODELS = frozenset({0x11, 0x12, 0x13, 0x1E, 0x21, 0x24, 0x32, 0x34})

SAMPLE_DEPTH = 0x01
SAMPLE_TEMPERATURE = 0x02
SAMPLE_TANK_PRESSURE = 0x03
SAMPLE_RBT = 0x04
SAMPLE_HEARTBEAT = 0x05
SAMPLE_BEARING = 0x06
SAMPLE_TIME = 0x07
SAMPLE_ALARM = 0x08
SAMPLE_NDL = 0x0A
SAMPLE_DECO_STOP = 0x0B
SAMPLE_GAS_SWITCH = 0x0C

ALARM_NAMES = {
    0x01: "ascent",
    0x02: "maxdepth",
    0x03: "safetystop",
    0x04: "violation",
    0x05: "po2_high",
    0x06: "po2_low",
    0x07: "battery_low",
    0x08: "decostop_missed",
}

DEFAULT_SAMPLE_INTERVAL = 4


def model_name(model: int) -> str:
    return MODELS.get(model, f"Unknown (0x{model:02x})")


def supports_heart_rate(model: int) -> bool:
    return model in HEART_RATE_MODELS


def extract_dives(data: bytes) -> list[ProtocolDive]:
    """Split a download blob into dives, newest (last in memory) first.

    Each dive starts with ``A5 A5 5A 5A`` and a little-endian length. A
    candidate that would overrun the following dive is dropped.
    """
    dives: list[ProtocolDive] = []
    previous = len(data)
    start = len(data) - len(DIVE_HEADER)
    while start >= 0:
        current = search_backward(data, DIVE_HEADER, start)
        if current < 0:
            break
        if current + 12 <= len(data):
            length = struct.unpack_from("<I", data, current + 4)[0]
            if 12 <= length and current + length <= previous:
                dive = data[current : current + length]
                dives.append(
                    ProtocolDive(
                        fingerprint=dive[8:12],
                        timestamp=struct.unpack_from("<I", dive, 8)[0],
                        data=dive,
                    )
                )
            else:
                LOGGER.debug("Skipping dive marker at %d with length %d", current, length)
        previous = current
        start = current - 1
    return dives


@dataclass(frozen=True)
class DiveHeader:
    length: int
    timestamp: int
    max_depth: float
    min_temp: float
    dive_mode: int
    gases: tuple[tuple[int, int, int], ...] = field(default_factory=tuple)


def parse_dive_header(data: bytes) -> DiveHeader | None:
    """Max depth in meters, minimum temperature in Celsius, gases as ``(o2, he, depth)``."""
    if len(data) < 18 or data[:4] != DIVE_HEADER:
        return None
    length, timestamp = struct.unpack_from("<II", data, 4)
    max_depth, min_temp = struct.unpack_from("<Hh", data, 12)
    gases = []
    offset = 18
    for _ in range(data[17]):
        if offset + 8 > len(data):
            break
        gases.append((data[offset], data[offset + 1], struct.unpack_from("<H", data, offset + 2)[0]))
        offset += 8
    return DiveHeader(
        length=length,
        timestamp=timestamp,
        max_depth=max_depth / 100.0,
        min_temp=min_temp / 10.0,
        dive_mode=data[16],
        gases=tuple(gases),
    )


def _u24(data: bytes, offset: int) -> int:
    return data[offset] | (data[offset + 1] << 8) | (data[offset + 2] << 16)


def parse_samples(data: bytes, interval: int = DEFAULT_SAMPLE_INTERVAL) -> list[Sample]:
    """Decode the type-tagged sample stream.

    A depth record opens a new sample. The other records attach to the
    current one. Unknown types below 0x80 skip one byte.
    """
    samples: list[Sample] = []
    current: Sample | None = None
    time = 0
    offset = data.find(bytes((SAMPLE_DEPTH,)))
    if offset < 0:
        return samples

    while offset < len(data):
        kind = data[offset]
        offset += 1
        if kind == SAMPLE_DEPTH:
            if current is not None:
                samples.append(current)
                time += interval
                current = None
            if offset + 3 > len(data):
                break
            current = Sample(time=time, depth=_u24(data, offset) / 10000.0)
            offset += 3
        elif kind == SAMPLE_TIME:
            offset += 4
        elif current is None:
            continue
        elif kind == SAMPLE_TEMPERATURE and offset + 2 <= len(data):
            current.temperature = struct.unpack_from("<h", data, offset)[0] / 100.0
            offset += 2
        elif kind == SAMPLE_TANK_PRESSURE and offset + 3 <= len(data):
            raw = _u24(data, offset)
            current.tank = (raw >> 20) & 0x0F
            current.pressure = (raw & 0x0FFFFF) / 1000.0
            offset += 3
        elif kind == SAMPLE_RBT and offset < len(data):
            current.rbt = data[offset]
            offset += 1
        elif kind == SAMPLE_HEARTBEAT and offset + 2 <= len(data):
            current.heartbeat = data[offset]
            offset += 2
        elif kind == SAMPLE_BEARING and offset + 2 <= len(data):
            current.bearing = struct.unpack_from("<H", data, offset)[0]
            offset += 2
        elif kind == SAMPLE_ALARM and offset < len(data):
            alarm = data[offset]
            current.events.append(SampleEvent(ALARM_NAMES.get(alarm, f"alarm_{alarm}"), alarm))
            offset += 1
        elif kind == SAMPLE_NDL and offset + 2 <= len(data):
            current.ndl = struct.unpack_from("<H", data, offset)[0] * 60
            offset += 2
        elif kind == SAMPLE_DECO_STOP and offset + 3 <= len(data):
            current.deco_depth = struct.unpack_from("<H", data, offset)[0] / 100.0
            current.deco_time = data[offset + 2] * 60
            offset += 3
        elif kind == SAMPLE_GAS_SWITCH and offset < len(data):
            current.gas_mix = data[offset]
            current.events.append(SampleEvent("gaschange", data[offset]))
            offset += 1
        elif kind < 0x80:
            offset += 1

    if current is not None:
        samples.append(current)
    return samples


class UwatecSmartProtocol(BaseProtocol):
    family_name = "Scubapro/Uwatec Smart"
    transport_types = TransportType.USBHID | TransportType.SERIAL | TransportType.BLE

    def __init__(self, transport: Transport | None = None) -> None:
        super().__init__(transport)
        self.timestamp = 0
        self._reset_state()

    def _reset_state(self) -> None:
        self.devtime = 0
        self._rx = bytearray()
        self._dives: dict[str, ProtocolDive] = {}

    def _reset_session(self) -> None:
        super()._reset_session()
        self._reset_state()

    def set_fingerprint(self, fingerprint: bytes) -> None:
        super().set_fingerprint(fingerprint)
        self.timestamp = struct.unpack_from("<I", fingerprint, 0)[0] if len(fingerprint) >= 4 else 0

    def _create_transport(self, address: str | None) -> Transport:
        if address:
            parsed = parse_bluetooth_address(address)
            if parsed is not None:
                return BLEGATTTransport(parsed[0])
            if address.startswith("/dev/") or address.upper().startswith("COM"):
                return SerialTransport(address, baudrate=BAUDRATE)
            return USBHIDTransport(VENDOR_ID, path=address)
        for product_id in PRODUCT_IDS:
            if enumerate_hid(VENDOR_ID, product_id):
                return USBHIDTransport(VENDOR_ID, product_id)
        return USBHIDTransport(VENDOR_ID)

    def _is_serial(self) -> bool:
        return self._require_transport().kind == TransportType.SERIAL

    def _handshake(self) -> None:
        if self._is_serial():
            self._require_transport().purge(Direction.ALL)
            if self.transfer(CMD_HANDSHAKE1, b"", 1) != bytes((OK,)):
                raise ProtocolError("Handshake stage 1 rejected")
            if self.transfer(CMD_HANDSHAKE2, HANDSHAKE_PARAMS, 1) != bytes((OK,)):
                raise ProtocolError("Handshake stage 2 rejected")
        self.read_device_info()

    def read_device_info(self) -> DeviceInfo:
        model = self.transfer(CMD_MODEL, b"", 1)[0]
        hardware = self.transfer(CMD_HARDWARE, b"", 1)[0]
        software = self.transfer(CMD_SOFTWARE, b"", 1)[0]
        serial = struct.unpack("<I", self.transfer(CMD_SERIAL, b"", 4))[0]
        self.devtime = struct.unpack("<I", self.transfer(CMD_DEVTIME, b"", 4))[0]
        self.device_info = DeviceInfo(
            model=model,
            firmware=bcd2dec(software),
            serial=serial,
            hardware_version=hardware,
            features=(model_name(model),),
        )
        return self.device_info

    def _send_packet(self, cmd: int, data: bytes) -> None:
        transport = self._require_transport()
        if len(data) + 2 > PACKETSIZE_USBHID_TX:
            raise DataFormatError(f"Command payload of {len(data)} bytes is too large")
        body = bytes((len(data) + 1, cmd)) + data
        if transport.kind == TransportType.USBHID:
            transport.write(b"\x00" + body.ljust(PACKETSIZE_USBHID_TX, b"\x00"))
        else:
            transport.write(body)

    def _send_serial(self, cmd: int, data: bytes) -> None:
        transport = self._require_transport()
        packet = bytearray(SERIAL_PREAMBLE)
        packet += bytes((len(data) + 1, 0x00, 0x00, 0x00, cmd)) + data
        packet.append(xor8(bytes(packet), 7, len(data) + 5))
        nretries = 0
        while True:
            try:
                transport.write(bytes(packet))
                reply = transport.read(len(packet) + 1)
                if reply[:-1] != packet:
                    raise ProtocolError("Serial echo does not match the command")
                if reply[-1] != ACK:
                    raise ProtocolError(f"Expected ACK, got {reply[-1]:02x}")
                return
            except DivectlError as exc:
                if nretries >= MAXRETRIES:
                    raise
                nretries += 1
                LOGGER.debug("Uwatec command %02x retry %d after: %s", cmd, nretries, exc)
                transport.sleep(0.1)
                transport.purge(Direction.INPUT)

    def _fill_packet(self) -> None:
        transport = self._require_transport()
        reader = getattr(transport, "read_packet", None)
        packet = reader() if reader is not None else transport.read(PACKETSIZE_USBHID_RX)
        if not packet:
            raise DataFormatError("Empty packet received")
        length = min(packet[0], len(packet) - 1)
        self._rx += packet[1 : 1 + length]

    def _fill_serial(self) -> None:
        transport = self._require_transport()
        header = transport.read(5)
        length = struct.unpack_from("<I", header, 0)[0]
        if length < 1:
            raise DataFormatError("Serial reply with zero length")
        data = transport.read(length - 1)
        checksum = transport.read(1)[0]
        if xor8(header + data) != checksum:
            raise DataFormatError("Serial reply checksum mismatch")
        self._rx += data

    def _receive(self, size: int) -> bytes:
        fill = self._fill_serial if self._is_serial() else self._fill_packet
        while len(self._rx) < size:
            fill()
        result = bytes(self._rx[:size])
        del self._rx[:size]
        return result

    def transfer(self, cmd: int, data: bytes = b"", size: int = 0) -> bytes:
        if self._is_serial():
            self._send_serial(cmd, data)
        else:
            self._send_packet(cmd, data)
        return self._receive(size) if size else b""

    def _timestamp_params(self) -> bytes:
        return struct.pack("<I", self.timestamp) + HANDSHAKE_PARAMS

    def download(self) -> bytes:
        """Fetch every dive newer than the fingerprint timestamp as one blob."""
        size = struct.unpack("<I", self.transfer(CMD_SIZE, self._timestamp_params(), 4))[0]
        if size == 0:
            return b""
        total = struct.unpack("<I", self.transfer(CMD_DATA, self._timestamp_params(), 4))[0]
        if total != size + 4:
            LOGGER.warning("Uwatec size mismatch: expected %d, got %d", size + 4, total)
        LOGGER.info("Downloading %d bytes from %s", size, self.family_name)
        return self._receive(size)

    def list_dives(self) -> list[str]:
        self._dives.clear()
        identifiers: list[str] = []
        for dive in extract_dives(self.download()):
            identifier = f"{dive.timestamp:08x}"
            if identifier in self._dives:
                continue
            self._dives[identifier] = dive
            identifiers.append(identifier)
        return identifiers

    def download_dive(self, identifier: str) -> ProtocolDive | None:
        try:
            return self._dives[identifier]
        except KeyError:
            raise DataFormatError(f"Unknown dive '{identifier}'; list dives first") from None

    def parse_samples(self, data: bytes) -> list[Sample]:
        return parse_samples(data)
