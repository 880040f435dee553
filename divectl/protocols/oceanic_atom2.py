"""Oceanic / Aeris / Sherwood / Hollis / Aqualung / Apeks (Atom2 family).

Memory is read in 16-byte pages. Every reply is an ACK byte, the payload
and an add8 (or add16) checksum. The logbook is a ring buffer of fixed-size
entries that point into a second ring buffer holding the profiles.
"""

from __future__ import annotations

import calendar
import logging
import struct
from dataclasses import dataclass
from datetime import datetime

from divectl.core.errors import (
    DataFormatError,
    DivectlError,
    InvalidArgumentError,
    ProtocolError,
    UnsupportedError,
)
from divectl.core.model import Direction, DeviceInfo, ProtocolDive, Sample, SampleEvent, TransportType
from divectl.core.primitives import add8, add16, bcd2dec, fahrenheit_to_celsius, feet_to_meters, psi_to_bar
from divectl.protocols.base import BaseProtocol
from divectl.transports.base import Transport
from divectl.transports.ble_gatt import BLEGATTTransport
from divectl.transports.rfcomm import parse_bluetooth_address
from divectl.transports.serial_port import SerialTransport

LOGGER = logging.getLogger(__name__)

BAUDRATE = 38400
BAUDRATE_FAST = 115200

PAGESIZE = 16
MAXRETRIES = 2
MAXDELAY = 16
RETRY_SLEEP_S = 0.1

CMD_INIT = 0xA8
CMD_VERSION = 0x84
CMD_HANDSHAKE = 0xE5
CMD_READ1 = 0xB1
CMD_READ8 = 0xB4
CMD_READ16 = 0xB8
CMD_READ16HI = 0xF6
CMD_WRITE = 0xB2
CMD_KEEPALIVE = 0x91
CMD_QUIT = 0x6A

ACK = 0x5A
NAK = 0xA5


@dataclass(frozen=True)
class ModelCode:
    name: str
    brand: str
    layout: str
    baudrate: int = BAUDRATE


MODEL_CODES = {
    0x4342: ModelCode("Atom 2.0", "Oceanic", "default"),
    0x444C: ModelCode("Atom 3.0", "Oceanic", "atom3"),
    0x4456: ModelCode("Atom 3.1", "Oceanic", "atom3"),
    0x4258: ModelCode("VT3", "Oceanic", "default"),
    0x4447: ModelCode("VT4", "Oceanic", "default"),
    0x4446: ModelCode("Geo 2.0", "Oceanic", "default"),
    0x4653: ModelCode("Geo 4.0", "Oceanic", "oc1"),
    0x4654: ModelCode("Veo 4.0", "Oceanic", "oc1"),
    0x4552: ModelCode("Pro Plus X", "Oceanic", "oc1"),
    0x4656: ModelCode("Pro Plus 4", "Oceanic", "oc1"),
    0x4646: ModelCode("i200", "Aqualung", "default"),
    0x4649: ModelCode("i200C", "Aqualung", "default"),
    0x4559: ModelCode("i300", "Aqualung", "default"),
    0x4648: ModelCode("i300C", "Aqualung", "default"),
    0x4744: ModelCode("i330R", "Aqualung", "i770r", BAUDRATE_FAST),
    0x4641: ModelCode("i450T", "Aqualung", "default"),
    0x4743: ModelCode("i470TC", "Aqualung", "oc1"),
    0x4642: ModelCode("i550", "Aqualung", "oc1"),
    0x4652: ModelCode("i550C", "Aqualung", "oc1"),
    0x455A: ModelCode("i750TC", "Aqualung", "oc1"),
    0x4651: ModelCode("i770R", "Aqualung", "i770r"),
    0x4741: ModelCode("DSX", "Apeks", "i770r", BAUDRATE_FAST),
    0x4647: ModelCode("Sage", "Sherwood", "oc1"),
    0x4655: ModelCode("Wisdom 4", "Sherwood", "oc1"),
    0x4542: ModelCode("TX1", "Hollis", "default"),
}


@dataclass(frozen=True)
class MemoryLayout:
    name: str
    memsize: int
    highmem: int
    cf_devinfo: int
    cf_pointers: int
    rb_logbook_begin: int
    rb_logbook_end: int
    rb_logbook_entry_size: int
    rb_logbook_direction: int
    rb_profile_begin: int
    rb_profile_end: int


LAYOUTS = {
    "default": MemoryLayout("default", 0x10000, 0, 0x0000, 0x0040, 0x0240, 0x0A40, 8, 1, 0x0A40, 0x10000),
    "oc1": MemoryLayout("oc1", 0x20000, 0, 0x0000, 0x0040, 0x0240, 0x0A40, 8, 1, 0x0A40, 0x1FE00),
    "atom3": MemoryLayout("atom3", 0x20000, 0, 0x0000, 0x0040, 0x0400, 0x0A40, 8, 1, 0x0A40, 0x1FE00),
    "i770r": MemoryLayout(
        "i770r", 0x640000, 0x40000, 0x0000, 0x0040, 0x2000, 0x10000, 16, 1, 0x40000, 0x640000
    ),
}

VERSION_PATTERNS = (
    ("OCEATOM3", "Atom 3", "atom3"),
    ("OC1WATCH", "OC1", "oc1"),
    ("OCWATCH R", "OC1", "oc1"),
    ("AQUA770R", "i770R", "i770r"),
    ("AQUAI550", "i550", "oc1"),
    ("AQUAI450", "i450T", "default"),
    ("AQUAI300", "i300", "default"),
    ("AQUAI200", "i200", "default"),
    ("OCEVEO30", "Veo 3.0", "default"),
    ("PROPLUS3", "Pro Plus 3", "default"),
    ("OCEANVT4", "VT4", "default"),
    ("OCEANVTX", "VTX", "default"),
    ("2M ATOM r", "Atom 2", "default"),
    ("HOLLDG04", "Hollis TX1", "default"),
    ("AQUAI330", "i330R", "i770r"),
    ("APEKSDSX", "DSX", "i770r"),
)

# Upper nibble of a classic sample word.
SAMPLE_NORMAL = 0x0
SAMPLE_TEMPERATURE = 0x1
SAMPLE_NDL = 0x2
SAMPLE_DECO_STOP = 0x3
SAMPLE_PRESSURE = 0x4
SAMPLE_ASCENT_RATE = 0x5
SAMPLE_BOOKMARK = 0x6
SAMPLE_TANK_SWITCH = 0xA
SAMPLE_SURFACE = 0xB


def command_checksum(cmd: int, addr_hi: int, addr_lo: int) -> int:
    return (0x100 - ((cmd + addr_hi + addr_lo) & 0xFF)) & 0xFF


def layout_for_version(version: str) -> tuple[str, MemoryLayout] | None:
    for pattern, model, layout in VERSION_PATTERNS:
        if pattern in version:
            return model, LAYOUTS[layout]
    return None


def ringbuffer_count(begin: int, end: int, entry_size: int, first: int, last: int) -> int:
    if last >= first:
        return (last - first) // entry_size
    return ((end - first) + (last - begin)) // entry_size


def ringbuffer_entries(
    begin: int,
    end: int,
    entry_size: int,
    first: int,
    last: int,
    direction: int = 1,
) -> list[int]:
    """Entry addresses from ``last`` back toward ``first``, newest first."""
    if not (begin <= first < end and begin <= last <= end):
        raise DataFormatError(
            f"Logbook pointers out of range: first={first:#06x} last={last:#06x}"
        )
    addresses: list[int] = []
    address = last
    for _ in range(ringbuffer_count(begin, end, entry_size, first, last)):
        if direction > 0:
            address -= entry_size
            if address < begin:
                address = end - entry_size
        else:
            address += entry_size
            if address >= end:
                address = begin
        addresses.append(address)
    return addresses


@dataclass(frozen=True)
class LogbookEntry:
    profile_pointer: int
    dive_number: int
    timestamp: int


def parse_logbook_entry(entry: bytes, extended: bool = False) -> LogbookEntry:
    """Decode one logbook ring entry.

    Classic 8-byte entries follow the profile pointer with the start time as
    BCD minute, hour, day, month and two-digit year, then the dive number.
    Extended 16-byte entries hold a 16-bit dive number and a little-endian
    epoch instead. An unreadable date gives a timestamp of 0.
    """
    size = 16 if extended else 8
    if len(entry) < size:
        raise DataFormatError("Logbook entry too short")
    pointer = struct.unpack_from("<H", entry, 0)[0]
    if extended:
        number, timestamp = struct.unpack_from("<HI", entry, 2)
        return LogbookEntry(pointer, number, timestamp)
    minute, hour, day, month, year = (bcd2dec(b) for b in entry[2:7])
    try:
        start = datetime(2000 + year, month, day, hour, minute)
    except ValueError:
        LOGGER.debug("Logbook entry has no valid date: %s", bytes(entry).hex())
        return LogbookEntry(pointer, entry[7], 0)
    return LogbookEntry(pointer, entry[7], calendar.timegm(start.timetuple()))


def parse_samples_classic(data: bytes, interval: int = 1) -> list[Sample]:
    """Two-byte words: 12 bits of depth in 1/16 ft, 4 bits of flags.

    Some flags are followed by extra bytes. Temperature carries forward.
    """
    samples: list[Sample] = []
    offset = 0
    time = 0
    temperature: float | None = None
    while offset + 2 <= len(data):
        word = struct.unpack_from("<H", data, offset)[0]
        offset += 2
        flags = (word >> 12) & 0x0F
        sample = Sample(time=time, depth=feet_to_meters((word & 0x0FFF) / 16.0), temperature=temperature)

        if flags == SAMPLE_TEMPERATURE and offset < len(data):
            temperature = fahrenheit_to_celsius(data[offset])
            sample.temperature = temperature
            offset += 1
        elif flags == SAMPLE_NDL and offset < len(data):
            sample.ndl = data[offset] * 60
            offset += 1
        elif flags == SAMPLE_DECO_STOP and offset + 1 < len(data):
            sample.deco_depth = feet_to_meters(data[offset])
            sample.deco_time = data[offset + 1] * 60
            offset += 2
        elif flags == SAMPLE_PRESSURE and offset + 1 < len(data):
            sample.pressure = psi_to_bar(struct.unpack_from("<H", data, offset)[0])
            offset += 2
        elif flags == SAMPLE_ASCENT_RATE:
            sample.events.append(SampleEvent("ascent"))
        elif flags == SAMPLE_BOOKMARK:
            sample.events.append(SampleEvent("bookmark"))
        elif flags == SAMPLE_TANK_SWITCH and offset < len(data):
            sample.tank = data[offset]
            sample.events.append(SampleEvent("gaschange", data[offset]))
            offset += 1
        elif flags == SAMPLE_SURFACE:
            sample.events.append(SampleEvent("surface"))

        samples.append(sample)
        time += interval
    return samples


def parse_samples_extended(data: bytes, interval: int = 1) -> list[Sample]:
    """Eight-byte records: depth 1/10 ft, temperature 1/10 degF, ppO2, NDL, ceiling, flags."""
    samples: list[Sample] = []
    time = 0
    for offset in range(0, len(data) - 7, 8):
        depth, temp = struct.unpack_from("<Hh", data, offset)
        ppo2, ndl, ceiling, flags = data[offset + 4 : offset + 8]
        sample = Sample(
            time=time,
            depth=feet_to_meters(depth / 10.0),
            temperature=fahrenheit_to_celsius(temp / 10.0),
        )
        if 0 < ppo2 < 0xFF:
            sample.ppo2 = ppo2 / 100.0
        if ndl == 0xFF:
            sample.deco_depth = feet_to_meters(ceiling)
        else:
            sample.ndl = ndl * 60
        if flags & 0x01:
            sample.events.append(SampleEvent("ascent"))
        if flags & 0x02:
            sample.events.append(SampleEvent("violation"))
        if flags & 0x04:
            sample.events.append(SampleEvent("bookmark"))
        samples.append(sample)
        time += interval
    return samples


class OceanicAtom2Protocol(BaseProtocol):
    family_name = "Oceanic/Atom2"
    transport_types = TransportType.SERIAL | TransportType.BLE

    def __init__(self, transport: Transport | None = None, *, model_code: int | None = None) -> None:
        super().__init__(transport)
        self.model_code = model_code
        self._reset_state()

    def _reset_state(self) -> None:
        self.layout = LAYOUTS["default"]
        self.version = b""
        self.cached_page: int | None = None
        self.cache = b""
        self.delay = 0
        self.sequence = 0

    def _reset_session(self) -> None:
        super()._reset_session()
        self._reset_state()

    def _create_transport(self, address: str | None) -> Transport:
        if not address:
            raise InvalidArgumentError("Oceanic needs a serial port or BLE address")
        parsed = parse_bluetooth_address(address)
        if parsed is not None:
            bt_address, is_ble = parsed
            if not is_ble:
                raise UnsupportedError("Oceanic devices do not use Bluetooth Classic")
            return BLEGATTTransport(bt_address)
        baudrate = BAUDRATE
        if self.model_code in MODEL_CODES:
            baudrate = MODEL_CODES[self.model_code].baudrate
        return SerialTransport(address, baudrate=baudrate)

    def _handshake(self) -> None:
        transport = self._require_transport()
        set_dtr = getattr(transport, "set_dtr", None)
        set_rts = getattr(transport, "set_rts", None)
        if set_dtr is not None and set_rts is not None:
            # Toggling RTS resets the interface PIC.
            set_dtr(True)
            set_rts(False)
            transport.sleep(0.1)
            set_rts(True)
            transport.sleep(0.1)
        transport.purge(Direction.ALL)
        self.read_version()

    def _shutdown(self) -> None:
        self.transfer(bytes((CMD_QUIT, 0x05, 0xA5)), NAK, 0, 0)

    def transfer(self, command: bytes, ack: int, response_size: int, crc_size: int = 1) -> bytes:
        """Send ``command`` and validate the reply, retrying up to MAXRETRIES times."""
        transport = self._require_transport()
        nretries = 0
        while True:
            try:
                if self.delay:
                    transport.sleep(self.delay / 1000.0)
                transport.write(command)
                packet = transport.read(1 + response_size + crc_size)
                if packet[0] != ack:
                    if packet[0] == (~ack & 0xFF):
                        raise ProtocolError(f"Command {command[0]:02x} not supported by device")
                    raise ProtocolError(f"Unexpected response byte {packet[0]:02x}")
                payload = packet[1 : 1 + response_size]
                if response_size and crc_size:
                    if crc_size == 2:
                        received = struct.unpack_from("<H", packet, 1 + response_size)[0]
                        calculated = add16(payload)
                    else:
                        received = packet[1 + response_size]
                        calculated = add8(payload)
                    if received != calculated:
                        raise DataFormatError(
                            f"Checksum mismatch: received {received:#x}, calculated {calculated:#x}"
                        )
                self.sequence += 1
                return bytes(payload)
            except DivectlError as exc:
                if nretries >= MAXRETRIES:
                    raise
                nretries += 1
                LOGGER.debug("Oceanic transfer retry %d after: %s", nretries, exc)
                if self.delay < MAXDELAY:
                    self.delay += 1
                transport.sleep(RETRY_SLEEP_S)
                transport.purge(Direction.INPUT)

    def read_version(self) -> None:
        self.version = self.transfer(bytes((CMD_VERSION,)), ACK, PAGESIZE)
        version_text = self.version.replace(b"\x00", b"").decode("ascii", "replace")
        LOGGER.info("Oceanic version string: %s", version_text)
        matched = layout_for_version(version_text)
        if matched is None:
            LOGGER.warning("Unknown Oceanic version %r; using default memory layout", version_text)
            self.device_info = DeviceInfo(model=0, firmware=0, serial=0, features=("Unknown Oceanic",))
            return
        model, self.layout = matched
        devinfo = self.read_memory(self.layout.cf_devinfo, PAGESIZE)
        serial = struct.unpack_from("<I", devinfo, 0)[0]
        self.device_info = DeviceInfo(
            model=self.model_code or 0,
            firmware=0,
            serial=serial,
            features=(model,),
        )

    def _read_page(self, page: int) -> bytes:
        if page > 0xFFFF:
            raise UnsupportedError(f"Page {page:#x} is beyond the 16-bit page range")
        command = bytes((CMD_READ1, (page >> 8) & 0xFF, page & 0xFF))
        return self.transfer(command, ACK, PAGESIZE)

    def read_memory(self, address: int, size: int) -> bytes:
        """Read through the single-page cache."""
        result = bytearray()
        while len(result) < size:
            page, offset = divmod(address, PAGESIZE)
            if page != self.cached_page:
                self.cache = self._read_page(page)
                self.cached_page = page
            length = min(PAGESIZE - offset, size - len(result))
            result += self.cache[offset : offset + length]
            address += length
        return bytes(result)

    def keepalive(self) -> None:
        self.transfer(bytes((CMD_KEEPALIVE, 0x05, 0xA5)), ACK, 0, 0)

    def read_raw(self, address: int, size: int) -> bytes | None:
        return self.read_memory(address, size)

    def list_dives(self) -> list[str]:
        layout = self.layout
        pointers = self.read_memory(layout.cf_pointers, 32)
        first, last = struct.unpack_from("<HH", pointers, 4)
        dives: list[str] = []
        for address in ringbuffer_entries(
            layout.rb_logbook_begin,
            layout.rb_logbook_end,
            layout.rb_logbook_entry_size,
            first,
            last,
            layout.rb_logbook_direction,
        ):
            entry = self.read_memory(address, layout.rb_logbook_entry_size)
            if len(self.fingerprint) >= 4 and entry[:4] == self.fingerprint[:4]:
                break
            profile_pointer = parse_logbook_entry(entry, self.is_extended_format()).profile_pointer
            if profile_pointer not in (0, 0xFFFF):
                dives.append(f"{address:08x}:{profile_pointer:04x}")
        return dives

    def download_dive(self, identifier: str) -> ProtocolDive | None:
        try:
            entry_text, pointer_text = identifier.split(":")
            entry_address = int(entry_text, 16)
            profile_pointer = int(pointer_text, 16)
        except ValueError as exc:
            raise DataFormatError(f"Malformed Oceanic dive identifier '{identifier}'") from exc

        layout = self.layout
        entry = self.read_memory(entry_address, layout.rb_logbook_entry_size)
        logbook = parse_logbook_entry(entry, self.is_extended_format())
        start = layout.rb_profile_begin + profile_pointer * PAGESIZE
        if not layout.rb_profile_begin <= start < layout.rb_profile_end:
            raise DataFormatError(f"Profile pointer {profile_pointer:#06x} outside profile ring")

        profile = bytearray()
        address = start
        max_size = layout.rb_profile_end - layout.rb_profile_begin
        while len(profile) < max_size:
            chunk = self.read_memory(address, PAGESIZE)
            if chunk == b"\xff" * PAGESIZE:
                break
            profile += chunk
            address += PAGESIZE
            if address >= layout.rb_profile_end:
                address = layout.rb_profile_begin
            if address == start:
                break

        return ProtocolDive(fingerprint=entry[:4], timestamp=logbook.timestamp, data=entry + bytes(profile))

    def is_extended_format(self) -> bool:
        return self.layout.name == "i770r"

    def parse_samples(self, data: bytes) -> list[Sample]:
        profile = data[self.layout.rb_logbook_entry_size :]
        if self.is_extended_format():
            return parse_samples_extended(profile)
        return parse_samples_classic(profile)
