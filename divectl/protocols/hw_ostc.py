"""Heinrichs Weikamp OSTC / OSTC Mk2 / 2N / 2C over the serial cradle.

Single-byte ASCII commands. The dump command streams a 266-byte header
(preamble, serial, firmware) followed by the whole profile memory, whose
size depends on the firmware version. Individual dives are framed by
``FA FA`` and ``FD FD`` markers inside that memory.
"""

from __future__ import annotations

import calendar
import logging
import struct
from datetime import datetime

from divectl.core.errors import DataFormatError, DivectlError, InvalidArgumentError, ProtocolError
from divectl.core.model import Direction, DeviceInfo, ProtocolDive, TransportType
from divectl.core.primitives import search_backward, search_forward
from divectl.protocols.base import BaseProtocol
from divectl.transports.base import Transport
from divectl.transports.serial_port import SerialTransport

LOGGER = logging.getLogger(__name__)

BAUDRATE = 115200

SZ_HEADER = 266
SZ_FW_190 = 0x8000
SZ_FW_NEW = 0x10000
SZ_EEPROM = 256
SZ_MD2HASH = 18
FW_190 = 0x015A
DUMP_TIMEOUT_S = 60.0

CMD_DUMP = ord("a")
CMD_TIMESYNC = ord("b")
CMD_MD2HASH = ord("e")
CMD_RESET = ord("h")
CMD_EEPROM_READ = (ord("g"), ord("j"), ord("m"))
CMD_EEPROM_WRITE = (ord("d"), ord("i"), ord("n"))

PREAMBLE = bytes((0xAA, 0xAA, 0xAA, 0xAA, 0xAA, 0x55))
DIVE_START = bytes((0xFA, 0xFA))
DIVE_END = bytes((0xFD, 0xFD))


def model_for_serial(serial: int) -> tuple[int, str]:
    if serial > 7000:
        return 3, "OSTC 2C"
    if serial > 2048:
        return 2, "OSTC 2N"
    if serial > 300:
        return 1, "OSTC Mk2"
    return 0, "OSTC"


def profile_size(firmware: int) -> int:
    return SZ_FW_NEW if firmware > FW_190 else SZ_FW_190


def parse_header(header: bytes) -> DeviceInfo:
    if len(header) < SZ_HEADER or header[: len(PREAMBLE)] != PREAMBLE:
        raise DataFormatError("Invalid OSTC header preamble")
    serial = struct.unpack_from("<H", header, 6)[0]
    firmware = struct.unpack_from(">H", header, 264)[0]
    model, name = model_for_serial(serial)
    return DeviceInfo(model=model, firmware=firmware, serial=serial, features=(name,))


def dive_timestamp(dive: bytes) -> int:
    """Start time as seconds since the epoch, wall clock taken as UTC. 0 if invalid."""
    if len(dive) < 8:
        return 0
    month, day, year, hour, minute = dive[3:8]
    try:
        return calendar.timegm(datetime(2000 + year, month, day, hour, minute).timetuple())
    except ValueError:
        return 0


def extract_dives(data: bytes) -> list[ProtocolDive]:
    """Split a full dump into dives, newest (last in memory) first.

    The five bytes after the start marker and version (date and time) are
    the fingerprint.
    """
    profile = data[SZ_HEADER:]
    dives: list[ProtocolDive] = []
    previous = len(profile)
    start = len(profile) - len(DIVE_START)
    while start >= 0:
        begin = search_backward(profile, DIVE_START, start)
        if begin < 0:
            break
        end = search_forward(profile, DIVE_END, begin)
        if 0 <= end < previous:
            dive = bytes(profile[begin : end + len(DIVE_END)])
            dives.append(ProtocolDive(fingerprint=dive[3:8], timestamp=dive_timestamp(dive), data=dive))
            previous = begin
        start = begin - len(DIVE_START)
    return dives


class HWOstcProtocol(BaseProtocol):
    family_name = "Heinrichs Weikamp"
    transport_types = TransportType.SERIAL

    def __init__(self, transport: Transport | None = None) -> None:
        super().__init__(transport)
        self._reset_state()

    def _reset_state(self) -> None:
        self.dump_data = b""
        self._dives: dict[str, ProtocolDive] = {}

    def _reset_session(self) -> None:
        super()._reset_session()
        self._reset_state()

    def _create_transport(self, address: str | None) -> Transport:
        if not address:
            raise InvalidArgumentError("OSTC needs a serial port")
        return SerialTransport(address, baudrate=BAUDRATE)

    def _handshake(self) -> None:
        # The header only arrives as part of a full dump, so the memory is fetched once here.
        transport = self._require_transport()
        transport.sleep(0.1)
        transport.purge(Direction.ALL)
        self.dump()

    def _send(self, cmd: int, echo: bool = False) -> None:
        transport = self._require_transport()
        transport.write(bytes((cmd,)))
        if echo:
            reply = transport.read(1)
            if reply[0] != cmd:
                raise ProtocolError(f"Unexpected echo {reply[0]:02x} for command {cmd:02x}")

    def dump(self) -> bytes:
        transport = self._require_transport()
        self._send(CMD_DUMP)
        header = transport.read(SZ_HEADER)
        self.device_info = parse_header(header)
        size = profile_size(self.device_info.firmware)
        LOGGER.info("Downloading %d KB from %s", (SZ_HEADER + size) // 1024, self.family_name)
        previous_timeout = transport.timeout_s
        transport.set_timeout(DUMP_TIMEOUT_S)
        try:
            profile = transport.read(size)
        finally:
            transport.set_timeout(previous_timeout)
        self.dump_data = header + profile
        return self.dump_data

    def list_dives(self) -> list[str]:
        if not self.dump_data:
            self.dump()
        self._dives.clear()
        identifiers: list[str] = []
        for dive in extract_dives(self.dump_data):
            identifier = dive.fingerprint.hex()
            if identifier not in self._dives:
                self._dives[identifier] = dive
                identifiers.append(identifier)
        return identifiers

    def download_dive(self, identifier: str) -> ProtocolDive | None:
        try:
            return self._dives[identifier]
        except KeyError:
            raise DataFormatError(f"Unknown dive '{identifier}'; list dives first") from None

    def read_raw(self, address: int, size: int) -> bytes | None:
        if not self.dump_data:
            self.dump()
        if address < 0 or address + size > len(self.dump_data):
            raise InvalidArgumentError(f"Range {address:#x}+{size} outside the {len(self.dump_data)}-byte dump")
        return self.dump_data[address : address + size]

    def read_md2hash(self) -> bytes:
        self._send(CMD_MD2HASH)
        return self._require_transport().read(SZ_MD2HASH)

    def sync_time(self, when: datetime) -> bool:
        packet = bytes((when.hour, when.minute, when.second, when.month, when.day, when.year - 2000))
        try:
            self._send(CMD_TIMESYNC, echo=True)
            self._require_transport().write(packet)
        except DivectlError as exc:
            LOGGER.error("OSTC time sync failed: %s", exc)
            return False
        return True

    def read_eeprom(self, bank: int) -> bytes:
        if not 0 <= bank < len(CMD_EEPROM_READ):
            raise InvalidArgumentError(f"Invalid EEPROM bank {bank}")
        self._send(CMD_EEPROM_READ[bank])
        return self._require_transport().read(SZ_EEPROM)

    def write_eeprom(self, bank: int, data: bytes) -> None:
        """Bytes 0-3 of each bank are read-only; the rest are sent one at a time with echo."""
        if not 0 <= bank < len(CMD_EEPROM_WRITE) or len(data) != SZ_EEPROM:
            raise InvalidArgumentError("EEPROM write needs bank 0-2 and exactly 256 bytes")
        self._send(CMD_EEPROM_WRITE[bank], echo=True)
        for value in data[4:]:
            self._send(value, echo=True)

    def reset(self) -> None:
        self._send(CMD_RESET, echo=True)
