"""Suunto EON Steel / EON Core / D5 over USB HID.

The device exposes a small filesystem. Every request is one 64-byte HID
report carrying a 12-byte header (command, session magic, sequence, data
length); replies echo the command with ``magic + 5`` and the same sequence
number, and may span several reports.
"""

from __future__ import annotations

import logging
import struct
from datetime import datetime

from divectl.core.errors import (
    DataFormatError,
    DivectlError,
    InvalidArgumentError,
    ProtocolError,
    UnsupportedError,
)
from divectl.core.model import DeviceInfo, ProtocolDive, TransportType
from divectl.protocols.base import BaseProtocol
from divectl.transports.base import Transport
from divectl.transports.rfcomm import is_bluetooth_address
from divectl.transports.usbhid import USBHIDTransport, enumerate_hid

LOGGER = logging.getLogger(__name__)

VENDOR_ID = 0x1493
PRODUCT_IDS = {0x0030: 0, 0x0033: 1, 0x0035: 2}
MODEL_NAMES = {0: "EON Steel", 1: "EON Core", 2: "D5"}

PACKET_SIZE = 64
HEADER_SIZE = 12
REPORT_ID = 0x3F
MAX_INLINE_DATA = PACKET_SIZE - 2 - HEADER_SIZE

CMD_INIT = 0x0000
CMD_READ_STRING = 0x0411
CMD_FILE_OPEN = 0x0010
CMD_FILE_READ = 0x0110
CMD_FILE_STAT = 0x0710
CMD_FILE_CLOSE = 0x0510
CMD_DIR_OPEN = 0x0810
CMD_DIR_READDIR = 0x0910
CMD_DIR_CLOSE = 0x0A10
CMD_SET_TIME = 0x0003
CMD_GET_TIME = 0x0103
CMD_SET_DATE = 0x0203
CMD_GET_DATE = 0x0303

INIT_MAGIC = 0x0001
INIT_SEQ = 0
INIT_DATA = bytes((0x02, 0x00, 0x2A, 0x00))

DIRTYPE_FILE = 0x0001
DIRTYPE_DIR = 0x0002

DIVE_DIRECTORY = "0:/dives"
READ_MARKER = 1234
READ_CHUNK = 1024


def parse_dirents(payload: bytes) -> tuple[list[tuple[int, str]], bool]:
    """Parse a READDIR reply into ``[(type, name)]`` and the last-page flag."""
    if len(payload) < 8:
        raise DataFormatError(f"Directory reply too short ({len(payload)} bytes)")
    _count, last = struct.unpack_from("<II", payload, 0)
    entries: list[tuple[int, str]] = []
    pos = 8
    remaining = len(payload) - 8
    while remaining > 8:
        entry_type, name_len = struct.unpack_from("<II", payload, pos)
        if name_len + 8 + 1 > remaining:
            break
        if payload[pos + 8 + name_len] != 0:
            break
        name = payload[pos + 8 : pos + 8 + name_len].decode("ascii", errors="replace")
        entries.append((entry_type, name))
        pos += 8 + name_len + 1
        remaining -= 8 + name_len + 1
    return entries, last != 0


def timestamp_from_name(name: str) -> int:
    stem = name[:-4] if name.upper().endswith(".LOG") else name
    try:
        return int(stem, 16)
    except ValueError as exc:
        raise DataFormatError(f"Dive file name '{name}' is not a hex timestamp") from exc


class SuuntoEonSteelProtocol(BaseProtocol):
    family_name = "Suunto EON Steel"
    transport_types = TransportType.USBHID

    def __init__(self, transport: Transport | None = None, *, model: int | None = None) -> None:
        super().__init__(transport)
        self.model = model
        self.magic = INIT_MAGIC
        self.seq = INIT_SEQ
        self.version = b""

    def _reset_session(self) -> None:
        super()._reset_session()
        self.magic = INIT_MAGIC
        self.seq = INIT_SEQ
        self.version = b""

    def _create_transport(self, address: str | None) -> Transport:
        if address and is_bluetooth_address(address):
            raise UnsupportedError("EON Steel is only supported over USB HID")
        if address:
            return USBHIDTransport(VENDOR_ID, path=address)
        for product_id in PRODUCT_IDS:
            if enumerate_hid(VENDOR_ID, product_id):
                return USBHIDTransport(VENDOR_ID, product_id)
        return USBHIDTransport(VENDOR_ID)

    def _handshake(self) -> None:
        self.version = self.transfer(CMD_INIT, INIT_DATA)
        if len(self.version) < 0x24:
            raise DataFormatError(f"Init reply too short ({len(self.version)} bytes)")
        serial_text = self.version[0x10:0x20].replace(b"\x00", b"").decode("ascii", "replace")
        try:
            serial = int(serial_text, 16)
        except ValueError:
            serial = 0
        firmware = struct.unpack_from(">I", self.version, 0x20)[0]
        model = self.model
        if model is None:
            product_id = getattr(self.transport, "product_id", None)
            model = PRODUCT_IDS.get(product_id, 0)
        self.device_info = DeviceInfo(model=model, firmware=firmware, serial=serial)

    def _send(self, cmd: int, data: bytes) -> None:
        if len(data) > MAX_INLINE_DATA:
            raise InvalidArgumentError(f"Command payload of {len(data)} bytes does not fit one report")
        packet = bytearray(PACKET_SIZE)
        packet[0] = REPORT_ID
        packet[1] = HEADER_SIZE + len(data)
        struct.pack_into("<HIHI", packet, 2, cmd, self.magic & 0xFFFFFFFF, self.seq, len(data))
        packet[14 : 14 + len(data)] = data
        LOGGER.debug("EON Steel > cmd=%04x seq=%d len=%d", cmd, self.seq, len(data))
        self._require_transport().write(bytes(packet))

    def _read_report(self) -> bytes:
        transport = self._require_transport()
        reader = getattr(transport, "read_packet", None)
        if reader is not None:
            return reader()
        return transport.read(PACKET_SIZE)

    def _receive(self, cmd: int) -> bytes:
        packet = self._read_report()
        if len(packet) < 2 or packet[0] != REPORT_ID:
            raise ProtocolError(f"Invalid report type {packet[:1].hex() or '<empty>'}")
        payload_len = packet[1]
        if payload_len < HEADER_SIZE or len(packet) < 2 + HEADER_SIZE:
            raise DataFormatError("Reply too short for header")
        reply, magic, seq, length = struct.unpack_from("<HIHI", packet, 2)
        LOGGER.debug("EON Steel < reply=%04x magic=%08x seq=%d len=%d", reply, magic, seq, length)

        if cmd == CMD_INIT:
            self.magic = (magic & 0xFFFF0000) | 0x0005
        else:
            if reply != cmd:
                raise ProtocolError(f"Unexpected reply {reply:04x}, expected {cmd:04x}")
            expected_magic = (self.magic + 5) & 0xFFFFFFFF
            if magic != expected_magic:
                raise ProtocolError(f"Unexpected magic {magic:08x}, expected {expected_magic:08x}")
        if seq != self.seq:
            raise ProtocolError(f"Unexpected sequence {seq}, expected {self.seq}")
        self.seq = (self.seq + 1) & 0xFFFF

        nbytes = payload_len - HEADER_SIZE
        result = bytearray(packet[14 : 14 + min(nbytes, length)])
        while nbytes < length:
            packet = self._read_report()
            if len(packet) < 2 or packet[0] != REPORT_ID:
                break
            chunk = packet[1]
            result += packet[2 : 2 + chunk]
            nbytes += chunk
            if chunk < PACKET_SIZE - 2:
                break
        if len(result) < length:
            raise DataFormatError(f"Reply truncated: got {len(result)} of {length} bytes")
        return bytes(result[:length])

    def transfer(self, cmd: int, data: bytes = b"") -> bytes:
        """One request/reply exchange. Any mismatch requires a reconnect."""
        self._send(cmd, data)
        return self._receive(cmd)

    def read_string(self, string_id: int) -> str:
        reply = self.transfer(CMD_READ_STRING, struct.pack("<I", string_id))
        return reply.replace(b"\x00", b"").decode("utf-8", errors="replace")

    def _path_payload(self, path: str) -> bytes:
        return struct.pack("<I", 0) + path.encode("utf-8") + b"\x00"

    def list_directory(self, path: str) -> list[tuple[int, str]]:
        self.transfer(CMD_DIR_OPEN, self._path_payload(path))
        entries: list[tuple[int, str]] = []
        try:
            while True:
                page, last = parse_dirents(self.transfer(CMD_DIR_READDIR))
                entries.extend(page)
                if last:
                    break
        finally:
            self.transfer(CMD_DIR_CLOSE)
        return entries

    def read_file(self, path: str) -> bytes:
        self.transfer(CMD_FILE_OPEN, self._path_payload(path))
        try:
            stat = self.transfer(CMD_FILE_STAT)
            if len(stat) < 8:
                raise DataFormatError("File stat reply too short")
            size = struct.unpack_from("<I", stat, 4)[0]
            data = bytearray()
            while len(data) < size:
                ask = min(size - len(data), READ_CHUNK)
                reply = self.transfer(CMD_FILE_READ, struct.pack("<II", READ_MARKER, ask))
                if len(reply) < 8:
                    raise DataFormatError("File read reply too short")
                marker, got = struct.unpack_from("<II", reply, 0)
                if marker != READ_MARKER:
                    raise ProtocolError(f"Unexpected file read marker {marker}")
                if got == 0 or got > ask or len(reply) < 8 + got:
                    raise DataFormatError(f"File read returned {got} bytes for {ask} requested")
                data += reply[8 : 8 + got]
        finally:
            self.transfer(CMD_FILE_CLOSE)
        return bytes(data)

    def list_dives(self) -> list[str]:
        names = [
            name
            for entry_type, name in self.list_directory(DIVE_DIRECTORY)
            if entry_type == DIRTYPE_FILE and name.upper().endswith(".LOG")
        ]
        names.sort(reverse=True)
        return names

    def download_dive(self, identifier: str) -> ProtocolDive | None:
        timestamp = timestamp_from_name(identifier)
        data = self.read_file(f"{DIVE_DIRECTORY}/{identifier}")
        return ProtocolDive(
            fingerprint=struct.pack("<I", timestamp & 0xFFFFFFFF),
            timestamp=timestamp,
            data=data,
        )

    def sync_time(self, when: datetime) -> bool:
        msec = when.second * 1000 + when.microsecond // 1000
        try:
            self.transfer(CMD_SET_TIME, bytes((when.hour, when.minute)) + struct.pack("<H", msec))
            self.transfer(CMD_SET_DATE, struct.pack("<HBB", when.year, when.month, when.day))
        except DivectlError as exc:
            LOGGER.error("EON Steel time sync failed: %s", exc)
            return False
        return True
