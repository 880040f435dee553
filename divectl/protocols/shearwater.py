"""Shearwater Predator / Petrel / Perdix / Teric / Peregrine / Tern.

Requests are UDS-style messages inside a small header, SLIP-framed over
serial (115200 8N1), RFCOMM, or BLE. Bulk downloads go through a
35/36/37 (init/block/quit) exchange; dive blocks arrive compressed with a
9-bit length-run code followed by a stride-32 XOR chain.
"""

from __future__ import annotations

import calendar
import logging
import re
import struct
from dataclasses import dataclass
from datetime import datetime

from divectl.core.errors import DataFormatError, DivectlError, InvalidArgumentError, ProtocolError
from divectl.core.model import Direction, DeviceInfo, ProtocolDive, Sample, TransportType
from divectl.core.primitives import (
    SLIP_END,
    fahrenheit_to_celsius,
    feet_to_meters,
    psi_to_bar,
    slip_decode,
    slip_encode,
)
from divectl.protocols.base import BaseProtocol
from divectl.transports.base import Transport
from divectl.transports.ble_gatt import BLEGATTTransport
from divectl.transports.rfcomm import RFCOMMTransport, parse_bluetooth_address
from divectl.transports.serial_port import SerialTransport

LOGGER = logging.getLogger(__name__)

BAUDRATE = 115200

SZ_PACKET = 254
MANIFEST_ADDR = 0xE0000000
MANIFEST_SIZE = 0x600
RECORD_SIZE = 0x20
DIVE_SIZE = 0xFFFFFF

RDBI_REQUEST = 0x22
RDBI_RESPONSE = 0x62
WDBI_REQUEST = 0x2E
WDBI_RESPONSE = 0x6E
NAK = 0x7F

ID_SERIAL = 0x8010
ID_FIRMWARE = 0x8011
ID_HARDWARE = 0x8012
ID_LOGUPLOAD = 0x8020
ID_TIME_LOCAL = 0x9001
ID_TIME_UTC = 0x9003
ID_TIME_OFFSET = 0x9005
ID_TIME_DST = 0x9007

RECORD_VALID = 0xA5C4
RECORD_DELETED = 0x5A23

LOGBOOK_BASE = 0xC0000000
_LOGBOOK_ALIASES = (0xDD000000, 0xC0000000, 0x90000000)

SHUTDOWN_REQUEST = bytes((0x2E, 0x90, 0x20, 0x00))

PREDATOR = 1
PETREL = 2
PETREL2 = 3
PETREL3 = 4
NERD = 5
NERD2 = 6
PERDIX = 7
PERDIXAI = 8
PERDIX2 = 9
TERIC = 10
PEREGRINE = 11
PEREGRINE_TX = 12
TERN = 13
TERN_TX = 14

HARDWARE_MODELS = {
    0x0101: PREDATOR, 0x0202: PREDATOR,
    0x0404: PETREL, 0x0909: PETREL,
    0x0505: PETREL2, 0x0808: PETREL2, 0x0838: PETREL2, 0x08A5: PETREL2,
    0x0B0B: PETREL2, 0x7828: PETREL2, 0x7B2C: PETREL2, 0x8838: PETREL2,
    0xB407: PETREL3,
    0x0606: NERD, 0x0A0A: NERD,
    0x0E0D: NERD2, 0x7E2D: NERD2,
    0x0707: PERDIX,
    0x0C0D: PERDIXAI, 0x7C2D: PERDIXAI, 0x8D6C: PERDIXAI, 0x425B: PERDIXAI,
    0x704C: PERDIX2, 0xC407: PERDIX2, 0xC964: PERDIX2, 0x9C64: PERDIX2,
    0x0F0F: TERIC, 0x1F0A: TERIC, 0x1F0F: TERIC,
    0x1512: PEREGRINE,
    0x1712: PEREGRINE_TX, 0x813A: PEREGRINE_TX,
    0xC0E0: TERN,
}  # fmt: skip

MODEL_NAMES = {
    PREDATOR: "Predator",
    PETREL: "Petrel",
    PETREL2: "Petrel 2",
    PETREL3: "Petrel 3",
    NERD: "NERD",
    NERD2: "NERD 2",
    PERDIX: "Perdix",
    PERDIXAI: "Perdix AI",
    PERDIX2: "Perdix 2",
    TERIC: "Teric",
    PEREGRINE: "Peregrine",
    PEREGRINE_TX: "Peregrine TX",
    TERN: "Tern",
    TERN_TX: "Tern TX",
}

BLE_NAME_PREFIXES = {
    "Predator": (PREDATOR,),
    "Petrel": (PETREL, PETREL2),
    "Petrel 3": (PETREL3,),
    "NERD": (NERD,),
    "NERD 2": (NERD2,),
    "Perdix": (PERDIX, PERDIXAI),
    "Perdix 2": (PERDIX2,),
    "Teric": (TERIC,),
    "Peregrine": (PEREGRINE,),
    "Peregrine TX": (PEREGRINE_TX,),
    "Tern": (TERN, TERN_TX),
}

MODELS_WITH_AI = frozenset({PERDIXAI, PERDIX2, TERIC, PETREL3, PEREGRINE_TX, TERN_TX})
MODELS_WITH_BLE = frozenset({PETREL3, PERDIX2, TERIC, NERD2, PEREGRINE, PEREGRINE_TX, TERN, TERN_TX})

SAMPLE_SIZE = 19
SAMPLE_SIZE_AI = 64
DEFAULT_SAMPLE_INTERVAL = 10

_FIRMWARE_RE = re.compile(r"^\s*(\d+)")


def model_name(model: int) -> str:
    return MODEL_NAMES.get(model, "Unknown Shearwater")


def decompress_lre(data: bytes) -> tuple[bytes, bool]:
    """Decode 9-bit codewords (MSB first). Returns ``(bytes, end_of_stream)``.

    A codeword with bit 8 set is a literal byte, zero ends the stream, and any
    other value is a run of that many zero bytes.
    """
    out = bytearray()
    nbits = len(data) * 8
    offset = 0
    while offset + 9 <= nbits:
        index, bit = divmod(offset, 8)
        word = (data[index] << 8) | (data[index + 1] if index + 1 < len(data) else 0)
        value = (word >> (16 - (bit + 9))) & 0x1FF
        if value & 0x100:
            out.append(value & 0xFF)
        elif value == 0:
            return bytes(out), True
        else:
            out += bytes(value)
        offset += 9
    return bytes(out), False


def decompress_xor(data: bytearray) -> None:
    """Undo the stride-32 XOR chain in place."""
    for i in range(32, len(data)):
        data[i] ^= data[i - 32]


@dataclass(frozen=True)
class ManifestRecord:
    dive_number: int
    timestamp: int
    duration: int
    max_depth: int
    avg_depth: int
    min_temp: int
    data_address: int
    data_size: int
    opening_address: int
    closing_address: int

    @property
    def fingerprint(self) -> bytes:
        return struct.pack(">I", self.timestamp)


def parse_manifest_record(data: bytes, offset: int = 0) -> ManifestRecord | None:
    if offset + RECORD_SIZE > len(data):
        return None
    if struct.unpack_from(">H", data, offset)[0] != RECORD_VALID:
        return None
    dive_number, timestamp, duration, max_depth = struct.unpack_from(">HIIH", data, offset + 2)
    data_size, data_address, opening, closing = struct.unpack_from(">IIII", data, offset + 16)
    return ManifestRecord(
        dive_number=dive_number,
        timestamp=timestamp,
        duration=duration,
        max_depth=max_depth,
        avg_depth=data[offset + 14],
        min_temp=data[offset + 15] - 128,
        data_address=data_address,
        data_size=data_size,
        opening_address=opening,
        closing_address=closing,
    )


def find_sample_start(data: bytes) -> int:
    for i in range(32, min(len(data), 128) - 3, 2):
        depth, temp = struct.unpack_from("<HH", data, i)
        if depth < 5000 and 300 < temp < 1000:
            return i
    return 64


def parse_samples(
    data: bytes,
    model: int = 0,
    interval: int = DEFAULT_SAMPLE_INTERVAL,
) -> list[Sample]:
    """Decode fixed-size records. Depth is 1/10 ft and temperature 1/10 degF."""
    has_ai = model in MODELS_WITH_AI
    step = SAMPLE_SIZE_AI if has_ai else SAMPLE_SIZE
    samples: list[Sample] = []
    offset = find_sample_start(data)
    time = 0
    while offset + SAMPLE_SIZE <= len(data):
        depth, temp = struct.unpack_from("<HH", data, offset)
        deco_status = data[offset + 14]
        ndl_deco = struct.unpack_from("<H", data, offset + 15)[0]
        sample = Sample(
            time=time,
            depth=feet_to_meters(depth / 10.0),
            temperature=fahrenheit_to_celsius(temp / 10.0),
            ppo2=data[offset + 5] / 100.0,
        )
        if deco_status == 0:
            sample.ndl = ndl_deco * 60
        else:
            sample.deco_depth = feet_to_meters(deco_status)
            sample.deco_time = ndl_deco * 60
        if has_ai and offset + SAMPLE_SIZE_AI <= len(data):
            tank_offset = offset + 25
            for tank in range(6):
                pressure, rbt = struct.unpack_from("<HH", data, tank_offset)
                if pressure not in (0, 0xFFFF):
                    sample.pressure = psi_to_bar(pressure)
                    sample.tank = tank
                    sample.rbt = rbt
                    break
                tank_offset += 6
        samples.append(sample)
        time += interval
        offset += step
    return samples


class ShearwaterProtocol(BaseProtocol):
    family_name = "Shearwater"
    transport_types = TransportType.SERIAL | TransportType.BLUETOOTH | TransportType.BLE

    def __init__(self, transport: Transport | None = None) -> None:
        super().__init__(transport)
        self.hardware = 0

    def _reset_session(self) -> None:
        super()._reset_session()
        self.hardware = 0

    def _create_transport(self, address: str | None) -> Transport:
        if not address:
            raise InvalidArgumentError("Shearwater needs a serial port or Bluetooth address")
        parsed = parse_bluetooth_address(address)
        if parsed is not None:
            bt_address, is_ble = parsed
            if is_ble:
                return BLEGATTTransport(bt_address)
            return RFCOMMTransport(bt_address)
        return SerialTransport(address, baudrate=BAUDRATE)

    def _handshake(self) -> None:
        transport = self._require_transport()
        transport.sleep(0.3)
        transport.purge(Direction.ALL)

        serial_data = self.rdbi(ID_SERIAL)
        serial = int(serial_data.hex() or "0", 16)
        firmware_text = self.rdbi(ID_FIRMWARE).replace(b"\x00", b"").decode("ascii", "replace")
        match = _FIRMWARE_RE.match(firmware_text[1:])
        firmware = int(match.group(1)) if match else 0
        hardware_data = self.rdbi(ID_HARDWARE)
        if len(hardware_data) < 2:
            raise DataFormatError("Hardware identifier reply too short")
        self.hardware = (hardware_data[0] << 8) | hardware_data[1]
        model = HARDWARE_MODELS.get(self.hardware, 0)
        self.device_info = DeviceInfo(
            model=model,
            firmware=firmware,
            serial=serial,
            hardware_version=self.hardware,
            features=(model_name(model),),
        )

    def _shutdown(self) -> None:
        self.transfer(SHUTDOWN_REQUEST, 0)

    def _slip_write(self, data: bytes) -> None:
        self._require_transport().write(slip_encode(data))

    def _slip_read(self) -> bytes:
        transport = self._require_transport()
        raw = bytearray()
        while True:
            byte = transport.read(1)[0]
            if byte == SLIP_END:
                if raw:
                    return slip_decode(bytes(raw))
                continue
            raw.append(byte)
            if len(raw) > 2 * (SZ_PACKET + 4):
                raise DataFormatError("SLIP packet exceeds maximum size")

    def transfer(self, request: bytes, output_size: int) -> bytes:
        packet = bytes((0xFF, 0x01, len(request) + 1, 0x00)) + bytes(request)
        LOGGER.debug("Shearwater > %s", request.hex())
        self._slip_write(packet)
        if output_size == 0:
            return b""

        response = self._slip_read()
        if len(response) < 4 or response[0] != 0x01 or response[1] != 0xFF or response[3] != 0x00:
            raise DataFormatError(f"Invalid packet header {response[:4].hex()}")
        length = response[2]
        if length < 1 or length - 1 > output_size or 4 + length - 1 > len(response):
            raise DataFormatError(f"Invalid packet length {length}")
        payload = response[4 : 4 + length - 1]
        LOGGER.debug("Shearwater < %s", payload.hex())
        return payload

    def rdbi(self, identifier: int) -> bytes:
        request = bytes((RDBI_REQUEST, (identifier >> 8) & 0xFF, identifier & 0xFF))
        response = self.transfer(request, SZ_PACKET)
        if len(response) < 3:
            raise DataFormatError("RDBI response too short")
        if response[0] == NAK:
            raise ProtocolError(f"RDBI {identifier:04x} rejected (NAK code {response[2]:02x})")
        if response[:3] != bytes((RDBI_RESPONSE, request[1], request[2])):
            raise ProtocolError(f"Unexpected RDBI response {response[:3].hex()}")
        return response[3:]

    def wdbi(self, identifier: int, data: bytes) -> None:
        request = bytes((WDBI_REQUEST, (identifier >> 8) & 0xFF, identifier & 0xFF)) + data
        response = self.transfer(request, SZ_PACKET)
        if len(response) < 3:
            raise DataFormatError("WDBI response too short")
        if response[0] == NAK:
            raise ProtocolError(f"WDBI {identifier:04x} rejected (NAK code {response[2]:02x})")
        if response[:3] != bytes((WDBI_RESPONSE, request[1], request[2])):
            raise ProtocolError(f"Unexpected WDBI response {response[:3].hex()}")

    def download(self, address: int, size: int, compressed: bool = True) -> bytes:
        init = bytes((0x35, 0x10 if compressed else 0x00, 0x34))
        init += struct.pack(">I", address & 0xFFFFFFFF) + struct.pack(">I", size)[1:]
        response = self.transfer(init, 3)
        if len(response) != 3 or response[0] != 0x75 or response[1] != 0x10:
            raise ProtocolError(f"Download init rejected: {response.hex()}")

        buffer = bytearray()
        block = 1
        nbytes = 0
        done = False
        while nbytes < size and not done:
            response = self.transfer(bytes((0x36, block & 0xFF)), SZ_PACKET)
            if len(response) < 2 or response[0] != 0x76 or response[1] != block & 0xFF:
                raise ProtocolError(f"Block {block} read failed: {response[:2].hex()}")
            data = response[2:]
            if not data:
                raise DataFormatError(f"Block {block} carried no data")
            if compressed:
                decoded, done = decompress_lre(data)
                buffer += decoded
            else:
                buffer += data
            nbytes += len(data)
            block += 1

        response = self.transfer(b"\x37", 2)
        if response != b"\x77\x00":
            LOGGER.warning("Shearwater quit response unexpected: %s", response.hex())

        if compressed:
            decompress_xor(buffer)
        elif len(buffer) < size:
            raise DataFormatError(f"Download truncated: {len(buffer)} of {size} bytes")
        return bytes(buffer[:size]) if not compressed else bytes(buffer)

    def read_manifest(self) -> list[ManifestRecord]:
        """Return the live manifest records, newest first."""
        manifest = self.download(MANIFEST_ADDR, MANIFEST_SIZE, compressed=False)
        records: list[ManifestRecord] = []
        for offset in range(0, len(manifest) - RECORD_SIZE + 1, RECORD_SIZE):
            if struct.unpack_from(">H", manifest, offset)[0] == RECORD_DELETED:
                continue
            record = parse_manifest_record(manifest, offset)
            if record is None:
                break
            records.append(record)
        return records

    def list_dives(self) -> list[str]:
        dives: list[str] = []
        for record in self.read_manifest():
            if len(self.fingerprint) >= 4 and record.fingerprint == self.fingerprint[:4]:
                break
            dives.append(f"{record.data_address:08x}")
        return dives

    def logbook_base(self) -> int:
        logupload = self.rdbi(ID_LOGUPLOAD)
        if len(logupload) < 5:
            raise DataFormatError("Logbook upload descriptor too short")
        base = struct.unpack_from(">I", logupload, 1)[0]
        if base in _LOGBOOK_ALIASES:
            base = LOGBOOK_BASE
        return base

    def download_dive(self, identifier: str) -> ProtocolDive | None:
        address = int(identifier, 16)
        data = self.download(self.logbook_base() + address, DIVE_SIZE, compressed=True)
        if len(data) < 16:
            raise DataFormatError(f"Dive at {identifier} too short ({len(data)} bytes)")
        return ProtocolDive(
            fingerprint=data[12:16],
            timestamp=struct.unpack_from(">I", data, 4)[0],
            data=data,
        )

    def read_raw(self, address: int, size: int) -> bytes | None:
        return self.download(address, size, compressed=False)

    def sync_time(self, when: datetime) -> bool:
        local = when.astimezone() if when.tzinfo else when
        utc_offset = local.utcoffset() if local.tzinfo else datetime.now().astimezone().utcoffset()
        offset_s = int(utc_offset.total_seconds()) if utc_offset else 0
        try:
            if HARDWARE_MODELS.get(self.hardware) == TERIC:
                self.wdbi(ID_TIME_UTC, struct.pack(">I", int(when.timestamp())))
                self.wdbi(ID_TIME_OFFSET, struct.pack(">i", offset_s))
                self.wdbi(ID_TIME_DST, struct.pack(">I", 0))
            else:
                ticks = calendar.timegm(local.timetuple())
                self.wdbi(ID_TIME_LOCAL, struct.pack(">I", ticks))
        except DivectlError as exc:
            LOGGER.error("Shearwater time sync failed: %s", exc)
            return False
        return True

    def parse_samples(self, data: bytes) -> list[Sample]:
        model = self.device_info.model if self.device_info else 0
        return parse_samples(data, model)
