"""Mares Icon HD, Puck, Quad, Smart, Matrix, Genius, Sirius and Horizon.

Each command is echoed by the device and answered with ACK, NAK or BUSY.
Commands with a payload carry a trailing xor8, and so does every memory
block the device returns. Genius-class models store dives as a stream of
records tagged with four ASCII characters.
"""

from __future__ import annotations

import calendar
import logging
import struct
from dataclasses import dataclass
from datetime import datetime

from divectl.core.errors import DataFormatError, DivectlError, InvalidArgumentError, ProtocolError
from divectl.core.model import Direction, DeviceInfo, ProtocolDive, Sample, SampleEvent, TransportType
from divectl.core.primitives import xor8
from divectl.protocols.base import BaseProtocol
from divectl.transports.base import Transport
from divectl.transports.ble_gatt import BLEGATTTransport
from divectl.transports.rfcomm import parse_bluetooth_address
from divectl.transports.serial_port import SerialTransport

LOGGER = logging.getLogger(__name__)

BAUDRATE = 9600
PACKETSIZE = 256
NRETRIES = 3
RETRY_SLEEP_S = 0.1

CMD_INIT = 0xAA
CMD_EXIT = 0x46
CMD_READ_MEMORY = 0xE4
CMD_MODEL = 0x31

ACK = 0x55
NAK = 0xAA
BUSY = 0x66

ADDR_MODEL = 0x0000
ADDR_SERIAL = 0x0004
ADDR_POINTERS = 0x0100
SZ_POINTERS = 64
MAX_POINTERS = 30
SZ_DIVE_HEADER = 32
# Header start time down to the minute, then the dive time.
SZ_FINGERPRINT = 7
DEFAULT_MEMSIZE = 0x10000


@dataclass(frozen=True)
class ModelInfo:
    name: str
    memsize: int


MODELS = {
    0x02: ModelInfo("Nemo", 0x10000),
    0x03: ModelInfo("Nemo Excel", 0x10000),
    0x04: ModelInfo("Nemo Apneist", 0x10000),
    0x05: ModelInfo("Puck", 0x10000),
    0x06: ModelInfo("Nemo Wide", 0x10000),
    0x07: ModelInfo("Puck Air", 0x10000),
    0x08: ModelInfo("Nemo Air", 0x10000),
    0x0A: ModelInfo("Smart", 0x40000),
    0x0B: ModelInfo("Puck Pro", 0x40000),
    0x0D: ModelInfo("Icon HD", 0x100000),
    0x0E: ModelInfo("Icon HD Net Ready", 0x100000),
    0x0F: ModelInfo("Matrix", 0x40000),
    0x10: ModelInfo("Smart Apnea", 0x40000),
    0x11: ModelInfo("Matrix", 0x40000),
    0x12: ModelInfo("Quad Air", 0x40000),
    0x14: ModelInfo("Quad", 0x40000),
    0x18: ModelInfo("Puck Pro", 0x40000),
    0x19: ModelInfo("Puck 2", 0x40000),
    0x1C: ModelInfo("Genius", 0x100000),
    0x1F: ModelInfo("Genius", 0x100000),
    0x20: ModelInfo("Sirius", 0x100000),
    0x23: ModelInfo("Quad Air", 0x40000),
    0x24: ModelInfo("Smart Air", 0x40000),
    0x29: ModelInfo("Quad Air", 0x40000),
    0x2C: ModelInfo("Horizon", 0x100000),
    0x2F: ModelInfo("Sirius", 0x100000),
    0x35: ModelInfo("Puck 4", 0x40000),
}

GENIUS_MODELS = frozenset({0x1C, 0x1F, 0x20, 0x2F})

# Genius record tags and their full record sizes. Tags without a known size
# are stepped over one word at a time.
SIG_DIVE_START = b"DSTR"
SIG_TISSUE = b"TISS"
SIG_SAMPLE = b"DPRS"
SIG_SCR_SAMPLE = b"SDPT"
SIG_AIR = b"AIRS"
SIG_DIVE_END = b"DEND"

RECORD_SIZES = {
    SIG_SAMPLE: 34,
    SIG_SCR_SAMPLE: 78,
    SIG_AIR: 16,
    SIG_DIVE_END: 162,
}
SZ_SAMPLE = RECORD_SIZES[SIG_SAMPLE]

GENIUS_ALARMS = (
    (0x01, "ascent"),
    (0x02, "fast_ascent"),
    (0x04, "mod_reached"),
    (0x08, "cns_warning"),
    (0x10, "cns_danger"),
    (0x20, "decostop_missed"),
    (0x40, "battery_low"),
    (0x80, "pressure_low"),
)

CLASSIC_SAMPLE_INTERVAL = 20


def model_name(model: int) -> str:
    info = MODELS.get(model)
    return info.name if info else f"Unknown (0x{model:02x})"


def is_genius_model(model: int) -> bool:
    return model in GENIUS_MODELS


def build_packet(cmd: int, data: bytes = b"") -> bytes:
    if not data:
        return bytes((cmd,))
    body = bytes((cmd,)) + data
    return body + bytes((xor8(body),))


@dataclass(frozen=True)
class DiveHeader:
    year: int
    month: int
    day: int
    hour: int
    minute: int
    dive_time: int
    max_depth: float
    min_temp: int
    mode: int
    o2_percent: int
    surface_interval: int
    profile_address: int
    profile_size: int

    @property
    def timestamp(self) -> int:
        try:
            start = datetime(self.year, self.month, self.day, self.hour, self.minute)
        except ValueError:
            return 0
        return calendar.timegm(start.timetuple())


def parse_dive_header(data: bytes, offset: int = 0) -> DiveHeader:
    """32-byte Icon HD / Smart dive header."""
    if offset + 18 > len(data):
        raise DataFormatError("Dive header too short")
    return DiveHeader(
        year=data[offset] + 2000,
        month=data[offset + 1],
        day=data[offset + 2],
        hour=data[offset + 3],
        minute=data[offset + 4],
        dive_time=struct.unpack_from("<H", data, offset + 5)[0],
        max_depth=struct.unpack_from("<H", data, offset + 7)[0] / 10.0,
        min_temp=struct.unpack_from("<b", data, offset + 9)[0],
        mode=data[offset + 10],
        o2_percent=data[offset + 11],
        surface_interval=struct.unpack_from("<H", data, offset + 12)[0],
        profile_address=struct.unpack_from("<H", data, offset + 14)[0],
        profile_size=struct.unpack_from("<H", data, offset + 16)[0],
    )


def parse_samples_classic(data: bytes, interval: int = CLASSIC_SAMPLE_INTERVAL) -> list[Sample]:
    """Two-byte words: 12 bits of depth in 1/10 m, 4 bits of gas index."""
    samples = []
    for index, offset in enumerate(range(0, len(data) - 1, 2)):
        word = struct.unpack_from("<H", data, offset)[0]
        samples.append(
            Sample(time=index * interval, depth=(word & 0x0FFF) / 10.0, gas_mix=(word >> 12) & 0x0F)
        )
    return samples


def genius_alarms(flags: int) -> list[SampleEvent]:
    return [SampleEvent(name, flags=bit) for bit, name in GENIUS_ALARMS if flags & bit]


def _genius_sample(data: bytes, offset: int, time: int) -> Sample:
    depth, temp = struct.unpack_from("<Hh", data, offset + 6)
    ndl, ceiling, deco_time = data[offset + 10 : offset + 13]
    tank1, _tank2, rbt = struct.unpack_from("<HHH", data, offset + 20)
    ppo2 = struct.unpack_from("<H", data, offset + 28)[0]
    sample = Sample(
        time=time,
        depth=depth / 10.0,
        temperature=temp / 10.0,
        gas_mix=data[offset + 19],
        events=genius_alarms(data[offset + 27]),
    )
    if ceiling:
        sample.deco_depth = float(ceiling)
        sample.deco_time = deco_time * 60
    else:
        sample.ndl = ndl * 60
    if tank1 != 0xFFFF:
        sample.pressure = tank1 / 1000.0
        sample.tank = 0
    if rbt != 0xFFFF:
        sample.rbt = rbt
    if 0 < ppo2 < 0xFFFF:
        sample.ppo2 = ppo2 / 100.0
    return sample


def parse_samples_genius(data: bytes) -> list[Sample]:
    """Walk the record stream, decoding DPRS and SDPT samples.

    Known non-sample records are skipped whole. Anything unrecognized is
    skipped four bytes at a time so a damaged record does not end the scan.
    """
    samples: list[Sample] = []
    offset = 0
    time = 0
    while offset + 4 <= len(data):
        tag = bytes(data[offset : offset + 4])
        if tag in (SIG_SAMPLE, SIG_SCR_SAMPLE):
            if offset + RECORD_SIZES[tag] > len(data):
                break
            samples.append(_genius_sample(data, offset, time))
            time += struct.unpack_from("<H", data, offset + 4)[0]
            offset += RECORD_SIZES[tag]
        elif tag in RECORD_SIZES:
            offset += RECORD_SIZES[tag]
        else:
            offset += 4
    return samples


@dataclass(frozen=True)
class GeniusDiveEnd:
    max_depth: float
    avg_depth: float
    dive_time: int
    min_temp: float
    max_temp: float
    surface_interval: int
    cns_start: int
    cns_end: int
    otu: int


def parse_genius_dive_end(data: bytes, offset: int) -> GeniusDiveEnd | None:
    if offset + 24 > len(data) or data[offset : offset + 4] != SIG_DIVE_END:
        return None
    max_depth, avg_depth, dive_time, min_temp, max_temp, surface_interval = struct.unpack_from(
        "<HHIhhI", data, offset + 4
    )
    return GeniusDiveEnd(
        max_depth=max_depth / 10.0,
        avg_depth=avg_depth / 10.0,
        dive_time=dive_time,
        min_temp=min_temp / 10.0,
        max_temp=max_temp / 10.0,
        surface_interval=surface_interval,
        cns_start=data[offset + 20],
        cns_end=data[offset + 21],
        otu=struct.unpack_from("<H", data, offset + 22)[0],
    )


class MaresIconHDProtocol(BaseProtocol):
    family_name = "Mares"
    transport_types = TransportType.SERIAL | TransportType.BLE

    def __init__(self, transport: Transport | None = None) -> None:
        super().__init__(transport)
        self.model = 0
        self.memsize = DEFAULT_MEMSIZE

    def _reset_session(self) -> None:
        super()._reset_session()
        self.model = 0
        self.memsize = DEFAULT_MEMSIZE

    def _create_transport(self, address: str | None) -> Transport:
        if not address:
            raise InvalidArgumentError("Mares needs a serial port or BLE address")
        parsed = parse_bluetooth_address(address)
        if parsed is not None:
            return BLEGATTTransport(parsed[0])
        return SerialTransport(address, baudrate=BAUDRATE)

    def _handshake(self) -> None:
        transport = self._require_transport()
        set_dtr = getattr(transport, "set_dtr", None)
        set_rts = getattr(transport, "set_rts", None)
        if set_dtr is not None and set_rts is not None:
            set_dtr(True)
            set_rts(True)
        transport.sleep(0.1)
        transport.purge(Direction.ALL)
        self.transfer(CMD_INIT)
        self.read_device_info()

    def _shutdown(self) -> None:
        self.transfer(CMD_EXIT)

    def transfer(self, cmd: int, data: bytes = b"", answer_size: int = 0) -> bytes:
        """Send one command and read ``answer_size`` bytes plus their xor8.

        BUSY, NAK, a bad echo or a checksum mismatch all cost one of the
        NRETRIES attempts.
        """
        transport = self._require_transport()
        packet = build_packet(cmd, data)
        for attempt in range(1, NRETRIES + 1):
            try:
                transport.write(packet)
                if transport.read(len(packet)) != packet:
                    raise ProtocolError("Echo mismatch")
                status = transport.read(1)[0]
                if status == BUSY:
                    raise ProtocolError("Device busy")
                if status == NAK:
                    raise ProtocolError(f"Command {cmd:02x} rejected (NAK)")
                if status != ACK:
                    raise ProtocolError(f"Unexpected response byte {status:02x}")
                if not answer_size:
                    return b""
                answer = transport.read(answer_size)
                checksum = transport.read(1)[0]
                if checksum != xor8(answer):
                    raise DataFormatError("Memory block checksum mismatch")
                return answer
            except DivectlError as exc:
                if attempt == NRETRIES:
                    raise
                LOGGER.debug("Mares command %02x attempt %d failed: %s", cmd, attempt, exc)
                transport.sleep(RETRY_SLEEP_S)
                transport.purge(Direction.INPUT)
        raise ProtocolError("Retries exhausted")

    def read_memory(self, address: int, size: int) -> bytes:
        result = bytearray()
        while len(result) < size:
            chunk = min(PACKETSIZE, size - len(result))
            params = bytes(((address >> 16) & 0xFF, (address >> 8) & 0xFF, address & 0xFF, chunk - 1))
            result += self.transfer(CMD_READ_MEMORY, params, chunk)
            address += chunk
        return bytes(result)

    def read_device_info(self) -> DeviceInfo:
        self.model = self.read_memory(ADDR_MODEL, 4)[0]
        info = MODELS.get(self.model)
        if info is None:
            LOGGER.warning("Unknown Mares model 0x%02x; assuming %d KB memory", self.model, DEFAULT_MEMSIZE // 1024)
            self.memsize = DEFAULT_MEMSIZE
        else:
            self.memsize = info.memsize
        serial = struct.unpack("<I", self.read_memory(ADDR_SERIAL, 4))[0]
        self.device_info = DeviceInfo(
            model=self.model,
            firmware=0,
            serial=serial,
            features=(model_name(self.model),),
        )
        return self.device_info

    def read_raw(self, address: int, size: int) -> bytes | None:
        return self.read_memory(address, size)

    def list_dives(self) -> list[str]:
        pointers = self.read_memory(ADDR_POINTERS, SZ_POINTERS)
        count = struct.unpack_from("<H", pointers, 0)[0]
        dives = []
        for i in range(min(count, MAX_POINTERS)):
            pointer = struct.unpack_from("<H", pointers, 2 + i * 2)[0]
            if pointer not in (0, 0xFFFF):
                dives.append(f"{pointer:06x}")
        return dives

    def download_dive(self, identifier: str) -> ProtocolDive | None:
        try:
            address = int(identifier, 16)
        except ValueError as exc:
            raise DataFormatError(f"Malformed Mares dive identifier '{identifier}'") from exc
        header = parse_dive_header(self.read_memory(address, SZ_DIVE_HEADER))
        total = SZ_DIVE_HEADER + header.profile_size
        if address + total > self.memsize:
            raise DataFormatError(f"Dive at {address:#x} runs past the end of memory")
        data = self.read_memory(address, total)
        return ProtocolDive(fingerprint=data[:SZ_FINGERPRINT], timestamp=header.timestamp, data=data)

    def parse_samples(self, data: bytes) -> list[Sample]:
        if is_genius_model(self.model):
            return parse_samples_genius(data)
        return parse_samples_classic(data[SZ_DIVE_HEADER:])
