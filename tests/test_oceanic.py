from __future__ import annotations

import calendar
import struct
from datetime import datetime

import pytest

from divectl.core.errors import DataFormatError, UnsupportedError
from divectl.core.primitives import add8
from divectl.protocols.oceanic_atom2 import (
    ACK,
    CMD_KEEPALIVE,
    CMD_QUIT,
    CMD_READ1,
    CMD_VERSION,
    MAXRETRIES,
    NAK,
    PAGESIZE,
    OceanicAtom2Protocol,
    command_checksum,
    parse_logbook_entry,
    parse_samples_classic,
    parse_samples_extended,
    ringbuffer_count,
    ringbuffer_entries,
)

BEGIN = 0x0240
END = 0x0A40


class FakeAtom2:
    def __init__(self) -> None:
        self.memory = bytearray(b"\xff" * 0x10000)
        self.memory[0:4] = struct.pack("<I", 123456)
        self.version = b"OC 2M ATOM r1.23"
        self.pages: list[int] = []
        self.commands: list[int] = []
        self.corrupt = False

    def set_logbook(self, first: int, last: int) -> None:
        struct.pack_into("<HH", self.memory, 0x44, first, last)

    def add_dive(self, entry: int, pointer: int, profile: bytes, when: bytes = b"\x05\x10\x17\x05\x24") -> None:
        self.memory[entry : entry + 8] = struct.pack("<H", pointer) + when + bytes((entry & 0xFF,))
        start = 0x0A40 + pointer * PAGESIZE
        self.memory[start : start + len(profile)] = profile

    def __call__(self, command: bytes) -> list[bytes]:
        self.commands.append(command[0])
        if command[0] == CMD_VERSION:
            return [self._packet(self.version)]
        if command[0] == CMD_READ1:
            page = (command[1] << 8) | command[2]
            self.pages.append(page)
            return [self._packet(bytes(self.memory[page * PAGESIZE : (page + 1) * PAGESIZE]))]
        if command[0] == CMD_QUIT:
            return [bytes((NAK,))]
        if command[0] == CMD_KEEPALIVE:
            return [bytes((ACK,))]
        raise AssertionError(f"unexpected command {command.hex()}")

    def _packet(self, payload: bytes) -> bytes:
        checksum = add8(payload) ^ (0x01 if self.corrupt else 0x00)
        return bytes((ACK,)) + payload + bytes((checksum,))


@pytest.fixture
def device() -> FakeAtom2:
    device = FakeAtom2()
    device.set_logbook(0x0240, 0x0250)
    device.add_dive(0x0240, 1, bytes(range(1, 33)))
    device.add_dive(0x0248, 5, b"\x10" * PAGESIZE, when=b"\x45\x10\x17\x05\x24")
    return device


@pytest.fixture
def protocol(scripted, device) -> OceanicAtom2Protocol:
    protocol = OceanicAtom2Protocol(scripted(device), model_code=0x4342)
    assert protocol.connect("/dev/ttyUSB0")
    return protocol


def test_ringbuffer_wraps_single_entry() -> None:
    first = END - 8
    assert ringbuffer_count(BEGIN, END, 8, first, BEGIN) == 1
    assert ringbuffer_entries(BEGIN, END, 8, first, BEGIN) == [END - 8]


def test_ringbuffer_non_wrapped_and_wrapped_orders() -> None:
    assert ringbuffer_entries(BEGIN, END, 8, 0x0240, 0x0260) == [0x0258, 0x0250, 0x0248, 0x0240]
    wrapped = ringbuffer_entries(BEGIN, END, 8, 0x0A30, 0x0250)
    assert wrapped == [0x0248, 0x0240, 0x0A38, 0x0A30]
    assert all(BEGIN <= address < END for address in wrapped)


def test_ringbuffer_rejects_pointers_outside_logbook() -> None:
    with pytest.raises(DataFormatError):
        ringbuffer_entries(BEGIN, END, 8, 0x0100, 0x0250)


def test_handshake_picks_layout_and_reads_serial(protocol) -> None:
    info = protocol.get_device_info()
    assert info.serial == 123456
    assert info.model == 0x4342
    assert info.features == ("Atom 2",)
    assert protocol.layout.name == "default"


def test_page_cache_avoids_rereading_same_page(protocol, device) -> None:
    device.pages.clear()
    protocol.read_memory(0x100, 4)
    protocol.read_memory(0x104, 4)
    assert device.pages == [0x10]

    protocol.read_memory(0x10E, 4)
    assert device.pages == [0x10, 0x11]


def test_list_and_download_walk_logbook_newest_first(protocol) -> None:
    identifiers = protocol.list_dives()
    assert identifiers == ["00000248:0005", "00000240:0001"]

    dive = protocol.download_dive("00000240:0001")
    assert dive.fingerprint == struct.pack("<H", 1) + b"\x05\x10"
    assert dive.data[8:] == bytes(range(1, 33))
    assert dive.timestamp == calendar.timegm(datetime(2024, 5, 17, 10, 5).timetuple())

    newer = protocol.download_dive("00000248:0005")
    assert newer.timestamp == calendar.timegm(datetime(2024, 5, 17, 10, 45).timetuple())


def test_fingerprint_stops_logbook_walk(protocol, device) -> None:
    protocol.set_fingerprint(bytes(device.memory[0x0240:0x0244]))
    assert protocol.list_dives() == ["00000248:0005"]


def test_checksum_failure_retries_then_raises(protocol, device) -> None:
    device.corrupt = True
    device.commands.clear()
    with pytest.raises(DataFormatError):
        protocol.transfer(bytes((CMD_READ1, 0x00, 0x30)), ACK, PAGESIZE)
    assert device.commands == [CMD_READ1] * (MAXRETRIES + 1)


def test_page_beyond_16_bits_is_unsupported(protocol) -> None:
    with pytest.raises(UnsupportedError):
        protocol.read_memory(0x10000 * PAGESIZE, 4)


def test_disconnect_sends_quit_and_expects_nak(protocol, device) -> None:
    protocol.keepalive()
    protocol.disconnect()
    assert device.commands[-2:] == [CMD_KEEPALIVE, CMD_QUIT]


def test_classic_samples_use_sixteenth_feet_and_carry_temperature() -> None:
    data = struct.pack("<H", 16) + struct.pack("<H", 0x1000 | 32) + bytes((50,)) + struct.pack("<H", 48)
    samples = parse_samples_classic(data)
    assert [s.time for s in samples] == [0, 1, 2]
    assert samples[0].depth == pytest.approx(0.3048, abs=1e-6)
    assert samples[0].temperature is None
    assert samples[1].temperature == pytest.approx(10.0)
    assert samples[2].temperature == pytest.approx(10.0)


def test_extended_samples_decode_flags() -> None:
    data = struct.pack("<Hh", 100, 100) + bytes((120, 10, 0, 0x04))
    sample = parse_samples_extended(data)[0]
    assert sample.depth == pytest.approx(3.048)
    assert sample.temperature == pytest.approx((10.0 - 32) * 5 / 9, abs=1e-6)
    assert sample.ppo2 == pytest.approx(1.2)
    assert sample.ndl == 600
    assert [e.type for e in sample.events] == ["bookmark"]


def test_helpers() -> None:
    assert (0xB1 + 0x01 + 0x02 + command_checksum(0xB1, 0x01, 0x02)) & 0xFF == 0


def test_logbook_entry_dates() -> None:
    classic = parse_logbook_entry(struct.pack("<H", 7) + b"\x30\x23\x31\x12\x23\x09")
    assert classic.profile_pointer == 7
    assert classic.dive_number == 9
    assert classic.timestamp == calendar.timegm(datetime(2023, 12, 31, 23, 30).timetuple())

    blank = parse_logbook_entry(struct.pack("<H", 7) + b"\xff" * 6)
    assert blank.timestamp == 0

    extended = parse_logbook_entry(struct.pack("<HHI", 0x0100, 42, 1715940300) + bytes(8), extended=True)
    assert (extended.profile_pointer, extended.dive_number, extended.timestamp) == (0x0100, 42, 1715940300)

    with pytest.raises(DataFormatError):
        parse_logbook_entry(b"\x00" * 8, extended=True)
