from __future__ import annotations

import struct

import pytest

from divectl.core.model import TransportType
from divectl.core.primitives import xor8
from divectl.protocols.uwatec_smart import (
    ACK,
    CMD_DATA,
    CMD_DEVTIME,
    CMD_HANDSHAKE1,
    CMD_HANDSHAKE2,
    CMD_HARDWARE,
    CMD_MODEL,
    CMD_SERIAL,
    CMD_SIZE,
    CMD_SOFTWARE,
    DIVE_HEADER,
    HANDSHAKE_PARAMS,
    OK,
    SERIAL_PREAMBLE,
    SAMPLE_ALARM,
    SAMPLE_DEPTH,
    SAMPLE_NDL,
    SAMPLE_TEMPERATURE,
    UwatecSmartProtocol,
    extract_dives,
    parse_dive_header,
    parse_samples,
    supports_heart_rate,
)


def _dive(timestamp: int, size: int = 24) -> bytes:
    body = bytes((0x01,)) * (size - 12)
    return DIVE_HEADER + struct.pack("<II", size, timestamp) + body


class FakeG2:
    """Answers commands the way the HID and serial links frame them."""

    def __init__(self, blob: bytes) -> None:
        self.blob = blob
        self.commands: list[int] = []
        self.params: list[bytes] = []

    def answer(self, cmd: int, data: bytes) -> bytes:
        self.commands.append(cmd)
        self.params.append(data)
        if cmd in (CMD_HANDSHAKE1, CMD_HANDSHAKE2):
            return bytes((OK,))
        if cmd == CMD_MODEL:
            return bytes((0x32,))
        if cmd == CMD_HARDWARE:
            return bytes((0x01,))
        if cmd == CMD_SOFTWARE:
            return bytes((0x12,))
        if cmd == CMD_SERIAL:
            return struct.pack("<I", 987654)
        if cmd == CMD_DEVTIME:
            return struct.pack("<I", 0x12345678)
        if cmd == CMD_SIZE:
            return struct.pack("<I", len(self.blob))
        if cmd == CMD_DATA:
            return struct.pack("<I", len(self.blob) + 4) + self.blob
        raise AssertionError(f"unexpected command {cmd:02x}")

    def hid(self, report: bytes) -> list[bytes]:
        assert report[0] == 0x00
        length, cmd = report[1], report[2]
        reply = self.answer(cmd, report[3 : 2 + length])
        packets = []
        for offset in range(0, len(reply), 63):
            chunk = reply[offset : offset + 63]
            packets.append((bytes((len(chunk),)) + chunk).ljust(64, b"\x00"))
        return packets

    def serial(self, packet: bytes) -> list[bytes]:
        assert packet[:7] == SERIAL_PREAMBLE
        cmd = packet[11]
        reply = self.answer(cmd, packet[12:-1])
        header = struct.pack("<I", len(reply) + 1) + bytes((cmd,))
        return [packet + bytes((ACK,)), header + reply + bytes((xor8(header + reply),))]


@pytest.fixture
def device() -> FakeG2:
    return FakeG2(_dive(100) + _dive(200, 30))


def test_hid_connect_reads_device_info(scripted, device) -> None:
    protocol = UwatecSmartProtocol(scripted(device.hid, kind=TransportType.USBHID))
    assert protocol.connect()

    info = protocol.get_device_info()
    assert info.model == 0x32
    assert info.firmware == 12
    assert info.serial == 987654
    assert info.features == ("G2",)
    assert protocol.devtime == 0x12345678
    assert CMD_HANDSHAKE1 not in device.commands


def test_serial_connect_runs_handshake_with_echo(scripted, device) -> None:
    transport = scripted(device.serial)
    protocol = UwatecSmartProtocol(transport)
    assert protocol.connect()

    assert device.commands[:2] == [CMD_HANDSHAKE1, CMD_HANDSHAKE2]
    assert device.params[1] == HANDSHAKE_PARAMS
    assert all(write.startswith(SERIAL_PREAMBLE) for write in transport.writes)
    assert protocol.get_device_info().serial == 987654


def test_download_splits_blob_newest_first(scripted, device) -> None:
    protocol = UwatecSmartProtocol(scripted(device.hid, kind=TransportType.USBHID))
    assert protocol.connect()

    dives = protocol.download_all_dives()

    assert [d.timestamp for d in dives] == [200, 100]
    assert dives[0].fingerprint == struct.pack("<I", 200)
    assert len(dives[0].data) == 30


def test_fingerprint_timestamp_is_sent_to_device(scripted, device) -> None:
    protocol = UwatecSmartProtocol(scripted(device.hid, kind=TransportType.USBHID))
    assert protocol.connect()
    protocol.set_fingerprint(struct.pack("<I", 100))

    protocol.list_dives()

    size_params = device.params[device.commands.index(CMD_SIZE)]
    assert size_params == struct.pack("<I", 100) + HANDSHAKE_PARAMS


def test_extract_dives_skips_overlapping_marker() -> None:
    blob = _dive(1) + DIVE_HEADER + struct.pack("<II", 500, 2)
    dives = extract_dives(blob)
    assert [d.timestamp for d in dives] == [1]


def test_parse_dive_header() -> None:
    data = DIVE_HEADER + struct.pack("<II", 26, 7) + struct.pack("<Hh", 2512, 185) + bytes((2, 1))
    data += bytes((32, 0)) + struct.pack("<H", 33) + bytes(4)
    header = parse_dive_header(data)
    assert header.max_depth == pytest.approx(25.12)
    assert header.min_temp == pytest.approx(18.5)
    assert header.dive_mode == 2
    assert header.gases == ((32, 0, 33),)
    assert parse_dive_header(b"\x00" * 20) is None


def test_parse_samples_attaches_records_to_current_depth() -> None:
    data = bytes((SAMPLE_DEPTH,)) + (100000).to_bytes(3, "little")
    data += bytes((SAMPLE_TEMPERATURE,)) + struct.pack("<h", 2150)
    data += bytes((SAMPLE_DEPTH,)) + (120000).to_bytes(3, "little")
    data += bytes((SAMPLE_ALARM, 0x01))
    data += bytes((SAMPLE_NDL,)) + struct.pack("<H", 5)

    samples = parse_samples(data)

    assert [(s.time, s.depth) for s in samples] == [(0, 10.0), (4, 12.0)]
    assert samples[0].temperature == pytest.approx(21.5)
    assert [e.type for e in samples[1].events] == ["ascent"]
    assert samples[1].ndl == 300


def test_model_helpers() -> None:
    assert supports_heart_rate(0x32)
    assert not supports_heart_rate(0x22)
