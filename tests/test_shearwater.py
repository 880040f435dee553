from __future__ import annotations

import struct
from datetime import datetime, timezone

import pytest

from divectl.core.primitives import slip_decode, slip_encode
from divectl.protocols.shearwater import (
    ID_FIRMWARE,
    ID_HARDWARE,
    ID_LOGUPLOAD,
    ID_SERIAL,
    ID_TIME_DST,
    ID_TIME_OFFSET,
    ID_TIME_UTC,
    LOGBOOK_BASE,
    MANIFEST_ADDR,
    MANIFEST_SIZE,
    RECORD_DELETED,
    RECORD_SIZE,
    RECORD_VALID,
    SHUTDOWN_REQUEST,
    TERIC,
    ShearwaterProtocol,
    decompress_lre,
    decompress_xor,
    parse_manifest_record,
    parse_samples,
)


def _lre(codes: list[int]) -> bytes:
    bits = "".join(f"{code:09b}" for code in codes)
    bits += "0" * (-len(bits) % 8)
    return int(bits, 2).to_bytes(len(bits) // 8, "big")


def _xor_encode(plain: bytes) -> bytes:
    return bytes(b ^ plain[i - 32] if i >= 32 else b for i, b in enumerate(plain))


def _compress(plain: bytes) -> bytes:
    codes: list[int] = []
    run = 0
    for byte in _xor_encode(plain):
        if byte == 0 and run < 255:
            run += 1
            continue
        if run:
            codes.append(run)
            run = 0
        if byte == 0:
            run = 1
        else:
            codes.append(0x100 | byte)
    if run:
        codes.append(run)
    codes.append(0)
    return _lre(codes)


def _dive(timestamp: int, filler: int) -> bytes:
    data = bytearray(bytes((filler,)) * 64)
    data[0:4] = bytes(4)
    struct.pack_into(">I", data, 4, timestamp)
    struct.pack_into(">I", data, 12, timestamp)
    return bytes(data)


def _record(header: int, timestamp: int, address: int) -> bytes:
    record = bytearray(RECORD_SIZE)
    struct.pack_into(">H", record, 0, header)
    struct.pack_into(">I", record, 4, timestamp)
    struct.pack_into(">I", record, 20, address)
    return bytes(record)


class FakeShearwater:
    def __init__(self) -> None:
        self.identifiers = {
            ID_SERIAL: bytes.fromhex("12345678"),
            ID_FIRMWARE: b"V91\x00",
            ID_HARDWARE: bytes((0x0F, 0x0F)),
            ID_LOGUPLOAD: b"\x01" + struct.pack(">I", 0xDD000000) + bytes(4),
        }
        manifest = (
            _record(RECORD_VALID, 0x60000200, 0x200)
            + _record(RECORD_DELETED, 0x60000150, 0x150)
            + _record(RECORD_VALID, 0x60000100, 0x100)
        )
        self.memory = {
            MANIFEST_ADDR: manifest.ljust(MANIFEST_SIZE, b"\x00"),
            LOGBOOK_BASE + 0x200: _dive(0x60000200, 0x22),
            LOGBOOK_BASE + 0x100: _dive(0x60000100, 0x11),
        }
        self.written: list[int] = []
        self.requests: list[bytes] = []
        self._stream = b""

    def __call__(self, data: bytes) -> list[bytes]:
        packet = slip_decode(data)
        assert packet[:2] == b"\xff\x01" and packet[3] == 0
        request = packet[4:]
        self.requests.append(request)
        payload = self._answer(request)
        if payload is None:
            return []
        return [slip_encode(bytes((0x01, 0xFF, len(payload) + 1, 0x00)) + payload)]

    def _answer(self, request: bytes) -> bytes | None:
        if request == SHUTDOWN_REQUEST:
            return None
        if request[0] == 0x22:
            identifier = (request[1] << 8) | request[2]
            return bytes((0x62,)) + request[1:3] + self.identifiers[identifier]
        if request[0] == 0x2E:
            self.written.append((request[1] << 8) | request[2])
            return bytes((0x6E,)) + request[1:3]
        if request[0] == 0x35:
            address = struct.unpack_from(">I", request, 3)[0]
            content = self.memory[address]
            self._stream = _compress(content) if request[1] == 0x10 else content
            return bytes((0x75, 0x10, 0x82))
        if request[0] == 0x36:
            chunk, self._stream = self._stream[:252], self._stream[252:]
            return bytes((0x76, request[1])) + chunk
        if request[0] == 0x37:
            return b"\x77\x00"
        raise AssertionError(f"unexpected request {request.hex()}")


@pytest.fixture
def device() -> FakeShearwater:
    return FakeShearwater()


@pytest.fixture
def protocol(scripted, device) -> ShearwaterProtocol:
    protocol = ShearwaterProtocol(scripted(device))
    assert protocol.connect()
    return protocol


def test_lre_literals_zero_run_and_end_code() -> None:
    decoded, done = decompress_lre(_lre([0x141, 0x142, 3, 0x143, 0, 0x144]))
    assert decoded == b"AB\x00\x00\x00C"
    assert done is True


def test_lre_without_end_code_is_not_done() -> None:
    decoded, done = decompress_lre(_lre([0x1FF, 2]))
    assert decoded == b"\xff\x00\x00"
    assert done is False


def test_xor_pass_restores_original() -> None:
    original = bytes((i * 7) & 0xFF for i in range(80))
    encoded = bytearray(_xor_encode(original))
    assert bytes(encoded) != original
    decompress_xor(encoded)
    assert bytes(encoded) == original


def test_handshake_reads_identity(protocol) -> None:
    info = protocol.get_device_info()
    assert info.serial == 0x12345678
    assert info.firmware == 91
    assert info.hardware_version == 0x0F0F
    assert info.model == TERIC
    assert info.features == ("Teric",)


def test_manifest_skips_deleted_and_stops_at_blank_record(protocol) -> None:
    records = protocol.read_manifest()
    assert [(r.fingerprint, r.data_address) for r in records] == [
        (struct.pack(">I", 0x60000200), 0x200),
        (struct.pack(">I", 0x60000100), 0x100),
    ]


def test_list_dives_stops_at_fingerprint(protocol) -> None:
    assert protocol.list_dives() == ["00000200", "00000100"]
    protocol.set_fingerprint(struct.pack(">I", 0x60000100))
    assert protocol.list_dives() == ["00000200"]


def test_download_dive_decompresses_from_logbook_base(protocol, device) -> None:
    dive = protocol.download_dive("00000200")
    assert dive.data == _dive(0x60000200, 0x22)
    assert dive.fingerprint == struct.pack(">I", 0x60000200)
    assert dive.timestamp == 0x60000200
    init = [r for r in device.requests if r[0] == 0x35][-1]
    assert struct.unpack_from(">I", init, 3)[0] == LOGBOOK_BASE + 0x200


def test_download_all_dives_is_incremental(protocol) -> None:
    protocol.set_fingerprint(struct.pack(">I", 0x60000100))
    dives = protocol.download_all_dives()
    assert [d.timestamp for d in dives] == [0x60000200]


def test_teric_sync_time_writes_utc_offset_and_dst(protocol, device) -> None:
    assert protocol.sync_time(datetime(2024, 5, 17, 10, 30, tzinfo=timezone.utc))
    assert device.written == [ID_TIME_UTC, ID_TIME_OFFSET, ID_TIME_DST]


def test_disconnect_sends_shutdown_without_waiting(protocol, device) -> None:
    protocol.disconnect()
    assert device.requests[-1] == SHUTDOWN_REQUEST


def test_parse_manifest_record_rejects_other_headers() -> None:
    assert parse_manifest_record(_record(RECORD_DELETED, 1, 2)) is None
    record = parse_manifest_record(_record(RECORD_VALID, 0x60000000, 0x300))
    assert record.timestamp == 0x60000000
    assert record.data_address == 0x300


def test_parse_samples_converts_imperial_units() -> None:
    data = bytearray(51)
    struct.pack_into("<HH", data, 32, 100, 700)
    data[32 + 5] = 100
    struct.pack_into("<H", data, 32 + 15, 20)
    samples = parse_samples(bytes(data))
    assert len(samples) == 1
    assert samples[0].depth == pytest.approx(3.048)
    assert samples[0].temperature == pytest.approx((70.0 - 32) * 5 / 9)
    assert samples[0].ppo2 == pytest.approx(1.0)
    assert samples[0].ndl == 1200
