from __future__ import annotations

import struct
from datetime import datetime

import pytest

from divectl.core.errors import DataFormatError, InvalidArgumentError, ProtocolError
from divectl.protocols.hw_ostc import (
    CMD_DUMP,
    CMD_EEPROM_READ,
    CMD_EEPROM_WRITE,
    CMD_MD2HASH,
    CMD_RESET,
    CMD_TIMESYNC,
    PREAMBLE,
    SZ_FW_190,
    SZ_FW_NEW,
    SZ_EEPROM,
    SZ_HEADER,
    SZ_MD2HASH,
    HWOstcProtocol,
    dive_timestamp,
    extract_dives,
    model_for_serial,
    parse_header,
    profile_size,
)


def _header(serial: int, firmware: int) -> bytes:
    header = bytearray(SZ_HEADER)
    header[: len(PREAMBLE)] = PREAMBLE
    struct.pack_into("<H", header, 6, serial)
    struct.pack_into(">H", header, 264, firmware)
    return bytes(header)


def _dive(month: int, day: int, hour: int) -> bytes:
    return b"\xfa\xfa\x20" + bytes((month, day, 24, hour, 30)) + b"\x11" * 10 + b"\xfd\xfd"


def _dump(serial: int = 500, firmware: int = 0x0100) -> bytes:
    profile = bytearray(b"\xff" * profile_size(firmware))
    first = _dive(5, 17, 10)
    second = _dive(5, 18, 9)
    profile[0 : len(first)] = first
    profile[40 : 40 + len(second)] = second
    return _header(serial, firmware) + bytes(profile)


class FakeOstc:
    def __init__(self, dump: bytes) -> None:
        self.dump = dump
        self.received: list[bytes] = []
        self.eeprom = [bytes((bank,)) * SZ_EEPROM for bank in range(3)]
        self.writing: int | None = None
        self.written = bytearray()
        self.bad_echo = False

    def __call__(self, data: bytes) -> list[bytes]:
        self.received.append(data)
        if self.writing is not None:
            self.written += data
            return [data]
        if len(data) != 1:
            return []
        cmd = data[0]
        if cmd == CMD_DUMP:
            return [self.dump[:SZ_HEADER], self.dump[SZ_HEADER:]]
        if cmd == CMD_MD2HASH:
            return [bytes(range(SZ_MD2HASH))]
        if cmd in CMD_EEPROM_READ:
            return [self.eeprom[CMD_EEPROM_READ.index(cmd)]]
        if cmd in CMD_EEPROM_WRITE:
            self.writing = CMD_EEPROM_WRITE.index(cmd)
            return [data]
        if cmd in (CMD_TIMESYNC, CMD_RESET):
            return [b"\x00" if self.bad_echo else data]
        return []


@pytest.fixture
def protocol(scripted) -> HWOstcProtocol:
    protocol = HWOstcProtocol(scripted(FakeOstc(_dump())))
    assert protocol.connect()
    return protocol


def test_connect_dumps_memory_and_decodes_header(protocol) -> None:
    info = protocol.get_device_info()
    assert info.serial == 500
    assert info.firmware == 0x0100
    assert info.model == 1
    assert info.features == ("OSTC Mk2",)
    assert len(protocol.dump_data) == SZ_HEADER + SZ_FW_190


def test_dives_come_newest_first_with_date_fingerprint(protocol) -> None:
    dives = protocol.download_all_dives()
    assert [d.fingerprint for d in dives] == [bytes((5, 18, 24, 9, 30)), bytes((5, 17, 24, 10, 30))]
    assert dives[0].data == _dive(5, 18, 9)


def test_fingerprint_stops_download(protocol) -> None:
    protocol.set_fingerprint(bytes((5, 17, 24, 10, 30)))
    assert len(protocol.download_all_dives()) == 1


def test_extract_dives_ignores_unterminated_start() -> None:
    data = _dump()
    profile = bytearray(data[SZ_HEADER:])
    profile[100:102] = b"\xfa\xfa"
    dives = extract_dives(data[:SZ_HEADER] + bytes(profile))
    assert len(dives) == 2


def test_sync_time_waits_for_echo(scripted) -> None:
    device = FakeOstc(_dump())
    protocol = HWOstcProtocol(scripted(device))
    assert protocol.connect()

    assert protocol.sync_time(datetime(2024, 5, 17, 10, 30, 15))
    assert device.received[-1] == bytes((10, 30, 15, 5, 17, 24))


def test_read_raw_bounds(protocol) -> None:
    assert protocol.read_raw(0, len(PREAMBLE)) == PREAMBLE
    with pytest.raises(InvalidArgumentError):
        protocol.read_raw(SZ_HEADER + SZ_FW_190 - 1, 4)


def test_header_and_model_helpers() -> None:
    with pytest.raises(DataFormatError):
        parse_header(bytes(SZ_HEADER))
    assert parse_header(_header(8000, 0x0200)).features == ("OSTC 2C",)
    assert model_for_serial(100) == (0, "OSTC")
    assert model_for_serial(3000) == (2, "OSTC 2N")
    assert profile_size(0x015A) == SZ_FW_190
    assert profile_size(0x015B) == SZ_FW_NEW
    assert dive_timestamp(b"\xfa\xfa\x20" + bytes((13, 1, 24, 0, 0))) == 0


@pytest.fixture
def device() -> FakeOstc:
    return FakeOstc(_dump())


@pytest.fixture
def connected(scripted, device) -> HWOstcProtocol:
    protocol = HWOstcProtocol(scripted(device))
    assert protocol.connect()
    return protocol


def test_read_md2hash(connected, device) -> None:
    assert connected.read_md2hash() == bytes(range(SZ_MD2HASH))
    assert device.received[-1] == bytes((CMD_MD2HASH,))


def test_read_eeprom_banks(connected) -> None:
    assert connected.read_eeprom(1) == b"\x01" * SZ_EEPROM
    with pytest.raises(InvalidArgumentError):
        connected.read_eeprom(3)


def test_write_eeprom_skips_read_only_bytes(connected, device) -> None:
    data = bytes(range(SZ_EEPROM))
    connected.write_eeprom(2, data)

    assert device.writing == 2
    assert bytes(device.written) == data[4:]
    assert len(device.written) == SZ_EEPROM - 4


def test_write_eeprom_rejects_bad_arguments(connected, device) -> None:
    with pytest.raises(InvalidArgumentError):
        connected.write_eeprom(0, b"\x00" * 10)
    with pytest.raises(InvalidArgumentError):
        connected.write_eeprom(5, b"\x00" * SZ_EEPROM)
    assert device.writing is None


def test_reset_checks_echo(connected, device) -> None:
    connected.reset()
    assert device.received[-1] == bytes((CMD_RESET,))

    device.bad_echo = True
    with pytest.raises(ProtocolError):
        connected.reset()
