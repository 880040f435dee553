from __future__ import annotations

import pytest

from divectl.core.primitives import (
    add8,
    add16,
    bcd2dec,
    crc16ccitt,
    crc32r,
    fahrenheit_to_celsius,
    feet_to_meters,
    hex_to_int,
    mbar_to_bar,
    psi_to_bar,
    search_backward,
    search_forward,
    slip_decode,
    slip_encode,
    xor8,
)


def test_checksums_on_reference_vectors() -> None:
    assert crc16ccitt(b"123456789") == 0x29B1
    assert crc32r(b"123456789") == 0xCBF43926
    assert crc32r(b"") == 0
    assert add8(bytes((0x01, 0x02, 0x03))) == 0x06
    assert xor8(bytes((0xAA, 0x55))) == 0xFF


def test_checksums_respect_offset_and_length() -> None:
    packet = b"\xff\xff123456789\x00"
    assert crc16ccitt(packet, 2, 9) == 0x29B1
    assert crc32r(packet, offset=2, length=9) == 0xCBF43926
    assert add8(b"\x10\x01\x02\x03", 1) == 0x06


def test_add8_wraps() -> None:
    assert add8(bytes((0xFF, 0x02))) == 0x01


def test_add16_sums_little_endian_words_and_trailing_byte() -> None:
    assert add16(bytes((0x01, 0x02, 0x03, 0x04))) == 0x0201 + 0x0403
    assert add16(bytes((0x01, 0x02, 0x05))) == 0x0201 + 0x05


def test_xor8_with_initial_value() -> None:
    assert xor8(b"\x0f", init=0xF0) == 0xFF


@pytest.mark.parametrize(
    "payload",
    [
        b"",
        b"hello",
        bytes((0xC0,)),
        bytes((0xDB,)),
        bytes((0x01, 0xC0, 0xDB, 0xC0, 0xDB, 0x02)),
        bytes(range(256)),
    ],
)
def test_slip_round_trip(payload: bytes) -> None:
    assert slip_decode(slip_encode(payload)) == payload


def test_slip_escapes_special_bytes() -> None:
    assert slip_encode(bytes((0x01, 0xC0, 0xDB))) == bytes((0x01, 0xDB, 0xDC, 0xDB, 0xDD, 0xC0))


def test_slip_decode_stops_at_first_end_and_keeps_unknown_escape() -> None:
    assert slip_decode(bytes((0x01, 0xDB, 0x42, 0xC0, 0x99))) == bytes((0x01, 0x42))


def test_search_forward_and_backward() -> None:
    data = b"xxABxxABxx"
    assert search_forward(data, b"AB") == 2
    assert search_forward(data, b"AB", 3) == 6
    assert search_forward(data, b"CD") == -1
    assert search_backward(data, b"AB") == 6
    assert search_backward(data, b"AB", 5) == 2
    assert search_backward(data, b"AB", 1) == -1
    assert search_backward(data, b"AB", -1) == -1


def test_bcd_and_hex_helpers() -> None:
    assert bcd2dec(0x42) == 42
    assert bcd2dec(0x09) == 9
    assert hex_to_int("12:ab") == 0x12AB
    assert hex_to_int("") == 0


def test_unit_conversions() -> None:
    assert feet_to_meters(16 / 16.0) == pytest.approx(0.3048, abs=1e-6)
    assert fahrenheit_to_celsius(100 / 10.0) == pytest.approx((10.0 - 32) * 5 / 9, abs=1e-6)
    assert psi_to_bar(1000) == pytest.approx(68.9476)
    assert mbar_to_bar(1013) == pytest.approx(1.013)
