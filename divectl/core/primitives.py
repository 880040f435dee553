"""Checksums, SLIP framing, byte search, and unit helpers used by the protocols.

All functions accept ``bytes``-like input plus an optional ``offset``/``length``
window so callers can check a slice of a packet without copying it.
"""

from __future__ import annotations

import re

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD

_NON_HEX_RE = re.compile(r"[^0-9a-fA-F]")


def _window(data: bytes | bytearray, offset: int, length: int | None) -> memoryview:
    view = memoryview(data)
    if length is None:
        return view[offset:]
    return view[offset : offset + length]


def add8(data: bytes | bytearray, offset: int = 0, length: int | None = None) -> int:
    return sum(_window(data, offset, length)) & 0xFF


def add16(data: bytes | bytearray, offset: int = 0, length: int | None = None) -> int:
    """Sum of little-endian 16-bit words; a trailing odd byte is added as-is."""
    view = _window(data, offset, length)
    total = 0
    for i in range(0, len(view), 2):
        if i + 1 < len(view):
            total += view[i] | (view[i + 1] << 8)
        else:
            total += view[i]
    return total & 0xFFFF


def xor8(
    data: bytes | bytearray,
    offset: int = 0,
    length: int | None = None,
    init: int = 0,
) -> int:
    result = init
    for byte in _window(data, offset, length):
        result ^= byte
    return result & 0xFF


def crc16ccitt(data: bytes | bytearray, offset: int = 0, length: int | None = None) -> int:
    crc = 0xFFFF
    for byte in _window(data, offset, length):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
        crc &= 0xFFFF
    return crc


def _build_crc32_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0xEDB88320
            else:
                crc >>= 1
        table.append(crc)
    return tuple(table)


_CRC32_TABLE = _build_crc32_table()


def crc32r(data: bytes | bytearray, offset: int = 0, length: int | None = None) -> int:
    crc = 0xFFFFFFFF
    for byte in _window(data, offset, length):
        crc = (crc >> 8) ^ _CRC32_TABLE[(crc ^ byte) & 0xFF]
    return crc ^ 0xFFFFFFFF


def slip_encode(data: bytes | bytearray) -> bytes:
    out = bytearray()
    for byte in data:
        if byte == SLIP_END:
            out += bytes((SLIP_ESC, SLIP_ESC_END))
        elif byte == SLIP_ESC:
            out += bytes((SLIP_ESC, SLIP_ESC_ESC))
        else:
            out.append(byte)
    out.append(SLIP_END)
    return bytes(out)


def slip_decode(data: bytes | bytearray) -> bytes:
    """Decode up to the first unescaped END byte."""
    out = bytearray()
    escaped = False
    for byte in data:
        if escaped:
            if byte == SLIP_ESC_END:
                out.append(SLIP_END)
            elif byte == SLIP_ESC_ESC:
                out.append(SLIP_ESC)
            else:
                out.append(byte)
            escaped = False
        elif byte == SLIP_ESC:
            escaped = True
        elif byte == SLIP_END:
            break
        else:
            out.append(byte)
    return bytes(out)


def search_forward(data: bytes | bytearray, pattern: bytes, start: int = 0) -> int:
    return bytes(data).find(pattern, max(start, 0))


def search_backward(data: bytes | bytearray, pattern: bytes, start: int | None = None) -> int:
    """Return the highest match position <= ``start``, or -1."""
    if start is None:
        start = len(data) - len(pattern)
    if start < 0:
        return -1
    return bytes(data).rfind(pattern, 0, start + len(pattern))


def bcd2dec(value: int) -> int:
    return ((value >> 4) & 0x0F) * 10 + (value & 0x0F)


def hex_to_int(text: str) -> int:
    return int(_NON_HEX_RE.sub("", text) or "0", 16)


def feet_to_meters(feet: float) -> float:
    return feet * 0.3048


def fahrenheit_to_celsius(fahrenheit: float) -> float:
    return (fahrenheit - 32.0) * 5.0 / 9.0


def psi_to_bar(psi: float) -> float:
    return psi * 0.0689476


def mbar_to_bar(mbar: float) -> float:
    return mbar / 1000.0
