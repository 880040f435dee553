from __future__ import annotations

import socket

import pytest

from divectl.core.errors import TransportConnectError, TransportSendError
from divectl.transports.rfcomm import (
    RFCOMMTransport,
    extract_name_address,
    is_bluetooth_address,
    parse_bluetooth_address,
)


def test_missing_bluetooth_constants_raises_clean_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delattr(socket, "AF_BLUETOOTH", raising=False)
    monkeypatch.delattr(socket, "BTPROTO_RFCOMM", raising=False)

    transport = RFCOMMTransport("88:92:CC:11:22:33", channel=15)
    with pytest.raises(TransportConnectError):
        transport.open()
    assert not transport.is_open()


def test_write_before_open_fails() -> None:
    with pytest.raises(TransportSendError):
        RFCOMMTransport("88:92:CC:11:22:33").write(b"\xaa")


def test_parse_bluetooth_address_forms() -> None:
    assert parse_bluetooth_address("00:13:43:aa:bb:cc") == ("00:13:43:AA:BB:CC", False)
    assert parse_bluetooth_address("LE:00:13:43:aa:bb:cc") == ("00:13:43:AA:BB:CC", True)
    uuid = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
    assert parse_bluetooth_address(uuid) == (uuid.upper(), True)
    assert parse_bluetooth_address("/dev/ttyUSB0") is None
    assert is_bluetooth_address("LE:00:13:43:AA:BB:CC")
    assert not is_bluetooth_address("COM3")


def test_extract_name_address() -> None:
    assert extract_name_address("Petrel (00:13:43:AA:BB:CC)") == ("00:13:43:AA:BB:CC", "Petrel")
    assert extract_name_address(" 00:13:43:AA:BB:CC ") == ("00:13:43:AA:BB:CC", "")
    assert extract_name_address("Petrel (nowhere)") is None


class ClosedPeerSocket:
    def recv(self, size: int) -> bytes:
        return b""

    def close(self) -> None:
        pass


def test_peer_close_marks_transport_closed() -> None:
    transport = RFCOMMTransport("88:92:CC:11:22:33")
    transport._socket = ClosedPeerSocket()
    transport._open = True

    with pytest.raises(TransportSendError):
        transport._pump()
    assert not transport.is_open()
