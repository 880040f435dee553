from __future__ import annotations

from types import SimpleNamespace

import pytest

from divectl.core.errors import NoDeviceError, TransportError
from divectl.transports.ble_gatt import (
    BLEGATTTransport,
    is_upgrade_service,
    known_serial_service,
    select_characteristics,
    strip_le_prefix,
)

SHEARWATER = "fe25c237-0ece-443c-b0aa-e02033e7029d"
DFU = "00001530-1212-efde-1523-785feabcd123"


def _service(uuid: str, *chars: tuple[str, list[str]]) -> SimpleNamespace:
    return SimpleNamespace(
        uuid=uuid,
        characteristics=[SimpleNamespace(uuid=c, properties=props) for c, props in chars],
    )


def test_select_characteristics_skips_upgrade_service() -> None:
    services = [
        _service(DFU, ("dfu-ctrl", ["write", "notify"])),
        _service(SHEARWATER, ("sw-data", ["write-without-response", "notify"])),
    ]
    assert select_characteristics(services) == (SHEARWATER, "sw-data", "sw-data", False)


def test_select_characteristics_without_serial_service() -> None:
    services = [_service("0000180f-0000-1000-8000-00805f9b34fb", ("battery", ["read", "notify"]))]
    with pytest.raises(NoDeviceError):
        select_characteristics(services)


def test_uuid_helpers() -> None:
    assert known_serial_service(SHEARWATER.upper()) == "SHEARWATER"
    assert known_serial_service(DFU) is None
    assert is_upgrade_service(f" {DFU} ")
    assert strip_le_prefix("le:00:13:43:AA:BB:CC") == "00:13:43:AA:BB:CC"
    assert strip_le_prefix("00:13:43:AA:BB:CC") == "00:13:43:AA:BB:CC"


def test_operation_before_open_raises_transport_error() -> None:
    transport = BLEGATTTransport("LE:00:13:43:AA:BB:CC")
    assert transport.address == "00:13:43:AA:BB:CC"
    with pytest.raises(TransportError):
        transport._run(None, 1.0)
