from __future__ import annotations

import subprocess

import pytest

from divectl.core import discovery
from divectl.core.errors import DeviceDiscoveryError, TransportConnectError
from divectl.core.model import DetectedDevice, TransportType
from divectl.core.discovery import (
    discover_all,
    identify_bluetooth,
    identify_usb_device,
    list_bluetooth_devices,
    list_hid_devices,
    match_ble_name,
    match_classic_name,
    parse_device_text,
    vendor_for_services,
)


def _cp(cmd: list[str], rc: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr=stderr)


def test_discovery_reads_bluetoothctl_devices(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        if cmd == ["bluetoothctl", "devices", "Connected"]:
            return _cp(cmd, 0, stdout="Device 00:13:43:AA:BB:CC Petrel\n")
        if cmd[0] == "bluetoothctl":
            return _cp(cmd, 0, stdout="Device 00:13:43:aa:bb:cc Petrel\nDevice 11:22:33:44:55:66 Headphones\n")
        raise AssertionError(f"Unexpected cmd: {cmd}")

    monkeypatch.setattr(subprocess, "run", fake_run)

    devices = list_bluetooth_devices()
    assert [d.address for d in devices] == ["00:13:43:AA:BB:CC", "11:22:33:44:55:66"]
    assert devices[0].vendor == "Shearwater"
    assert devices[0].transport == TransportType.BLUETOOTH
    assert devices[1].vendor is None


def test_discovery_falls_back_to_hcitool(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        if cmd[0] == "bluetoothctl":
            return _cp(cmd, -6, stderr="dbus crashed")
        if cmd[:2] == ["hcitool", "con"]:
            return _cp(cmd, 0, stdout="Connections:\n\t< ACL 88:92:cc:11:22:33 handle 42 state 1 lm MASTER\n")
        raise AssertionError(f"Unexpected cmd: {cmd}")

    monkeypatch.setattr(subprocess, "run", fake_run)

    devices = list_bluetooth_devices()
    assert len(devices) == 1
    assert devices[0].address == "88:92:CC:11:22:33"
    assert devices[0].name == ""


def test_discovery_raises_when_all_commands_fail(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        return _cp(cmd, -6, stderr="dbus crashed")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(DeviceDiscoveryError):
        list_bluetooth_devices()


def test_missing_tools_yield_empty_list(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, check, capture_output, text):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert list_bluetooth_devices() == []


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Perdix 2 1234", ("Shearwater", "Perdix 2")),
        ("Perdix", ("Shearwater", "Perdix")),
        ("Mares Genius", ("Mares", "Genius")),
        ("Mares Quad", ("Mares", "Quad")),
        ("OSTC4-12345", ("Heinrichs Weikamp", "OSTC 4/5")),
        ("3_ab12", ("Cressi", "")),
        ("Random Speaker", None),
    ],
)
def test_match_ble_name(name: str, expected: tuple[str, str] | None) -> None:
    assert match_ble_name(name) == expected


def test_classic_names_only_used_off_ble() -> None:
    assert match_classic_name("OC.1234") == "Oceanic"
    assert identify_bluetooth("AA:BB:CC:DD:EE:FF", "Atom 3", ble=False).vendor == "Oceanic"
    assert identify_bluetooth("AA:BB:CC:DD:EE:FF", "Atom 3", ble=True).vendor is None


def test_ble_service_uuid_identifies_vendor() -> None:
    upgrade = "00001530-1212-EFDE-1523-785FEABCD123"
    mares = "544E326B-5B72-C6B0-1C46-41C1BC448118"
    assert vendor_for_services([upgrade, mares]) == "Mares"
    assert vendor_for_services([upgrade]) is None

    device = identify_bluetooth("AA:BB:CC:DD:EE:FF", "", ble=True, service_uuids=[mares])
    assert device.vendor == "Mares"
    assert device.product is None
    assert device.transport == TransportType.BLE


def test_identify_usb_device() -> None:
    ftdi = identify_usb_device(0x0403, 0x6001)
    assert ftdi.is_serial_adapter
    assert ftdi.chip.name == "FTDI FT232"

    eon = identify_usb_device(0x1493, 0x0030)
    assert not eon.is_serial_adapter
    assert eon.device.product == "EON Steel"
    assert eon.device.transport == TransportType.USBHID

    assert identify_usb_device(0xDEAD, 0xBEEF) is None


def test_hid_enumeration_keeps_known_dive_computers(monkeypatch: pytest.MonkeyPatch) -> None:
    entries = [
        {"vendor_id": 0x1493, "product_id": 0x0030, "path": b"/dev/hidraw3", "product_string": "EON Steel"},
        {"vendor_id": 0x1493, "product_id": 0x0030, "path": b"/dev/hidraw3", "product_string": "EON Steel"},
        {"vendor_id": 0x046D, "product_id": 0xC52B, "path": b"/dev/hidraw0", "product_string": "Receiver"},
    ]
    monkeypatch.setattr(discovery, "enumerate_hid", lambda: entries)

    devices = list_hid_devices()
    assert len(devices) == 1
    assert devices[0].address == "/dev/hidraw3"
    assert devices[0].vendor == "Suunto"


def test_discover_all_reports_failing_enumerators(monkeypatch: pytest.MonkeyPatch) -> None:
    port = DetectedDevice(address="/dev/ttyUSB0", name="FT232R", transport=TransportType.SERIAL)

    def broken_bluetooth() -> list[DetectedDevice]:
        raise DeviceDiscoveryError("bluez down")

    def missing_hid() -> list[DetectedDevice]:
        raise TransportConnectError("hidapi missing")

    monkeypatch.setattr(discovery, "list_serial_ports", lambda: [port, port])
    monkeypatch.setattr(discovery, "list_hid_devices", missing_hid)
    monkeypatch.setattr(discovery, "list_bluetooth_devices", broken_bluetooth)

    devices, warnings = discover_all(ble=False)

    assert devices == [port]
    assert warnings == ("usbhid: hidapi missing", "bluetooth: bluez down")


def test_parse_device_text() -> None:
    assert parse_device_text("Perdix (00:13:43:AA:BB:CC)") == ("00:13:43:AA:BB:CC", "Perdix")
    assert parse_device_text("00:13:43:AA:BB:CC") == ("00:13:43:AA:BB:CC", "")
    assert parse_device_text("not an address") is None
