"""Known USB chips, HID dive computers and Bluetooth names, plus live enumeration."""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from divectl.core.errors import DeviceDiscoveryError, TransportConnectError
from divectl.core.model import DetectedDevice, TransportType
from divectl.transports.ble_gatt import is_upgrade_service, known_serial_service
from divectl.transports.rfcomm import extract_name_address, parse_bluetooth_address
from divectl.transports.usbhid import enumerate_hid

LOGGER = logging.getLogger(__name__)

BLE_SCAN_TIMEOUT_S = 5.0

_DEVICE_LINE_RE = re.compile(r"^Device\s+([0-9A-F:]{17})\s+(.+)$", re.IGNORECASE)
_MAC_RE = re.compile(r"([0-9A-F]{2}(?::[0-9A-F]{2}){5})", re.IGNORECASE)


@dataclass(frozen=True)
class USBSerialChip:
    vendor_id: int
    product_id: int
    name: str


@dataclass(frozen=True)
class USBDiveComputer:
    vendor_id: int
    product_id: int
    vendor: str
    product: str
    transport: TransportType


@dataclass(frozen=True)
class USBIdentification:
    is_serial_adapter: bool
    chip: USBSerialChip | None = None
    device: USBDiveComputer | None = None


USB_SERIAL_CHIPS: tuple[USBSerialChip, ...] = (
    USBSerialChip(0x0403, 0x6001, "FTDI FT232"),
    USBSerialChip(0x0403, 0x6010, "FTDI FT2232"),
    USBSerialChip(0x0403, 0x6011, "FTDI FT4232"),
    USBSerialChip(0x0403, 0x6014, "FTDI FT232H"),
    USBSerialChip(0x0403, 0x6015, "FTDI FT230X"),
    USBSerialChip(0x0403, 0xF460, "Oceanic (FTDI)"),
    USBSerialChip(0x0403, 0xF680, "Suunto (FTDI)"),
    USBSerialChip(0x10C4, 0xEA60, "Silicon Labs CP210x"),
    USBSerialChip(0x10C4, 0xEA70, "Silicon Labs CP2105"),
    USBSerialChip(0x10C4, 0xEA71, "Silicon Labs CP2108"),
    USBSerialChip(0x10C4, 0xEA80, "Silicon Labs CP2110"),
    USBSerialChip(0x067B, 0x2303, "Prolific PL2303"),
    USBSerialChip(0x1A86, 0x7523, "WCH CH340"),
    USBSerialChip(0xFFFF, 0x0005, "Mares Icon HD"),
)

USB_DIVE_COMPUTERS: tuple[USBDiveComputer, ...] = (
    USBDiveComputer(0x1493, 0x0030, "Suunto", "EON Steel", TransportType.USBHID),
    USBDiveComputer(0x1493, 0x0033, "Suunto", "EON Core", TransportType.USBHID),
    USBDiveComputer(0x1493, 0x0035, "Suunto", "D5", TransportType.USBHID),
    USBDiveComputer(0x2E6C, 0x3201, "Scubapro", "G2", TransportType.USBHID),
    USBDiveComputer(0x2E6C, 0x3211, "Scubapro", "G2 HUD", TransportType.USBHID),
    USBDiveComputer(0x2E6C, 0x4201, "Scubapro", "G3", TransportType.USBHID),
    USBDiveComputer(0x2E6C, 0x1201, "Scubapro", "Aladin Sport Matrix", TransportType.USBHID),
    USBDiveComputer(0x2E6C, 0x2101, "Scubapro", "Aladin A1", TransportType.USBHID),
    USBDiveComputer(0x2E6C, 0x2401, "Scubapro", "Aladin A2", TransportType.USBHID),
    USBDiveComputer(0x1234, 0x5678, "Uemis", "Zurich", TransportType.USB),
)

# Ordered: more specific names first.
BLE_NAME_PATTERNS: tuple[tuple[re.Pattern[str], str, str], ...] = tuple(
    (re.compile(pattern), vendor, product)
    for pattern, vendor, product in (
        (r"^Perdix 2", "Shearwater", "Perdix 2"),
        (r"^Petrel 3", "Shearwater", "Petrel 3"),
        (r"^Petrel", "Shearwater", "Petrel 2"),
        (r"^Perdix", "Shearwater", "Perdix"),
        (r"^Teric", "Shearwater", "Teric"),
        (r"^Peregrine", "Shearwater", "Peregrine"),
        (r"^NERD 2", "Shearwater", "NERD 2"),
        (r"^NERD", "Shearwater", "NERD"),
        (r"^Predator", "Shearwater", "Predator"),
        (r"^Tern", "Shearwater", "Tern"),
        (r"^EON Steel", "Suunto", "EON Steel"),
        (r"^EON Core", "Suunto", "EON Core"),
        (r"^Suunto D5", "Suunto", "D5"),
        (r"^G2", "Scubapro", "G2"),
        (r"^HUD", "Scubapro", "G2 HUD"),
        (r"^G3", "Scubapro", "G3"),
        (r"^Aladin", "Scubapro", "Aladin Sport Matrix"),
        (r"^A1", "Scubapro", "Aladin A1"),
        (r"^A2", "Scubapro", "Aladin A2"),
        (r"^Luna 2\.0 AI", "Scubapro", "Luna 2.0 AI"),
        (r"^Luna 2\.0", "Scubapro", "Luna 2.0"),
        (r"^Mares Genius", "Mares", "Genius"),
        (r"^Sirius", "Mares", "Sirius"),
        (r"^Mares", "Mares", "Quad"),
        (r"^OSTC3", "Heinrichs Weikamp", "OSTC Plus"),
        (r"^OSTCs[# ]", "Heinrichs Weikamp", "OSTC Sport"),
        (r"^OSTC[45]-", "Heinrichs Weikamp", "OSTC 4/5"),
        (r"^OSTC2-", "Heinrichs Weikamp", "OSTC 2N"),
        (r"^OSTC", "Heinrichs Weikamp", "OSTC 2"),
        (r"^CARESIO_", "Cressi", "Cartesio"),
        (r"^GOA_", "Cressi", "Goa"),
        (r"^\d{1,2}_[0-9a-f]{4}$", "Cressi", ""),
        (r"^COSMIQ", "Deepblu", "Cosmiq+"),
        (r"^S1", "Oceans", "S1"),
        (r"^McLean Extreme", "McLean", "Extreme"),
        (r"^DiveComputer", "Tecdiving", "DiveComputer.eu"),
        (r"^(DS|IX5M|RATIO-)\d{6}", "Ratio", "iX3M 2021 GPS Easy"),
    )
)

BT_CLASSIC_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern), vendor)
    for pattern, vendor in (
        (r"^(HW )?OSTC", "Heinrichs Weikamp"),
        (r"^Petrel", "Shearwater"),
        (r"^Predator", "Shearwater"),
        (r"^OC\.", "Oceanic"),
        (r"^Atom", "Oceanic"),
    )
)

_SERVICE_VENDORS = {
    "SHEARWATER": "Shearwater",
    "SUUNTO": "Suunto",
    "SCUBAPRO": "Scubapro",
    "MARES": "Mares",
    "HW_TELIT": "Heinrichs Weikamp",
    "HW_UBLOX": "Heinrichs Weikamp",
    "PELAGIC": "Oceanic",
    "PELAGIC_NEW": "Oceanic",
}


def find_serial_chip(vendor_id: int, product_id: int) -> USBSerialChip | None:
    for chip in USB_SERIAL_CHIPS:
        if chip.vendor_id == vendor_id and chip.product_id == product_id:
            return chip
    return None


def find_usb_dive_computer(
    vendor_id: int, product_id: int, transport: TransportType | None = None
) -> USBDiveComputer | None:
    for device in USB_DIVE_COMPUTERS:
        if device.vendor_id != vendor_id or device.product_id != product_id:
            continue
        if transport is None or device.transport & transport:
            return device
    return None


def identify_usb_device(vendor_id: int, product_id: int) -> USBIdentification | None:
    """Classify a USB id pair as a serial adapter or a dive computer; None if unknown."""
    chip = find_serial_chip(vendor_id, product_id)
    if chip is not None:
        return USBIdentification(is_serial_adapter=True, chip=chip)
    device = find_usb_dive_computer(vendor_id, product_id, TransportType.USBHID)
    if device is None:
        device = find_usb_dive_computer(vendor_id, product_id, TransportType.USB)
    if device is not None:
        return USBIdentification(is_serial_adapter=False, device=device)
    return None


def usb_dive_computers(transport: TransportType) -> list[USBDiveComputer]:
    return [device for device in USB_DIVE_COMPUTERS if device.transport & transport]


def match_ble_name(name: str) -> tuple[str, str] | None:
    for pattern, vendor, product in BLE_NAME_PATTERNS:
        if pattern.search(name):
            return vendor, product
    return None


def match_classic_name(name: str) -> str | None:
    for pattern, vendor in BT_CLASSIC_PATTERNS:
        if pattern.search(name):
            return vendor
    return None


def vendor_for_services(uuids: Sequence[str]) -> str | None:
    """Vendor implied by the first known, non-upgrade serial service in ``uuids``."""
    for uuid in uuids:
        if is_upgrade_service(uuid):
            continue
        service = known_serial_service(uuid)
        if service is not None:
            return _SERVICE_VENDORS.get(service)
    return None


def identify_bluetooth(
    address: str, name: str, *, ble: bool, service_uuids: Sequence[str] = ()
) -> DetectedDevice:
    vendor: str | None = None
    product: str | None = None
    if name:
        match = match_ble_name(name)
        if match is not None:
            vendor, product = match
        elif not ble:
            vendor = match_classic_name(name)
    if vendor is None and ble:
        vendor = vendor_for_services(service_uuids)
    return DetectedDevice(
        address=address,
        name=name,
        transport=TransportType.BLE if ble else TransportType.BLUETOOTH,
        vendor=vendor,
        product=product or None,
    )


def parse_device_text(text: str) -> tuple[str, str] | None:
    """Accept "Name (Address)" or a bare address; returns (address, name)."""
    extracted = extract_name_address(text)
    if extracted is not None:
        return extracted
    parsed = parse_bluetooth_address(text.strip())
    if parsed is not None:
        return text.strip(), ""
    return None


def list_serial_ports() -> list[DetectedDevice]:
    try:
        from serial.tools import list_ports  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise TransportConnectError(
            "Serial discovery requires 'pyserial'. Install dependency and retry."
        ) from exc

    devices: list[DetectedDevice] = []
    for port in list_ports.comports():
        chip = None
        if port.vid is not None and port.pid is not None:
            chip = find_serial_chip(port.vid, port.pid)
        if chip is None:
            continue
        devices.append(
            DetectedDevice(
                address=port.device,
                name=port.description or chip.name,
                transport=TransportType.SERIAL,
                product=chip.name,
            )
        )
    return devices


def list_hid_devices() -> list[DetectedDevice]:
    devices: list[DetectedDevice] = []
    seen: set[str] = set()
    for entry in enumerate_hid():
        device = find_usb_dive_computer(
            entry.get("vendor_id", 0), entry.get("product_id", 0), TransportType.USBHID
        )
        if device is None:
            continue
        path = entry.get("path", b"")
        address = path.decode(errors="replace") if isinstance(path, bytes) else str(path)
        if address in seen:
            continue
        seen.add(address)
        devices.append(
            DetectedDevice(
                address=address,
                name=entry.get("product_string") or device.product,
                transport=TransportType.USBHID,
                vendor=device.vendor,
                product=device.product,
            )
        )
    return devices


def scan_ble(timeout_s: float = BLE_SCAN_TIMEOUT_S) -> list[DetectedDevice]:
    try:
        from bleak import BleakScanner  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise TransportConnectError(
            "BLE discovery requires 'bleak'. Install dependency and retry."
        ) from exc

    try:
        found = asyncio.run(BleakScanner.discover(timeout=timeout_s, return_adv=True))
    except Exception as exc:
        raise DeviceDiscoveryError(f"BLE scan failed: {exc}") from exc

    devices: list[DetectedDevice] = []
    for device, advertisement in found.values():
        name = advertisement.local_name or device.name or ""
        detected = identify_bluetooth(
            device.address, name, ble=True, service_uuids=advertisement.service_uuids or ()
        )
        if detected.vendor is not None:
            devices.append(detected)
    return devices


def list_bluetooth_devices() -> list[DetectedDevice]:
    """Paired or connected classic devices known to BlueZ.

    bluetoothctl is tried first; ``hcitool con`` is the fallback when it
    lists nothing.
    """
    bluetoothctl_commands = [
        ["bluetoothctl", "devices", "Connected"],
        ["bluetoothctl", "devices"],
        ["bluetoothctl", "paired-devices"],
    ]
    fallback_commands = [["hcitool", "con"]]

    seen: set[str] = set()
    devices: list[DetectedDevice] = []
    command_errors: list[str] = []

    for cmd in bluetoothctl_commands:
        result = _run_discovery_command(cmd)
        if result is None:
            continue
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if stderr:
                command_errors.append(f"{' '.join(cmd)} -> {stderr}")
            continue

        for line in result.stdout.splitlines():
            match = _DEVICE_LINE_RE.match(line.strip())
            if not match:
                continue
            address, name = match.group(1).upper(), match.group(2).strip()
            if address in seen:
                continue
            seen.add(address)
            devices.append(identify_bluetooth(address, name, ble=False))

    if devices:
        return devices

    for cmd in fallback_commands:
        result = _run_discovery_command(cmd)
        if result is None:
            continue
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if stderr:
                command_errors.append(f"{' '.join(cmd)} -> {stderr}")
            continue

        for line in result.stdout.splitlines():
            match = _MAC_RE.search(line)
            if not match:
                continue
            address = match.group(1).upper()
            if address in seen:
                continue
            seen.add(address)
            devices.append(identify_bluetooth(address, "", ble=False))

    if devices:
        return devices

    if command_errors:
        joined = " | ".join(command_errors)
        raise DeviceDiscoveryError(
            f"Bluetooth discovery failed. Ensure a working D-Bus/BlueZ session. Details: {joined}"
        )

    return devices


def discover_all(*, ble: bool = True, ble_timeout_s: float = BLE_SCAN_TIMEOUT_S) -> tuple[list[DetectedDevice], tuple[str, ...]]:
    """Run every enumerator; a failing one is reported as a warning, not raised."""
    enumerators: list[tuple[str, Any]] = [
        ("serial", list_serial_ports),
        ("usbhid", list_hid_devices),
        ("bluetooth", list_bluetooth_devices),
    ]
    if ble:
        enumerators.append(("ble", lambda: scan_ble(ble_timeout_s)))

    devices: list[DetectedDevice] = []
    warnings: list[str] = []
    seen: set[str] = set()
    for label, enumerate_devices in enumerators:
        try:
            found = enumerate_devices()
        except (DeviceDiscoveryError, TransportConnectError) as exc:
            LOGGER.warning("%s discovery skipped: %s", label, exc)
            warnings.append(f"{label}: {exc}")
            continue
        for device in found:
            if device.address in seen:
                continue
            seen.add(device.address)
            devices.append(device)
    return devices, tuple(warnings)


def _run_discovery_command(cmd: Sequence[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return None
