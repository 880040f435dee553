"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from divectl.core import discovery, registry
from divectl.core.config import Settings, load_settings
from divectl.core.descriptor_loader import find_descriptor, load_descriptors, products, vendors
from divectl.core.errors import (
    DeviceSelectionError,
    TransportConnectError,
    UnsupportedError,
)
from divectl.core.fingerprints import FingerprintEntry, FingerprintManager, YAMLFingerprintStorage
from divectl.core.model import (
    DetectedDevice,
    DeviceFamily,
    DeviceInfo,
    DiveComputerDescriptor,
    DownloadResult,
    ProtocolDive,
    ResolvedTarget,
    SupportDescriptor,
    TransportType,
)
from divectl.protocols.base import BaseProtocol, DiveCallback, ProgressCallback

LOGGER = logging.getLogger(__name__)

# Protocols that need the descriptor's model number at construction.
_MODEL_OPTION = {
    DeviceFamily.OCEANIC_ATOM2: "model_code",
    DeviceFamily.SUUNTO_EONSTEEL: "model",
}

ProtocolFactory = Callable[[DiveComputerDescriptor], BaseProtocol]


def build_protocol(descriptor: DiveComputerDescriptor) -> BaseProtocol:
    option = _MODEL_OPTION.get(descriptor.family)
    options = {option: descriptor.model} if option else {}
    protocol = registry.protocol_for(descriptor.family, **options)
    if protocol is None:
        raise UnsupportedError(
            f"{descriptor.vendor} {descriptor.product} ({descriptor.family.value}) is not supported"
        )
    return protocol


class DiveService:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        fingerprints: FingerprintManager | None = None,
        protocol_factory: ProtocolFactory | None = None,
    ) -> None:
        loaded = load_descriptors()
        self.descriptors = loaded.descriptors
        self.load_warnings = loaded.warnings
        self.settings = settings or load_settings()
        self.fingerprints = fingerprints or FingerprintManager(
            YAMLFingerprintStorage(self.settings.fingerprint_store)
        )
        self.protocol_factory = protocol_factory or build_protocol
        self.runtime_warnings = _runtime_warnings()

    def support_matrix(self) -> list[SupportDescriptor]:
        return registry.support_matrix()

    def list_vendors(self) -> list[str]:
        return vendors(self.descriptors)

    def list_products(self, vendor: str) -> list[str]:
        return products(self.descriptors, vendor)

    def list_descriptors(self) -> list[DiveComputerDescriptor]:
        return sorted(self.descriptors, key=lambda d: (d.vendor.lower(), d.product.lower()))

    def find_descriptor(self, vendor: str, product: str) -> DiveComputerDescriptor | None:
        return find_descriptor(self.descriptors, vendor, product)

    def list_devices(self, *, ble: bool = True) -> tuple[list[DetectedDevice], tuple[str, ...]]:
        return discovery.discover_all(ble=ble, ble_timeout_s=self.settings.ble_scan_timeout_s)

    def resolve_target(
        self,
        vendor: str | None = None,
        product: str | None = None,
        device_hint: str | None = None,
        *,
        ble: bool = True,
    ) -> ResolvedTarget:
        """Pick one dive computer to talk to.

        With vendor and product the descriptor is fixed and the address is
        ``device_hint``, the configured default port, or the only discovered
        device of that vendor. Without them, discovery must find exactly one
        recognised dive computer (narrowed by ``device_hint`` if given).
        """
        if vendor and product:
            descriptor = self.find_descriptor(vendor, product)
            if descriptor is None:
                raise DeviceSelectionError(f"Unknown dive computer '{vendor} {product}'. See 'divectl list'.")
            if not registry.is_supported(descriptor.family):
                raise UnsupportedError(f"{descriptor.vendor} {descriptor.product} is not supported")
            address = device_hint or self.settings.default_port
            if address is None and not _opens_by_usb_id(descriptor):
                address = self._discover_address(descriptor, ble=ble)
            return ResolvedTarget(descriptor=descriptor, address=address)

        if vendor or product:
            raise DeviceSelectionError("Pass both --vendor and --product, or neither.")

        devices, _ = self.list_devices(ble=ble)
        candidates: list[ResolvedTarget] = []
        for device in devices:
            descriptor = self._descriptor_for_device(device)
            if descriptor is None or not registry.is_supported(descriptor.family):
                continue
            candidates.append(ResolvedTarget(descriptor=descriptor, address=device.address))

        if device_hint:
            hint = device_hint.lower()
            candidates = [
                c
                for c in candidates
                if (c.address is not None and hint in c.address.lower())
                or hint in c.descriptor.product.lower()
            ]
            if not candidates:
                raise DeviceSelectionError(f"No device found matching '{device_hint}'")

        if not candidates:
            raise DeviceSelectionError(
                "No supported dive computer found. Use --vendor/--product to target one explicitly."
            )
        if len(candidates) > 1:
            candidate_desc = ", ".join(
                f"{c.address} ({c.descriptor.vendor} {c.descriptor.product})" for c in candidates
            )
            raise DeviceSelectionError(
                f"Multiple candidate devices found: {candidate_desc}. Use --device to choose one."
            )
        return candidates[0]

    def _descriptor_for_device(self, device: DetectedDevice) -> DiveComputerDescriptor | None:
        if device.vendor is None:
            return None
        if device.product:
            descriptor = self.find_descriptor(device.vendor, device.product)
            if descriptor is not None:
                return descriptor
        # A classic Bluetooth name only identifies the vendor; take the single BT-capable product.
        matching = [
            d
            for d in self.descriptors
            if d.vendor.lower() == device.vendor.lower() and d.transports & device.transport
        ]
        return matching[0] if len(matching) == 1 else None

    def _discover_address(self, descriptor: DiveComputerDescriptor, *, ble: bool) -> str:
        devices, _ = self.list_devices(ble=ble)
        matching = [
            d
            for d in devices
            if d.vendor is not None
            and d.vendor.lower() == descriptor.vendor.lower()
            and d.transport & descriptor.transports
        ]
        if not matching and descriptor.transports & TransportType.SERIAL:
            # USB serial adapters carry no vendor; a single one is taken as the cradle.
            matching = [d for d in devices if d.transport == TransportType.SERIAL]
        if len(matching) == 1:
            return matching[0].address
        if not matching:
            raise DeviceSelectionError(
                f"No {descriptor.vendor} {descriptor.product} found. Use --device to give its port or address."
            )
        addresses = ", ".join(d.address for d in matching)
        raise DeviceSelectionError(f"Multiple {descriptor.vendor} devices found: {addresses}. Use --device to choose one.")

    @contextmanager
    def session(self, target: ResolvedTarget) -> Iterator[BaseProtocol]:
        protocol = self.protocol_factory(target.descriptor)
        if not protocol.connect(target.address):
            where = f" at {target.address}" if target.address else ""
            raise TransportConnectError(
                f"Could not connect to {target.descriptor.vendor} {target.descriptor.product}{where}"
            )
        try:
            yield protocol
        finally:
            protocol.disconnect()

    def device_info(self, target: ResolvedTarget) -> DeviceInfo | None:
        with self.session(target) as protocol:
            return protocol.get_device_info()

    def download(
        self,
        target: ResolvedTarget,
        *,
        full: bool = False,
        dive_callback: DiveCallback | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> DownloadResult:
        with self.session(target) as protocol:
            info = protocol.get_device_info()
            serial = info.serial if info is not None else 0
            if not full:
                stored = self.fingerprints.get(target.descriptor, serial)
                if stored:
                    LOGGER.info("Resuming after fingerprint %s", stored.hex())
                    protocol.set_fingerprint(stored)
            dives = protocol.download_all_dives(dive_callback, progress_callback)

        saved = self._save_newest(target.descriptor, info, dives)
        return DownloadResult(target=target, device_info=info, dives=dives, fingerprint_saved=saved)

    def _save_newest(
        self, descriptor: DiveComputerDescriptor, info: DeviceInfo | None, dives: list[ProtocolDive]
    ) -> bytes | None:
        if not dives or not dives[0].fingerprint:
            return None
        newest = dives[0]
        self.fingerprints.save(
            descriptor,
            info.serial if info is not None else 0,
            newest.fingerprint,
            firmware=str(info.firmware) if info is not None else None,
            device_time=newest.timestamp or None,
            dive_count=len(dives),
        )
        return newest.fingerprint

    def sync_time(self, target: ResolvedTarget, when: datetime | None = None) -> bool:
        with self.session(target) as protocol:
            return protocol.sync_time(when or datetime.now())

    def list_fingerprints(self) -> list[FingerprintEntry]:
        return self.fingerprints.list()

    def clear_fingerprints(self, vendor: str | None = None, product: str | None = None) -> int:
        entries = self.fingerprints.list()
        if vendor is None and product is None:
            self.fingerprints.clear()
            return len(entries)
        removed = 0
        for entry in entries:
            if vendor and entry.vendor.lower() != vendor.lower():
                continue
            if product and entry.product.lower() != product.lower():
                continue
            self.fingerprints.storage.remove(entry.vendor, entry.product, entry.serial)
            removed += 1
        return removed


def _opens_by_usb_id(descriptor: DiveComputerDescriptor) -> bool:
    """Any USB HID capable device can be opened by vendor and product id without an address.

    This includes HID+BLE models; BLE is used only when an address is given.
    """
    return bool(descriptor.transports & TransportType.USBHID)


def _runtime_warnings() -> tuple[str, ...]:
    warnings: list[str] = []
    if not hasattr(socket, "AF_BLUETOOTH") or not hasattr(socket, "BTPROTO_RFCOMM"):
        warnings.append(
            "Python runtime missing AF_BLUETOOTH/BTPROTO_RFCOMM; Bluetooth Classic downloads will fail."
        )
    return tuple(warnings)
