"""Stable public API for building tooling on top of divectl.

This module is the supported integration surface for third-party callers
(dive log applications, sync daemons, scripts). Protocol classes and
transports remain importable from their own modules, but their internals
may change between releases.
"""

from __future__ import annotations

from datetime import datetime

from divectl.core.config import Settings
from divectl.core.errors import (
    ConfigError,
    DataFormatError,
    DescriptorLoadError,
    DescriptorValidationError,
    DeviceDiscoveryError,
    DeviceSelectionError,
    DivectlError,
    DownloadCancelledError,
    InvalidArgumentError,
    NoDeviceError,
    ProtocolError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    UnsupportedError,
)
from divectl.core.fingerprints import FingerprintEntry, FingerprintManager
from divectl.core.model import (
    DetectedDevice,
    DeviceFamily,
    DeviceInfo,
    DiveComputerDescriptor,
    DownloadResult,
    ProtocolDive,
    ResolvedTarget,
    Sample,
    SampleEvent,
    Status,
    SupportDescriptor,
    TransportType,
)
from divectl.core.service import DiveService, ProtocolFactory
from divectl.protocols.base import DiveCallback, ProgressCallback

__all__ = [
    "ConfigError",
    "DataFormatError",
    "DescriptorLoadError",
    "DescriptorValidationError",
    "DeviceDiscoveryError",
    "DeviceSelectionError",
    "DivectlError",
    "DownloadCancelledError",
    "InvalidArgumentError",
    "NoDeviceError",
    "ProtocolError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "UnsupportedError",
    "DetectedDevice",
    "DeviceFamily",
    "DeviceInfo",
    "DiveComputerDescriptor",
    "DownloadResult",
    "FingerprintEntry",
    "ProtocolDive",
    "ResolvedTarget",
    "Sample",
    "SampleEvent",
    "Settings",
    "Status",
    "SupportDescriptor",
    "TransportType",
    "Client",
]


class Client:
    """Public client for interacting with divectl core capabilities.

    A `Client` wraps descriptor loading, device discovery, protocol dispatch
    and the fingerprint store behind a stable API.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        fingerprints: FingerprintManager | None = None,
        protocol_factory: ProtocolFactory | None = None,
    ) -> None:
        self._service = DiveService(
            settings=settings,
            fingerprints=fingerprints,
            protocol_factory=protocol_factory,
        )

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def runtime_warnings(self) -> tuple[str, ...]:
        return self._service.runtime_warnings

    def support_matrix(self) -> list[SupportDescriptor]:
        return self._service.support_matrix()

    def list_descriptors(self) -> list[DiveComputerDescriptor]:
        return self._service.list_descriptors()

    def list_vendors(self) -> list[str]:
        return self._service.list_vendors()

    def list_products(self, vendor: str) -> list[str]:
        return self._service.list_products(vendor)

    def list_devices(self, *, ble: bool = True) -> list[DetectedDevice]:
        devices, _ = self._service.list_devices(ble=ble)
        return devices

    def resolve_target(
        self,
        *,
        vendor: str | None = None,
        product: str | None = None,
        device_hint: str | None = None,
    ) -> ResolvedTarget:
        return self._service.resolve_target(vendor, product, device_hint)

    def get_device_info(self, target: ResolvedTarget) -> DeviceInfo | None:
        return self._service.device_info(target)

    def download(
        self,
        target: ResolvedTarget,
        *,
        full: bool = False,
        dive_callback: DiveCallback | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> DownloadResult:
        return self._service.download(
            target,
            full=full,
            dive_callback=dive_callback,
            progress_callback=progress_callback,
        )

    def sync_time(self, target: ResolvedTarget, when: datetime | None = None) -> bool:
        return self._service.sync_time(target, when)

    def list_fingerprints(self) -> list[FingerprintEntry]:
        return self._service.list_fingerprints()

    def clear_fingerprints(self, *, vendor: str | None = None, product: str | None = None) -> int:
        return self._service.clear_fingerprints(vendor, product)
