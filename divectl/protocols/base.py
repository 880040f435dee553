"""Shared protocol lifecycle and the incremental download algorithm."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from datetime import datetime

from divectl.core.errors import DivectlError, DownloadCancelledError, TransportError, UnsupportedError
from divectl.core.model import DeviceInfo, ProtocolDive, Sample, TransportType
from divectl.transports.base import Transport

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
DiveCallback = Callable[[ProtocolDive, int, int], bool]


class BaseProtocol(ABC):
    """Connect, enumerate, and download dives from one device family.

    Subclasses provide ``_create_transport``, ``_handshake``, ``list_dives`` and
    ``download_dive``. A transport passed to the constructor is used as-is
    instead of one built from the connect address.
    """

    family_name = "unknown"
    transport_types = TransportType.NONE

    def __init__(self, transport: Transport | None = None) -> None:
        self.transport: Transport | None = transport
        self._injected_transport = transport is not None
        self.connected = False
        self.device_info: DeviceInfo | None = None
        self.fingerprint = b""

    def _reset_session(self) -> None:
        """Drop every piece of per-session state; subclasses extend this."""
        self.connected = False
        self.device_info = None

    @abstractmethod
    def _create_transport(self, address: str | None) -> Transport:
        ...

    @abstractmethod
    def _handshake(self) -> None:
        """Run the device handshake and populate ``device_info``."""

    def _shutdown(self) -> None:
        """Say goodbye to the device before the link closes."""

    def connect(self, address: str | None = None) -> bool:
        self._reset_session()
        try:
            if not self._injected_transport:
                self.transport = self._create_transport(address)
            if self.transport is None:
                raise TransportError(f"{self.family_name} has no transport")
            if not self.transport.is_open():
                self.transport.open()
            self._handshake()
        except DivectlError as exc:
            LOGGER.error("%s connect failed: %s", self.family_name, exc)
            self._close_transport()
            self._reset_session()
            return False
        self.connected = True
        LOGGER.info("%s connected: %s", self.family_name, self.device_info)
        return True

    def disconnect(self) -> None:
        if self.connected:
            try:
                self._shutdown()
            except DivectlError as exc:
                LOGGER.warning("%s shutdown failed: %s", self.family_name, exc)
        self._close_transport()
        self._reset_session()

    def _close_transport(self) -> None:
        if self.transport is not None and self.transport.is_open():
            self.transport.close()
        if not self._injected_transport:
            self.transport = None

    def _require_transport(self) -> Transport:
        if self.transport is None or not self.transport.is_open():
            raise TransportError(f"{self.family_name} is not connected")
        return self.transport

    def is_connected(self) -> bool:
        return self.connected

    def get_device_info(self) -> DeviceInfo | None:
        return self.device_info

    def set_fingerprint(self, fingerprint: bytes) -> None:
        self.fingerprint = bytes(fingerprint)

    @abstractmethod
    def list_dives(self) -> list[str]:
        """Return dive identifiers in download order (newest first)."""

    @abstractmethod
    def download_dive(self, identifier: str) -> ProtocolDive | None:
        ...

    def _fetch(self, identifier: str) -> ProtocolDive | None:
        try:
            return self.download_dive(identifier)
        except DivectlError as exc:
            LOGGER.warning("%s: skipping dive %s: %s", self.family_name, identifier, exc)
            return None

    def _link_lost(self) -> bool:
        return self.transport is None or not self.transport.is_open()

    def _is_synced(self, dive: ProtocolDive) -> bool:
        return len(self.fingerprint) > 0 and dive.fingerprint == self.fingerprint

    def download_all_dives(
        self,
        dive_callback: DiveCallback | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> list[ProtocolDive]:
        """Download dives newest first until the fingerprinted one.

        A callback cancels either by returning False from ``dive_callback``
        or by raising ``DownloadCancelledError``; the dives collected so far
        are returned in both cases.
        """
        identifiers = self.list_dives()
        total = len(identifiers)
        dives: list[ProtocolDive] = []

        for index, identifier in enumerate(identifiers):
            try:
                if progress_callback:
                    progress_callback(index, total)
                dive = self._fetch(identifier)
                if dive is None:
                    if self._link_lost():
                        break
                    continue
                if self._is_synced(dive):
                    LOGGER.info("%s: reached last synced dive %s", self.family_name, identifier)
                    break
                dives.append(dive)
                if dive_callback and not dive_callback(dive, index, total):
                    raise DownloadCancelledError("Stopped by dive callback")
            except DownloadCancelledError as exc:
                LOGGER.info("%s: download cancelled after %d dive(s): %s", self.family_name, len(dives), exc)
                break

        if progress_callback:
            progress_callback(total, total)
        return dives

    def iter_dives(self) -> Iterator[ProtocolDive]:
        """Lazily yield new dives, stopping at the fingerprinted one."""
        for identifier in self.list_dives():
            dive = self._fetch(identifier)
            if dive is None:
                if self._link_lost():
                    return
                continue
            if self._is_synced(dive):
                return
            yield dive

    def sync_time(self, when: datetime) -> bool:
        LOGGER.info("Time sync not implemented for %s", self.family_name)
        return False

    def read_raw(self, address: int, size: int) -> bytes | None:
        LOGGER.info("Raw read not implemented for %s", self.family_name)
        return None

    def parse_samples(self, data: bytes) -> list[Sample]:
        raise UnsupportedError(f"Sample parsing not implemented for {self.family_name}")
