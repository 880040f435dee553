"""USB HID transport implementation using hidapi."""

from __future__ import annotations

import logging
from typing import Any

from divectl.core.errors import (
    NoDeviceError,
    TransportConnectError,
    TransportSendError,
)
from divectl.core.model import TransportType
from divectl.transports.base import DEFAULT_TIMEOUT_S, BufferedTransport

LOGGER = logging.getLogger(__name__)

REPORT_SIZE = 64


def _load_hid() -> Any:
    try:
        import hid  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise TransportConnectError(
            "USB HID transport requires 'hidapi'. Install dependency and retry."
        ) from exc
    return hid


def enumerate_hid(vendor_id: int = 0, product_id: int = 0) -> list[dict[str, Any]]:
    return list(_load_hid().enumerate(vendor_id, product_id))


class USBHIDTransport(BufferedTransport):
    """Each input report lands in the FIFO as one chunk.

    ``read_packet`` returns exactly one report for protocols that frame on
    report boundaries; ``read`` treats the reports as a byte stream.
    """

    kind = TransportType.USBHID

    def __init__(
        self,
        vendor_id: int,
        product_id: int | None = None,
        *,
        path: bytes | str | None = None,
        report_size: int = REPORT_SIZE,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.path = path.encode() if isinstance(path, str) else path
        self.report_size = report_size
        self._device: Any = None

    def open(self) -> None:
        hid = _load_hid()
        path = self.path
        if path is None:
            matches = [
                info
                for info in hid.enumerate(self.vendor_id, self.product_id or 0)
                if self.product_id is None or info.get("product_id") == self.product_id
            ]
            if not matches:
                pid = f"{self.product_id:04x}" if self.product_id is not None else "*"
                raise NoDeviceError(f"No USB HID device {self.vendor_id:04x}:{pid} found")
            path = matches[0]["path"]
            self.product_id = matches[0].get("product_id", self.product_id)

        device = hid.device()
        try:
            device.open_path(path)
            device.set_nonblocking(1)
        except OSError as exc:
            raise TransportConnectError(f"Could not open USB HID device {path!r}: {exc}") from exc
        self._device = device
        self._open = True
        LOGGER.debug("Opened USB HID %04x:%04x", self.vendor_id, self.product_id or 0)

    def close(self) -> None:
        if self._device is not None:
            try:
                self._device.close()
            finally:
                self._device = None
        self._open = False

    def write(self, data: bytes) -> int:
        if self._device is None:
            raise TransportSendError("USB HID device is not open")
        try:
            written = self._device.write(list(data))
        except (OSError, ValueError) as exc:
            raise TransportSendError(f"USB HID write failed: {exc}") from exc
        if written is None or written < 0:
            raise TransportSendError("USB HID write failed")
        return written

    def send_feature_report(self, report_id: int, data: bytes) -> None:
        if self._device is None:
            raise TransportSendError("USB HID device is not open")
        try:
            self._device.send_feature_report([report_id, *data])
        except (OSError, ValueError) as exc:
            raise TransportSendError(f"USB HID feature report failed: {exc}") from exc

    def get_feature_report(self, report_id: int, length: int) -> bytes:
        if self._device is None:
            raise TransportSendError("USB HID device is not open")
        try:
            return bytes(self._device.get_feature_report(report_id, length))
        except (OSError, ValueError) as exc:
            raise TransportSendError(f"USB HID feature report failed: {exc}") from exc

    def _pump(self) -> None:
        if self._device is None:
            return
        while True:
            try:
                report = self._device.read(self.report_size)
            except (OSError, ValueError) as exc:
                raise TransportSendError(f"USB HID read failed: {exc}") from exc
            if not report:
                return
            self._feed(bytes(report))
