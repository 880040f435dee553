"""Bluetooth Classic RFCOMM (SPP) transport implementation using Python sockets."""

from __future__ import annotations

import logging
import re
import socket

from divectl.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from divectl.core.model import TransportType
from divectl.transports.base import DEFAULT_TIMEOUT_S, BufferedTransport

LOGGER = logging.getLogger(__name__)

SPP_UUID = "00001101-0000-1000-8000-00805f9b34fb"
DEFAULT_CHANNEL = 1

_MAC = r"[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}"
_LE_ADDRESS_RE = re.compile(rf"^LE:({_MAC})$")
_MAC_ADDRESS_RE = re.compile(rf"^({_MAC})$")
_UUID_ADDRESS_RE = re.compile(
    r"^\{?[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}\}?$"
)
_NAME_ADDRESS_RE = re.compile(r"^(.+?)\s*\(([^)]+)\)$")


def parse_bluetooth_address(address: str) -> tuple[str, bool] | None:
    """Return ``(address, is_ble)``.

    ``LE:`` marks a BLE MAC; a UUID is a BLE identifier on platforms that hide
    MACs.
    """
    match = _LE_ADDRESS_RE.match(address)
    if match:
        return match.group(1).upper(), True
    match = _MAC_ADDRESS_RE.match(address)
    if match:
        return match.group(1).upper(), False
    if _UUID_ADDRESS_RE.match(address):
        return address.upper(), True
    return None


def is_bluetooth_address(address: str) -> bool:
    return parse_bluetooth_address(address) is not None


def extract_name_address(text: str) -> tuple[str, str] | None:
    """Split ``"Name (Address)"`` into ``(address, name)``; a bare address gets an empty name."""
    match = _NAME_ADDRESS_RE.match(text)
    if match:
        parsed = parse_bluetooth_address(match.group(2))
        if parsed:
            return parsed[0], match.group(1).strip()
    parsed = parse_bluetooth_address(text.strip())
    if parsed:
        return parsed[0], ""
    return None


class RFCOMMTransport(BufferedTransport):
    kind = TransportType.BLUETOOTH

    def __init__(
        self,
        address: str,
        *,
        channel: int = DEFAULT_CHANNEL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.address = address
        self.channel = channel
        self._socket: socket.socket | None = None

    def open(self) -> None:
        try:
            af_bluetooth = socket.AF_BLUETOOTH
            btproto_rfcomm = socket.BTPROTO_RFCOMM
        except AttributeError as exc:
            raise TransportConnectError(
                "This Python build does not expose Bluetooth socket APIs (AF_BLUETOOTH/BTPROTO_RFCOMM)."
            ) from exc

        try:
            bt_socket = socket.socket(
                af_bluetooth,
                socket.SOCK_STREAM,
                btproto_rfcomm,
            )
        except OSError as exc:
            raise TransportConnectError(f"Could not create RFCOMM socket: {exc}") from exc
        bt_socket.settimeout(self.timeout_s)
        try:
            bt_socket.connect((self.address, self.channel))
        except TimeoutError as exc:
            bt_socket.close()
            raise TransportTimeoutError(
                f"RFCOMM connect timed out for {self.address} on channel {self.channel}"
            ) from exc
        except OSError as exc:
            bt_socket.close()
            raise TransportConnectError(
                f"RFCOMM connect failed for {self.address} on channel {self.channel}: {exc}"
            ) from exc
        bt_socket.setblocking(False)
        self._socket = bt_socket
        self._open = True
        LOGGER.debug("RFCOMM connected to %s channel %d", self.address, self.channel)

    def close(self) -> None:
        if self._socket is not None:
            try:
                self._socket.close()
            finally:
                self._socket = None
        self._open = False

    def write(self, data: bytes) -> int:
        if self._socket is None:
            raise TransportSendError("RFCOMM socket is not open")
        try:
            self._socket.setblocking(True)
            self._socket.settimeout(self.timeout_s)
            self._socket.sendall(data)
        except TimeoutError as exc:
            raise TransportTimeoutError("RFCOMM send timed out") from exc
        except OSError as exc:
            raise TransportSendError(f"RFCOMM send failed: {exc}") from exc
        finally:
            self._socket.setblocking(False)
        return len(data)

    def _pump(self) -> None:
        if self._socket is None:
            return
        while True:
            try:
                data = self._socket.recv(1024)
            except BlockingIOError:
                return
            except OSError as exc:
                self._open = False
                raise TransportSendError(f"RFCOMM receive failed: {exc}") from exc
            if not data:
                self._open = False
                raise TransportSendError(f"RFCOMM connection to {self.address} closed by peer")
            self._feed(data)
