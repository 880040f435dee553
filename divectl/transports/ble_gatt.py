"""BLE GATT transport implementation.

bleak is asyncio-only, so the transport owns a private event loop running on
a daemon thread. GATT notifications feed the shared FIFO and writes are
submitted to the loop and awaited synchronously.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from divectl.core.errors import (
    NoDeviceError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from divectl.core.model import TransportType
from divectl.transports.base import DEFAULT_TIMEOUT_S, BufferedTransport

LOGGER = logging.getLogger(__name__)

BLE_SERIAL_SERVICES: dict[str, str] = {
    "HW_TELIT": "0000fefb-0000-1000-8000-00805f9b34fb",
    "HW_UBLOX": "2456e1b9-26e2-8f83-e744-f34f01e9d701",
    "MARES": "544e326b-5b72-c6b0-1c46-41c1bc448118",
    "SUUNTO": "98ae7120-e62e-11e3-badd-0002a5d5c51b",
    "PELAGIC": "cb3c4555-d670-4670-bc20-b61dbc851e9a",
    "PELAGIC_NEW": "ca7b0001-f785-4c38-b599-c7c5fbadb034",
    "SCUBAPRO": "fdcdeaaa-295d-470e-bf15-04217b7aa0a0",
    "SHEARWATER": "fe25c237-0ece-443c-b0aa-e02033e7029d",
    "DIVESOFT": "0000fcef-0000-1000-8000-00805f9b34fb",
    "CRESSI": "6e400001-b5a3-f393-e0a9-e50e24dc10b8",
    "NORDIC_UART": "6e400001-b5a3-f393-e0a9-e50e24dcca9e",
    "HALCYON": "00000001-8c3b-4f2c-a59e-8c08224f3253",
}

# Firmware-upgrade services (Nordic DFU, Broadcom #1, Broadcom #2).
BLE_UPGRADE_SERVICES: tuple[str, ...] = (
    "00001530-1212-efde-1523-785feabcd123",
    "9e5d1e47-5c13-43a0-8635-82ad38a1386f",
    "a86abc2d-d44c-442e-99f7-80059a873e36",
)


def known_serial_service(uuid: str) -> str | None:
    normalized = uuid.strip().lower()
    for name, service_uuid in BLE_SERIAL_SERVICES.items():
        if normalized == service_uuid:
            return name
    return None


def is_upgrade_service(uuid: str) -> bool:
    return uuid.strip().lower() in BLE_UPGRADE_SERVICES


def strip_le_prefix(address: str) -> str:
    return address[3:] if address.upper().startswith("LE:") else address


def select_characteristics(services: Any) -> tuple[str, str, str | None, bool]:
    """Pick (service, write char, notify char, write_with_response) from a GATT table.

    Known serial services win. Upgrade services are never used as the data
    channel.
    """
    candidates = [s for s in services if not is_upgrade_service(s.uuid)]
    candidates.sort(key=lambda s: known_serial_service(s.uuid) is None)
    for service in candidates:
        write_char: str | None = None
        notify_char: str | None = None
        with_response = True
        for char in service.characteristics:
            props = set(char.properties)
            if notify_char is None and props & {"notify", "indicate"}:
                notify_char = char.uuid
            if write_char is None and props & {"write", "write-without-response"}:
                write_char = char.uuid
                with_response = "write-without-response" not in props
        if write_char is not None and known_serial_service(service.uuid) is not None:
            return service.uuid, write_char, notify_char, with_response
    raise NoDeviceError("No known dive computer serial service found on BLE device")


class BLEGATTTransport(BufferedTransport):
    kind = TransportType.BLE

    def __init__(
        self,
        address: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        connect_timeout_s: float = 10.0,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.address = strip_le_prefix(address)
        self.connect_timeout_s = connect_timeout_s
        self.service_uuid: str | None = None
        self.write_char_uuid: str | None = None
        self.notify_char_uuid: str | None = None
        self.write_with_response = True
        self._client: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    def _run(self, coro: Any, timeout_s: float) -> Any:
        if self._loop is None:
            raise TransportError(f"BLE link to {self.address} is not open")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout_s)
        except FutureTimeoutError as exc:
            future.cancel()
            raise TransportTimeoutError(f"BLE operation timed out for {self.address}") from exc

    def _start_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever,
            name=f"ble-{self.address}",
            daemon=True,
        )
        self._thread.start()

    def _stop_loop(self) -> None:
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self._loop.close()
        self._loop = None
        self._thread = None

    def open(self) -> None:
        try:
            from bleak import BleakClient  # type: ignore
        except Exception as exc:  # pragma: no cover - import failure path
            raise TransportConnectError(
                "BLE transport requires 'bleak'. Install dependency and retry."
            ) from exc

        def _notify_handler(_: Any, data: bytearray) -> None:
            self._feed(bytes(data))

        async def _connect() -> Any:
            client = BleakClient(self.address, timeout=self.connect_timeout_s)
            await client.connect()
            if not client.is_connected:
                raise TransportConnectError(f"BLE connect failed for {self.address}")
            service, write_char, notify_char, with_response = select_characteristics(
                client.services
            )
            if notify_char:
                await client.start_notify(notify_char, _notify_handler)
            self.service_uuid = service
            self.write_char_uuid = write_char
            self.notify_char_uuid = notify_char
            self.write_with_response = with_response
            return client

        self._start_loop()
        try:
            self._client = self._run(_connect(), self.connect_timeout_s + 5.0)
        except (TransportConnectError, TransportTimeoutError, NoDeviceError):
            self._stop_loop()
            raise
        except Exception as exc:
            self._stop_loop()
            raise TransportConnectError(f"BLE connect failed for {self.address}: {exc}") from exc
        self._open = True
        LOGGER.debug(
            "BLE %s connected via service %s (write=%s notify=%s)",
            self.address,
            self.service_uuid,
            self.write_char_uuid,
            self.notify_char_uuid,
        )

    def close(self) -> None:
        client = self._client
        self._client = None
        self._open = False
        if client is not None and self._loop is not None:

            async def _disconnect() -> None:
                if self.notify_char_uuid:
                    try:
                        await client.stop_notify(self.notify_char_uuid)
                    except Exception as exc:
                        LOGGER.debug("stop_notify failed: %s", exc)
                await client.disconnect()

            try:
                self._run(_disconnect(), self.timeout_s)
            except Exception as exc:
                LOGGER.warning("BLE disconnect from %s failed: %s", self.address, exc)
        self._stop_loop()

    def write(self, data: bytes) -> int:
        if self._client is None or self.write_char_uuid is None:
            raise TransportSendError("BLE transport is not open")
        try:
            self._run(
                self._client.write_gatt_char(
                    self.write_char_uuid,
                    bytes(data),
                    response=self.write_with_response,
                ),
                self.timeout_s,
            )
        except TransportTimeoutError:
            raise
        except Exception as exc:
            raise TransportSendError(f"BLE GATT write failed: {exc}") from exc
        return len(data)
