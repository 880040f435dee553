"""Serial (RS232 / USB-serial bridge) transport implementation using pyserial."""

from __future__ import annotations

import logging
from typing import Any

from divectl.core.errors import TransportConnectError, TransportSendError
from divectl.core.model import Direction, TransportType
from divectl.transports.base import DEFAULT_TIMEOUT_S, BufferedTransport

LOGGER = logging.getLogger(__name__)

_PARITY = {"N": "N", "E": "E", "O": "O", "M": "M", "S": "S"}


class SerialTransport(BufferedTransport):
    kind = TransportType.SERIAL

    def __init__(
        self,
        port: str,
        *,
        baudrate: int = 9600,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.port = port
        self.baudrate = baudrate
        self._serial: Any = None

    def open(self) -> None:
        try:
            import serial  # type: ignore
        except Exception as exc:  # pragma: no cover - import failure path
            raise TransportConnectError(
                "Serial transport requires 'pyserial'. Install dependency and retry."
            ) from exc

        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0,
                write_timeout=self.timeout_s,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportConnectError(f"Could not open serial port {self.port}: {exc}") from exc
        self._open = True
        LOGGER.debug("Opened %s at %d baud", self.port, self.baudrate)

    def close(self) -> None:
        if self._serial is not None:
            try:
                self._serial.close()
            finally:
                self._serial = None
        self._open = False

    def configure(
        self,
        baudrate: int,
        databits: int = 8,
        parity: str = "N",
        stopbits: int = 1,
        flowcontrol: bool = False,
    ) -> None:
        if parity.upper() not in _PARITY:
            raise TransportSendError(f"Unsupported parity '{parity}'")
        self.baudrate = baudrate
        if self._serial is None:
            return
        try:
            self._serial.baudrate = baudrate
            self._serial.bytesize = databits
            self._serial.parity = _PARITY[parity.upper()]
            self._serial.stopbits = stopbits
            self._serial.rtscts = flowcontrol
        except (OSError, ValueError) as exc:
            raise TransportSendError(f"Could not configure {self.port}: {exc}") from exc

    def set_dtr(self, value: bool) -> None:
        self._require_serial().dtr = value

    def set_rts(self, value: bool) -> None:
        self._require_serial().rts = value

    def available(self) -> int:
        self._pump()
        return self._buffered()

    def write(self, data: bytes) -> int:
        port = self._require_serial()
        try:
            written = port.write(data)
            port.flush()
        except OSError as exc:
            raise TransportSendError(f"Serial write to {self.port} failed: {exc}") from exc
        return written if written is not None else len(data)

    def _pump(self) -> None:
        if self._serial is None:
            return
        try:
            waiting = self._serial.in_waiting
            if waiting:
                self._feed(self._serial.read(waiting))
        except OSError as exc:
            raise TransportSendError(f"Serial read from {self.port} failed: {exc}") from exc

    def _purge_device(self, direction: Direction) -> None:
        if self._serial is None:
            return
        if direction & Direction.INPUT:
            self._serial.reset_input_buffer()
        if direction & Direction.OUTPUT:
            self._serial.reset_output_buffer()

    def _require_serial(self) -> Any:
        if self._serial is None:
            raise TransportSendError(f"Serial port {self.port} is not open")
        return self._serial
