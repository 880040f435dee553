"""Transport interfaces and the shared buffered read loop."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Protocol

from divectl.core.errors import TransportError, TransportTimeoutError
from divectl.core.model import Direction, TransportType

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.01
DEFAULT_TIMEOUT_S = 5.0


class Transport(Protocol):
    kind: TransportType

    def open(self) -> None:
        """Open the link; raise TransportConnectError on failure."""

    def close(self) -> None:
        ...

    def is_open(self) -> bool:
        ...

    def read(self, size: int) -> bytes:
        """Block until ``size`` bytes arrive or raise TransportTimeoutError."""

    def write(self, data: bytes) -> int:
        ...

    def poll(self, timeout_s: float) -> bool:
        ...

    def purge(self, direction: Direction) -> None:
        ...

    def set_timeout(self, timeout_s: float) -> None:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class BufferedTransport:
    """Base for backends whose event source feeds an internal FIFO.

    Subclasses push incoming chunks through ``_feed`` (from a callback thread)
    or implement ``_pump`` to pull whatever the device has ready. ``read``
    drains the FIFO, polling in short steps until enough bytes accumulate.
    """

    kind = TransportType.NONE

    def __init__(self, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.timeout_s = timeout_s
        self._chunks: deque[bytes] = deque()
        self._lock = threading.Lock()
        self._open = False

    def is_open(self) -> bool:
        return self._open

    def set_timeout(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def _feed(self, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            self._chunks.append(bytes(data))

    def _pump(self) -> None:
        """Move ready bytes from the device into the FIFO. Push-fed backends skip this."""

    def _buffered(self) -> int:
        with self._lock:
            return sum(len(chunk) for chunk in self._chunks)

    def _take(self, size: int) -> bytes:
        out = bytearray()
        with self._lock:
            while self._chunks and len(out) < size:
                chunk = self._chunks.popleft()
                need = size - len(out)
                out += chunk[:need]
                if len(chunk) > need:
                    self._chunks.appendleft(chunk[need:])
        return bytes(out)

    def read(self, size: int) -> bytes:
        if not self._open:
            raise TransportError(f"{type(self).__name__} is not open")

        deadline = time.monotonic() + self.timeout_s
        received = bytearray()
        while len(received) < size:
            self._pump()
            received += self._take(size - len(received))
            if len(received) >= size:
                break
            if time.monotonic() >= deadline:
                raise TransportTimeoutError(
                    f"Timed out after {self.timeout_s:.1f}s reading {size} bytes "
                    f"(got {len(received)})",
                    partial=bytes(received),
                )
            time.sleep(POLL_INTERVAL_S)
        return bytes(received)

    def read_packet(self) -> bytes:
        """Return one chunk exactly as the event source delivered it (HID report, GATT notification)."""
        if not self._open:
            raise TransportError(f"{type(self).__name__} is not open")
        deadline = time.monotonic() + self.timeout_s
        while True:
            self._pump()
            with self._lock:
                if self._chunks:
                    return self._chunks.popleft()
            if time.monotonic() >= deadline:
                raise TransportTimeoutError(f"Timed out after {self.timeout_s:.1f}s waiting for a packet")
            time.sleep(POLL_INTERVAL_S)

    def poll(self, timeout_s: float) -> bool:
        deadline = time.monotonic() + timeout_s
        while True:
            self._pump()
            if self._buffered() > 0:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_INTERVAL_S)

    def purge(self, direction: Direction) -> None:
        if direction & Direction.INPUT:
            self._pump()
            with self._lock:
                dropped = sum(len(chunk) for chunk in self._chunks)
                self._chunks.clear()
            if dropped:
                LOGGER.debug("Purged %d buffered input bytes", dropped)
        self._purge_device(direction)

    def _purge_device(self, direction: Direction) -> None:
        """Flush device-side buffers; backends without any keep the default."""
