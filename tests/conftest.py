from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from divectl.core.model import TransportType
from divectl.transports.base import BufferedTransport

Responder = Callable[[bytes], Iterable[bytes] | None]


class ScriptedTransport(BufferedTransport):
    """In-memory transport: every write is answered by ``responder``.

    Each chunk the responder yields lands in the FIFO as one packet, so
    ``read_packet`` sees the same boundaries a HID or GATT backend would.
    """

    def __init__(
        self,
        responder: Responder | None = None,
        *,
        kind: TransportType = TransportType.SERIAL,
        timeout_s: float = 0.05,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.kind = kind
        self.responder = responder
        self.writes: list[bytes] = []
        self.sleeps: list[float] = []
        self._open = True

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def write(self, data: bytes) -> int:
        self.writes.append(bytes(data))
        replies = self.responder(bytes(data)) if self.responder is not None else None
        for chunk in replies or ():
            self._feed(chunk)
        return len(data)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def push(self, data: bytes) -> None:
        self._feed(data)


@pytest.fixture
def scripted() -> type[ScriptedTransport]:
    return ScriptedTransport


@pytest.fixture
def xdg_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, Path]:
    config_home = tmp_path / "config"
    data_home = tmp_path / "data"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.setenv("XDG_DATA_HOME", str(data_home))
    return config_home, data_home
