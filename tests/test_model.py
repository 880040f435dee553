from __future__ import annotations

import pytest

from divectl.core.errors import DataFormatError, DownloadCancelledError, TransportTimeoutError
from divectl.core.model import (
    Status,
    TransportType,
    parse_transport_names,
    status_message,
    transport_names,
)


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (Status.SUCCESS, "Success"),
        (Status.TIMEOUT, "Timeout"),
        (Status.DATAFORMAT, "Data format error"),
        (-10, "Cancelled"),
        (-99, "Unknown error"),
    ],
)
def test_status_message(status: int, expected: str) -> None:
    assert status_message(status) == expected


def test_errors_carry_status() -> None:
    assert status_message(DataFormatError.status) == "Data format error"
    assert status_message(TransportTimeoutError.status) == "Timeout"
    assert DownloadCancelledError.status == Status.CANCELLED


def test_transport_names_round_trip_labels() -> None:
    flags = TransportType.SERIAL | TransportType.BLUETOOTH | TransportType.BLE
    assert transport_names(flags) == ("SERIAL", "BT", "BLE")
    assert parse_transport_names(["serial", "bluetooth", "BLE"]) == flags
