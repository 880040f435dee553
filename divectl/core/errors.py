"""Domain-specific errors for divectl."""

from __future__ import annotations

from divectl.core.model import Status


class DivectlError(Exception):
    """Base error for divectl."""

    status = Status.IO


class DescriptorValidationError(DivectlError):
    """Raised when a descriptor file does not conform to schema or semantics."""

    status = Status.DATAFORMAT


class DescriptorLoadError(DivectlError):
    """Raised when loading descriptor sources fails."""


class ConfigError(DivectlError):
    """Raised when the user settings file is unreadable or invalid."""

    status = Status.INVALIDARGS


class DeviceSelectionError(DivectlError):
    """Raised when device matching cannot resolve a single target."""

    status = Status.NODEVICE


class DeviceDiscoveryError(DivectlError):
    """Raised when device discovery command(s) fail."""

    status = Status.NODEVICE


class NoDeviceError(DivectlError):
    """Raised when no matching device is attached."""

    status = Status.NODEVICE


class InvalidArgumentError(DivectlError):
    status = Status.INVALIDARGS


class UnsupportedError(DivectlError):
    """Raised for a device family or operation without an implementation."""

    status = Status.UNSUPPORTED


class ProtocolError(DivectlError):
    """Raised on an unexpected ack, reply, sequence, or magic value."""

    status = Status.PROTOCOL


class DataFormatError(DivectlError):
    """Raised on checksum/CRC mismatch or a malformed packet."""

    status = Status.DATAFORMAT


class DownloadCancelledError(DivectlError):
    status = Status.CANCELLED


class TransportError(DivectlError):
    """Base transport error."""

    status = Status.IO


class TransportConnectError(TransportError):
    """Raised when a transport cannot be opened."""


class TransportSendError(TransportError):
    """Raised when writing or reading the link fails."""


class TransportTimeoutError(TransportError):
    """Raised when a read does not complete in time.

    ``partial`` holds whatever bytes arrived before the deadline.
    """

    status = Status.TIMEOUT

    def __init__(self, message: str, partial: bytes = b"") -> None:
        super().__init__(message)
        self.partial = partial
