"""Per-device fingerprints that make repeated downloads incremental."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import yaml

from divectl.core.config import data_dir
from divectl.core.descriptor_loader import UniqueKeyLoader
from divectl.core.errors import ConfigError
from divectl.core.model import DiveComputerDescriptor

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FingerprintEntry:
    vendor: str
    product: str
    model: int
    serial: int
    fingerprint: bytes
    saved_at: datetime
    firmware: str | None = None
    device_time: int | None = None
    dive_count: int | None = None

    @property
    def key(self) -> str:
        return make_key(self.vendor, self.product, self.serial)


def make_key(vendor: str, product: str, serial: int) -> str:
    return f"{vendor}|{product}|{serial}"


class FingerprintStorage(Protocol):
    def load(self, vendor: str, product: str, serial: int) -> FingerprintEntry | None:
        ...

    def save(self, entry: FingerprintEntry) -> None:
        ...

    def remove(self, vendor: str, product: str, serial: int) -> None:
        ...

    def list(self) -> list[FingerprintEntry]:
        ...

    def clear(self) -> None:
        ...


class MemoryFingerprintStorage:
    def __init__(self) -> None:
        self._entries: dict[str, FingerprintEntry] = {}

    def load(self, vendor: str, product: str, serial: int) -> FingerprintEntry | None:
        return self._entries.get(make_key(vendor, product, serial))

    def save(self, entry: FingerprintEntry) -> None:
        self._entries[entry.key] = entry

    def remove(self, vendor: str, product: str, serial: int) -> None:
        self._entries.pop(make_key(vendor, product, serial), None)

    def list(self) -> list[FingerprintEntry]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


def default_store_path() -> Path:
    return data_dir() / "fingerprints.yaml"


class YAMLFingerprintStorage:
    """Entries live in one YAML mapping keyed ``vendor|product|serial``.

    The file is re-read on every call, so several processes see each
    other's saves. Fingerprints are stored as lowercase hex strings.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_store_path()

    def _load_all(self) -> dict[str, FingerprintEntry]:
        if not self.path.exists():
            return {}
        try:
            doc = yaml.load(self.path.read_text(encoding="utf-8"), Loader=UniqueKeyLoader)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Could not read fingerprint store {self.path}: {exc}") from exc
        if doc is None:
            return {}
        if not isinstance(doc, dict):
            raise ConfigError(f"Fingerprint store {self.path} must contain a mapping at root")

        entries: dict[str, FingerprintEntry] = {}
        for key, raw in doc.items():
            try:
                entry = _entry_from_doc(raw)
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed fingerprint entry '%s': %s", key, exc)
                continue
            entries[entry.key] = entry
        return entries

    def _save_all(self, entries: dict[str, FingerprintEntry]) -> None:
        doc = {key: _entry_to_doc(entry) for key, entry in sorted(entries.items())}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(yaml.safe_dump(doc, sort_keys=False), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise ConfigError(f"Could not write fingerprint store {self.path}: {exc}") from exc

    def load(self, vendor: str, product: str, serial: int) -> FingerprintEntry | None:
        return self._load_all().get(make_key(vendor, product, serial))

    def save(self, entry: FingerprintEntry) -> None:
        entries = self._load_all()
        entries[entry.key] = entry
        self._save_all(entries)

    def remove(self, vendor: str, product: str, serial: int) -> None:
        entries = self._load_all()
        if entries.pop(make_key(vendor, product, serial), None) is not None:
            self._save_all(entries)

    def list(self) -> list[FingerprintEntry]:
        return list(self._load_all().values())

    def clear(self) -> None:
        if self.path.exists():
            self._save_all({})


def _entry_to_doc(entry: FingerprintEntry) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "vendor": entry.vendor,
        "product": entry.product,
        "model": entry.model,
        "serial": entry.serial,
        "fingerprint": entry.fingerprint.hex(),
        "saved_at": entry.saved_at.isoformat(),
    }
    if entry.firmware is not None:
        doc["firmware"] = entry.firmware
    if entry.device_time is not None:
        doc["device_time"] = entry.device_time
    if entry.dive_count is not None:
        doc["dive_count"] = entry.dive_count
    return doc


def _entry_from_doc(doc: dict[str, Any]) -> FingerprintEntry:
    return FingerprintEntry(
        vendor=str(doc["vendor"]),
        product=str(doc["product"]),
        model=int(doc["model"]),
        serial=int(doc["serial"]),
        fingerprint=bytes.fromhex(str(doc["fingerprint"])),
        saved_at=datetime.fromisoformat(str(doc["saved_at"])),
        firmware=doc.get("firmware"),
        device_time=doc.get("device_time"),
        dive_count=doc.get("dive_count"),
    )


class FingerprintManager:
    def __init__(self, storage: FingerprintStorage | None = None) -> None:
        self.storage: FingerprintStorage = storage or MemoryFingerprintStorage()

    def get(self, descriptor: DiveComputerDescriptor, serial: int) -> bytes | None:
        entry = self.storage.load(descriptor.vendor, descriptor.product, serial)
        return entry.fingerprint if entry is not None else None

    def save(
        self,
        descriptor: DiveComputerDescriptor,
        serial: int,
        fingerprint: bytes,
        *,
        firmware: str | None = None,
        device_time: int | None = None,
        dive_count: int | None = None,
    ) -> FingerprintEntry:
        entry = FingerprintEntry(
            vendor=descriptor.vendor,
            product=descriptor.product,
            model=descriptor.model,
            serial=serial,
            fingerprint=bytes(fingerprint),
            saved_at=datetime.now(timezone.utc),
            firmware=firmware,
            device_time=device_time,
            dive_count=dive_count,
        )
        self.storage.save(entry)
        LOGGER.debug("Saved fingerprint %s for %s", entry.fingerprint.hex(), entry.key)
        return entry

    def remove(self, descriptor: DiveComputerDescriptor, serial: int) -> None:
        self.storage.remove(descriptor.vendor, descriptor.product, serial)

    def list(self) -> list[FingerprintEntry]:
        return sorted(self.storage.list(), key=lambda e: e.key)

    def clear(self) -> None:
        self.storage.clear()

    def has(self, descriptor: DiveComputerDescriptor, serial: int) -> bool:
        return self.storage.load(descriptor.vendor, descriptor.product, serial) is not None

    @staticmethod
    def compare_fingerprints(a: bytes, b: bytes) -> bool:
        return len(a) == len(b) and bytes(a) == bytes(b)
