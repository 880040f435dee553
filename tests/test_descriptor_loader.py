from __future__ import annotations

from pathlib import Path

import pytest

from divectl.core.descriptor_loader import (
    descriptor_by_model,
    find_descriptor,
    is_ble_only,
    load_descriptors,
    products,
    supports_bluetooth,
    supports_usb,
    vendors,
)
from divectl.core.errors import DescriptorValidationError
from divectl.core.model import DeviceFamily, TransportType


def _write_descriptor(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_load_packaged_descriptors(xdg_dirs) -> None:
    loaded = load_descriptors()
    assert loaded.warnings == ()

    perdix = find_descriptor(loaded.descriptors, "shearwater", "PERDIX")
    assert perdix is not None
    assert perdix.family == DeviceFamily.SHEARWATER_PERDIX
    assert perdix.transports == TransportType.BLUETOOTH | TransportType.BLE

    eon = find_descriptor(loaded.descriptors, "Suunto", "EON Steel")
    assert eon.transports & TransportType.USBHID
    assert "Garmin" in vendors(loaded.descriptors)


def test_lookups_by_vendor_and_model(xdg_dirs) -> None:
    descriptors = load_descriptors().descriptors
    assert "EON Core" in products(descriptors, "suunto")
    assert products(descriptors, "Nobody") == []
    d5 = descriptor_by_model(descriptors, DeviceFamily.SUUNTO_EONSTEEL, 2)
    assert d5.product == "D5"
    assert descriptor_by_model(descriptors, DeviceFamily.SUUNTO_EONSTEEL, 99) is None


def test_user_descriptor_overrides_packaged(xdg_dirs) -> None:
    config_home, _ = xdg_dirs
    _write_descriptor(
        config_home / "divectl" / "descriptors" / "override.yaml",
        """
vendor: Shearwater
products:
  - product: Perdix
    model: 5
    family: shearwater_perdix
    transports: [BLE]
""",
    )

    loaded = load_descriptors()

    assert loaded.warnings == ("User descriptor 'Shearwater Perdix' overrides packaged descriptor",)
    perdix = find_descriptor(loaded.descriptors, "Shearwater", "Perdix")
    assert perdix.transports == TransportType.BLE


def test_user_descriptor_from_data_dir_adds_product(xdg_dirs) -> None:
    _, data_home = xdg_dirs
    _write_descriptor(
        data_home / "divectl" / "descriptors" / "custom.yml",
        """
vendor: Homebrew
products:
  - product: Logger
    model: 1
    family: hw_ostc
    transports: [SERIAL]
""",
    )

    loaded = load_descriptors()
    assert loaded.warnings == ()
    assert find_descriptor(loaded.descriptors, "Homebrew", "Logger").family == DeviceFamily.HW_OSTC


@pytest.mark.parametrize(
    "content",
    [
        # missing transports
        "vendor: Bad\nproducts:\n  - product: X\n    model: 1\n    family: hw_ostc\n",
        # unknown transport name
        "vendor: Bad\nproducts:\n  - product: X\n    model: 1\n    family: hw_ostc\n    transports: [FAX]\n",
        # unknown family
        "vendor: Bad\nproducts:\n  - product: X\n    model: 1\n    family: no_such_family\n    transports: [BLE]\n",
        # duplicate key
        "vendor: Bad\nvendor: Worse\nproducts: []\n",
        # not a mapping
        "- just\n- a list\n",
    ],
)
def test_invalid_user_descriptor_rejected(xdg_dirs, content: str) -> None:
    config_home, _ = xdg_dirs
    _write_descriptor(config_home / "divectl" / "descriptors" / "bad.yaml", content)

    with pytest.raises(DescriptorValidationError):
        load_descriptors()


def test_transport_predicates() -> None:
    assert supports_bluetooth(TransportType.BLE)
    assert not supports_bluetooth(TransportType.SERIAL)
    assert is_ble_only(TransportType.BLE | TransportType.USBHID)
    assert not is_ble_only(TransportType.BLE | TransportType.BLUETOOTH)
    assert supports_usb(TransportType.USBSTORAGE)
    assert not supports_usb(TransportType.BLE)
