"""Loading and validation of the YAML dive computer descriptor database."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from divectl.core.errors import DescriptorLoadError, DescriptorValidationError
from divectl.core.model import DeviceFamily, DiveComputerDescriptor, TransportType, parse_transport_names

LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise yaml.constructor.ConstructorError(
                None, None, f"Duplicate key '{key}' in YAML document", key_node.start_mark
            )
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedDescriptors:
    descriptors: tuple[DiveComputerDescriptor, ...]
    warnings: tuple[str, ...]


@lru_cache(maxsize=None)
def load_schema_validator(name: str) -> Any:
    schema_text = resources.files("divectl.schemas").joinpath(name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _descriptor_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "divectl/descriptors", xdg_data / "divectl/descriptors"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DescriptorLoadError(f"Could not read descriptor file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise DescriptorValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise DescriptorValidationError(f"Descriptor file {path} must contain a mapping at root")
    return loaded


def _build_descriptors(doc: dict[str, Any], source: Path | Traversable) -> list[DiveComputerDescriptor]:
    validator = load_schema_validator("descriptor.schema.json")
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise DescriptorValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    vendor = doc["vendor"].strip()
    descriptors: list[DiveComputerDescriptor] = []
    for index, entry in enumerate(doc["products"]):
        try:
            family = DeviceFamily(entry["family"])
        except ValueError:
            raise DescriptorValidationError(
                f"Unknown family '{entry['family']}' in {source} (products.{index})"
            ) from None
        descriptors.append(
            DiveComputerDescriptor(
                vendor=vendor,
                product=str(entry["product"]).strip(),
                model=int(entry["model"]),
                family=family,
                transports=parse_transport_names(entry["transports"]),
            )
        )
    return descriptors


def _iter_packaged_descriptor_paths() -> list[Traversable]:
    root = resources.files("divectl.descriptors")
    return [item for item in root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_descriptor_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _descriptor_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def _key(vendor: str, product: str) -> str:
    return f"{vendor}{product}".lower()


def load_descriptors() -> LoadedDescriptors:
    """Packaged descriptors first, then user files; a user entry replaces a packaged one."""
    descriptors: dict[str, DiveComputerDescriptor] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_descriptor_paths(), key=lambda p: p.name):
        for descriptor in _build_descriptors(_read_yaml(path), path):
            descriptors[_key(descriptor.vendor, descriptor.product)] = descriptor

    for path in _iter_user_descriptor_paths():
        for descriptor in _build_descriptors(_read_yaml(path), path):
            key = _key(descriptor.vendor, descriptor.product)
            if key in descriptors:
                warning = f"User descriptor '{descriptor.vendor} {descriptor.product}' overrides packaged descriptor"
                LOGGER.warning(warning)
                warnings.append(warning)
            descriptors[key] = descriptor

    return LoadedDescriptors(descriptors=tuple(descriptors.values()), warnings=tuple(warnings))


def vendors(descriptors: tuple[DiveComputerDescriptor, ...]) -> list[str]:
    return sorted({d.vendor for d in descriptors})


def products(descriptors: tuple[DiveComputerDescriptor, ...], vendor: str) -> list[str]:
    wanted = vendor.lower()
    return sorted({d.product for d in descriptors if d.vendor.lower() == wanted})


def find_descriptor(
    descriptors: tuple[DiveComputerDescriptor, ...], vendor: str, product: str
) -> DiveComputerDescriptor | None:
    key = _key(vendor, product)
    for descriptor in descriptors:
        if _key(descriptor.vendor, descriptor.product) == key:
            return descriptor
    return None


def descriptor_by_model(
    descriptors: tuple[DiveComputerDescriptor, ...], family: DeviceFamily, model: int
) -> DiveComputerDescriptor | None:
    for descriptor in descriptors:
        if descriptor.family == family and descriptor.model == model:
            return descriptor
    return None


def supports_bluetooth(transports: TransportType) -> bool:
    return bool(transports & (TransportType.BLUETOOTH | TransportType.BLE))


def is_ble_only(transports: TransportType) -> bool:
    return bool(transports & TransportType.BLE) and not transports & TransportType.BLUETOOTH


def supports_usb(transports: TransportType) -> bool:
    return bool(
        transports
        & (TransportType.USB | TransportType.USBHID | TransportType.SERIAL | TransportType.USBSTORAGE)
    )
