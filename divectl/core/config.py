"""User settings from ``$XDG_CONFIG_HOME/divectl/config.yaml``."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from jsonschema import ValidationError

from divectl.core.descriptor_loader import UniqueKeyLoader, load_schema_validator
from divectl.core.errors import ConfigError
from divectl.transports.base import DEFAULT_TIMEOUT_S


@dataclass(frozen=True)
class Settings:
    log_level: str = "WARNING"
    timeout_s: float = DEFAULT_TIMEOUT_S
    ble_scan_timeout_s: float = 5.0
    fingerprint_store: Path | None = None
    default_port: str | None = None


def config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "divectl/config.yaml"


def data_dir() -> Path:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "divectl"


def load_settings(path: Path | None = None) -> Settings:
    path = path or config_path()
    if not path.exists():
        return Settings()

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read settings file {path}: {exc}") from exc

    try:
        doc = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if doc is None:
        return Settings()
    if not isinstance(doc, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping at root")

    try:
        load_schema_validator("config.schema.json").validate(doc)
    except ValidationError as exc:
        where = ".".join(str(p) for p in exc.path)
        where = f" ({where})" if where else ""
        raise ConfigError(f"Schema validation failed for {path}{where}: {exc.message}") from exc

    store = doc.get("fingerprint_store")
    return Settings(
        log_level=doc.get("log_level", "WARNING"),
        timeout_s=float(doc.get("timeout_s", DEFAULT_TIMEOUT_S)),
        ble_scan_timeout_s=float(doc.get("ble_scan_timeout_s", 5.0)),
        fingerprint_store=Path(store).expanduser() if store else None,
        default_port=doc.get("default_port"),
    )
