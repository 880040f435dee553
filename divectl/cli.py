"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
import yaml

from divectl.core.config import load_settings
from divectl.core.errors import DivectlError
from divectl.core.model import ProtocolDive, transport_names
from divectl.core.service import DiveService

app = typer.Typer(help="Download dives from dive computers over serial, USB HID and Bluetooth")

INDEX_FILE = "index.yaml"

_VENDOR = typer.Option(None, "--vendor", help="Vendor name, as shown by 'divectl list'")
_PRODUCT = typer.Option(None, "--product", help="Product name, as shown by 'divectl list'")
_DEVICE = typer.Option(None, "--device", help="Serial port, HID path, Bluetooth address or partial name")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traffic at DEBUG"),
) -> None:
    level = "DEBUG" if verbose else "WARNING"
    if not verbose:
        try:
            level = load_settings().log_level
        except DivectlError as exc:
            typer.echo(f"Warning: {exc}", err=True)
    logging.basicConfig(level=getattr(logging, level), format="%(levelname)s %(name)s: %(message)s")


def _build_service() -> DiveService:
    service = DiveService()
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    for warning in getattr(service, "runtime_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _format_time(timestamp: int) -> str | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@app.command("support")
def support() -> None:
    """Show which dive computer families can be downloaded."""
    try:
        service = _build_service()
        for entry in service.support_matrix():
            state = "yes" if entry.supported else "no"
            transports = ",".join(entry.transports)
            notes = f"  {entry.notes}" if entry.notes else ""
            typer.echo(f"{entry.family.value:<26} {state:<4} {transports:<18}{notes}")
    except DivectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("list")
def list_descriptors(
    vendor: str | None = typer.Option(None, "--vendor", help="Only list products of this vendor"),
) -> None:
    """List known dive computers by vendor."""
    try:
        service = _build_service()
        descriptors = service.list_descriptors()
        if vendor:
            descriptors = [d for d in descriptors if d.vendor.lower() == vendor.lower()]
        if not descriptors:
            typer.echo("No dive computers known")
            raise typer.Exit(code=1)

        current = None
        for descriptor in descriptors:
            if descriptor.vendor != current:
                current = descriptor.vendor
                typer.echo(current)
            transports = ", ".join(transport_names(descriptor.transports))
            typer.echo(f"  {descriptor.product}: {transports}")
    except DivectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices(
    ble: bool = typer.Option(True, "--ble/--no-ble", help="Include a BLE scan"),
) -> None:
    """List connected or nearby dive computers and their matched descriptor."""
    try:
        service = _build_service()
        devices, warnings = service.list_devices(ble=ble)
        for warning in warnings:
            typer.echo(f"Warning: {warning}", err=True)
        if not devices:
            typer.echo("No devices found")
            return

        for device in devices:
            kind = ",".join(transport_names(device.transport))
            if device.vendor:
                matched = f"{device.vendor} {device.product or '?'}"
            else:
                matched = device.product or "<no-match>"
            name = device.name or "<unknown-device>"
            typer.echo(f"{device.address} [{kind}] {name} -> {matched}")
    except DivectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("info")
def info(
    vendor: str | None = _VENDOR,
    product: str | None = _PRODUCT,
    device: str | None = _DEVICE,
) -> None:
    """Connect and print model, firmware and serial number."""
    try:
        service = _build_service()
        target = service.resolve_target(vendor, product, device)
        device_info = service.device_info(target)
        typer.echo(f"Target: {target.descriptor.vendor} {target.descriptor.product} at {target.address or 'USB'}")
        if device_info is None:
            typer.echo("No device information reported")
            return
        typer.echo(f"  model: {device_info.model}")
        typer.echo(f"  firmware: {device_info.firmware}")
        typer.echo(f"  serial: {device_info.serial}")
        if device_info.hardware_version is not None:
            typer.echo(f"  hardware: {device_info.hardware_version}")
        if device_info.features:
            typer.echo(f"  features: {', '.join(device_info.features)}")
    except DivectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("download")
def download(
    output: Path = typer.Option(Path("dives"), "--output", "-o", help="Directory for dive files"),
    vendor: str | None = _VENDOR,
    product: str | None = _PRODUCT,
    device: str | None = _DEVICE,
    full: bool = typer.Option(False, "--full", help="Ignore the stored fingerprint and download every dive"),
) -> None:
    """Download new dives into OUTPUT as raw .bin files plus an index."""
    try:
        service = _build_service()
        target = service.resolve_target(vendor, product, device)
        output.mkdir(parents=True, exist_ok=True)
        written: list[dict[str, Any]] = []

        def on_dive(dive: ProtocolDive, index: int, total: int) -> bool:
            name = f"dive-{index:04d}-{dive.fingerprint.hex() or 'nofp'}.bin"
            (output / name).write_bytes(dive.data)
            written.append(
                {
                    "file": name,
                    "fingerprint": dive.fingerprint.hex(),
                    "start": _format_time(dive.timestamp),
                    "size": len(dive.data),
                }
            )
            typer.echo(f"[{index + 1}/{total}] {name}", err=True)
            return True

        result = service.download(target, full=full, dive_callback=on_dive)
        index_doc = {
            "vendor": target.descriptor.vendor,
            "product": target.descriptor.product,
            "serial": result.device_info.serial if result.device_info else None,
            "firmware": result.device_info.firmware if result.device_info else None,
            "downloaded_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            "dives": written,
        }
        (output / INDEX_FILE).write_text(yaml.safe_dump(index_doc, sort_keys=False), encoding="utf-8")
        if not result.dives:
            typer.echo("No new dives")
            return
        typer.echo(f"Downloaded {len(result.dives)} dive(s) to {output}")
        if result.fingerprint_saved:
            typer.echo(f"fingerprint={result.fingerprint_saved.hex()}")
    except (DivectlError, OSError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("sync-time")
def sync_time(
    vendor: str | None = _VENDOR,
    product: str | None = _PRODUCT,
    device: str | None = _DEVICE,
) -> None:
    """Set the dive computer clock to the local time."""
    try:
        service = _build_service()
        target = service.resolve_target(vendor, product, device)
        if not service.sync_time(target, datetime.now()):
            typer.echo(f"Error: time sync failed for {target.descriptor.vendor} {target.descriptor.product}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Clock set on {target.descriptor.vendor} {target.descriptor.product}")
    except DivectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("fingerprints")
def fingerprints(
    clear: bool = typer.Option(False, "--clear", help="Forget stored fingerprints"),
    vendor: str | None = typer.Option(None, "--vendor", help="Only entries of this vendor"),
    product: str | None = typer.Option(None, "--product", help="Only entries of this product"),
) -> None:
    """List or clear the fingerprints that make downloads incremental."""
    try:
        service = _build_service()
        if clear:
            removed = service.clear_fingerprints(vendor, product)
            typer.echo(f"Removed {removed} fingerprint(s)")
            return

        entries = service.list_fingerprints()
        if vendor:
            entries = [e for e in entries if e.vendor.lower() == vendor.lower()]
        if product:
            entries = [e for e in entries if e.product.lower() == product.lower()]
        if not entries:
            typer.echo("No fingerprints stored")
            return
        for entry in entries:
            saved = entry.saved_at.strftime("%Y-%m-%d %H:%M:%S")
            typer.echo(f"{entry.key}: {entry.fingerprint.hex()} (saved {saved})")
    except DivectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
