#!/usr/bin/env python3
"""
Command-line interface for CachyOS VM provisioning on Proxmox.

    cachyprox create               # Provision a VM from .env defaults
    cachyprox create -i            # Prompt for every setting
    cachyprox validate --vmid 120  # Resolve settings without touching the host
    cachyprox fetch                # Only download and verify the ISO
    cachyprox pools                # List storage pools

Exit codes: 0 success, 1 internal error, 2 host environment, 3 invalid input,
4 ISO download/verification, 5 VM creation, 130 interrupted.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

import typer
from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from cachyprox.artifact_fetcher import ArtifactFetcher, default_artifact
from cachyprox.config import Config
from cachyprox.config_resolver import ConfigResolver, RawConfig
from cachyprox.exceptions import (
    Interrupted,
    OrchestrationError,
    ProvisioningError,
    ValidationError,
)
from cachyprox.models import FirmwareMode, ProvisioningResult, ProvisioningSpec
from cachyprox.preflight import run_preflight
from cachyprox.provisioner import Provisioner
from cachyprox.recovery import RecoveryOutcome
from cachyprox.resource_store import ResourceStore, build_store

__version__ = "3.6.0"

# Initialize CLI app and console
app = typer.Typer(
    name="cachyprox",
    help="CachyOS Proxmox VM Creator",
    add_completion=False
)
console = Console()
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s: %(message)s"


def configure_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    """Log to stderr, and to ``log_file`` when it can be opened."""
    level = logging.DEBUG if debug or Config.DEBUG else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)

    log_file = Config.LOG_FILE if log_file is None else log_file
    if not log_file:
        return
    try:
        handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Cannot write log file {log_file}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def get_store() -> ResourceStore:
    try:
        return build_store()
    except ProvisioningError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(e.exit_code)


def fail(error: ProvisioningError, provisioner: Optional[Provisioner] = None) -> typer.Exit:
    """Report a fatal error and return the matching exit."""
    if isinstance(error, ValidationError):
        console.print(f"❌ Invalid {error.field}: {error.constraint}")
    elif isinstance(error, OrchestrationError):
        console.print(f"❌ VM creation failed at step '{error.step}': {error.cause}")
    else:
        console.print(f"❌ {error}")

    recovery = provisioner.last_recovery if provisioner else None
    if recovery is not None and recovery.attempted:
        messages = {
            RecoveryOutcome.CLEANED: f"🧹 Cleanup: VM {recovery.identity} was stopped and destroyed",
            RecoveryOutcome.NOT_FOUND: f"🧹 Cleanup: VM {recovery.identity} did not exist, nothing to remove",
            RecoveryOutcome.FAILED: f"⚠️  Cleanup of VM {recovery.identity} failed, remove it manually: qm destroy {recovery.identity}",
        }
        console.print(messages.get(recovery.outcome, f"Cleanup outcome: {recovery.outcome.value}"))
    return typer.Exit(error.exit_code)


def build_raw(profile: Optional[Path], overrides: Dict[str, Optional[str]]) -> RawConfig:
    raw = RawConfig.from_yaml(profile) if profile else RawConfig.from_config()
    return raw.merged(overrides)


def _ask(resolver_fn: Callable[[str], object], question: str, default: str) -> str:
    """Prompt until ``resolver_fn`` accepts the answer."""
    while True:
        answer = Prompt.ask(question, default=default, show_default=True, console=console)
        try:
            resolver_fn(answer)
            return answer
        except ValidationError as e:
            console.print(f"⚠️  {e.constraint}")


def prompt_raw(resolver: ConfigResolver, raw: RawConfig) -> RawConfig:
    """Gather every setting interactively, re-prompting on invalid answers."""
    console.print("Please provide the following VM configuration...")
    lo, hi = resolver.policy.minimum, resolver.policy.maximum
    values: Dict[str, Optional[str]] = {}

    values["vmid"] = _ask(resolver.resolve_identity, f"Enter VM ID ({lo}-{hi})", raw.vmid)
    values["name"] = _ask(resolver.resolve_name, "Enter VM Name", raw.name)
    values["cores"] = _ask(resolver.resolve_cores, "Enter number of CPU cores", raw.cores)
    values["memory"] = _ask(resolver.resolve_memory, "Enter RAM size in MB", raw.memory)
    memory = int(values["memory"] or raw.memory)

    balloon = Confirm.ask("Enable memory ballooning?", default=resolver.resolve_bool(raw.balloon, "balloon"), console=console)
    values["balloon"] = "y" if balloon else "n"
    if balloon:
        values["balloon_mem"] = _ask(
            lambda v: resolver.resolve_balloon("y", v, memory), "Enter minimum RAM for ballooning in MB", raw.balloon_mem
        )

    values["storage"] = _ask(lambda v: resolver.resolve_storage(v, "storage"), "Enter primary storage pool", raw.storage)
    values["disk_size"] = _ask(resolver.resolve_disk_size, "Enter disk size (e.g., 32G)", raw.disk_size)
    values["bridge"] = _ask(resolver.resolve_bridge, "Enter network bridge", raw.bridge)
    values["vlan"] = _ask(resolver.resolve_vlan, "Enter VLAN tag (leave empty for none)", raw.vlan)
    values["iso_storage"] = _ask(
        lambda v: resolver.resolve_storage(v, "iso_storage"), "Enter ISO storage location", raw.iso_storage
    )

    console.print("\nSelect VM optimization type:")
    console.print("1) Desktop (KDE Plasma) - Recommended for GUI usage")
    console.print("2) Minimal - For headless/server setup")
    values["vm_class"] = _ask(resolver.resolve_vm_class, "Enter choice", raw.vm_class)

    console.print("\nSelect firmware type:")
    console.print("1) OVMF (UEFI) - Modern systems, requires EFI bootloader")
    console.print("2) SeaBIOS (BIOS) - Traditional BIOS, uses GRUB bootloader")
    values["firmware"] = _ask(resolver.resolve_firmware, "Enter choice", raw.firmware)

    cloud_init = Confirm.ask(
        "Add cloud-init drive for post-install configuration?",
        default=resolver.resolve_bool(raw.cloud_init),
        console=console,
    )
    values["cloud_init"] = "y" if cloud_init else "n"
    return raw.merged(values)


def print_summary(spec: ProvisioningSpec) -> None:
    table = Table(title="VM Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("VM ID", str(spec.identity))
    table.add_row("Name", spec.name)
    table.add_row("CPU", f"{spec.cpu_cores} cores (host)")
    table.add_row("Memory", f"{spec.memory_mib} MB")
    table.add_row("Ballooning", f"{spec.balloon_mib} MB minimum" if spec.ballooning else "disabled")
    table.add_row("Disk", f"{spec.disk_size_gib} GiB on {spec.primary_storage}")
    network = spec.network_bridge + (f" (VLAN {spec.vlan_tag})" if spec.vlan_tag is not None else "")
    table.add_row("Network", network)
    table.add_row("ISO storage", spec.iso_storage)
    table.add_row("Type", spec.vm_class.value)
    firmware = "OVMF (UEFI)" if spec.firmware_mode is FirmwareMode.UEFI else "SeaBIOS"
    if spec.efi_disk is not None:
        firmware += f", efidisk0={spec.efi_disk.render()}"
    table.add_row("Firmware", firmware)
    table.add_row("Cloud-init", "yes" if spec.cloud_init_enabled else "no")

    console.print(table)


def print_instructions(result: ProvisioningResult) -> None:
    vmid = result.identity
    console.print("\n[bold]Installation Instructions:[/bold]")
    console.print("==========================")
    console.print(f"1. Start VM: qm start {vmid}")
    console.print(f"2. Connect: qm terminal {vmid} or WebUI VNC")
    console.print("3. In installer: Select 'Launch Installer' → 'Erase Disk' → Complete setup")
    console.print("4. After install:")
    console.print(f"   qm set {vmid} --delete ide1")
    console.print(f"   qm set {vmid} --boot order=scsi0")
    console.print(
        "5. Install Guest Agent: sudo pacman -S qemu-guest-agent && sudo systemctl enable --now qemu-guest-agent"
    )
    for warning in result.warnings:
        console.print(f"⚠️  {warning}")


@app.command("create")
def create_vm(
    vmid: Optional[str] = typer.Option(None, "--vmid", help="VM ID"),
    name: Optional[str] = typer.Option(None, "--name", help="VM name"),
    cores: Optional[str] = typer.Option(None, "--cores", help="Number of CPU cores"),
    memory: Optional[str] = typer.Option(None, "--memory", help="RAM size in MB"),
    balloon: Optional[str] = typer.Option(None, "--balloon", help="Enable memory ballooning (y/n)"),
    balloon_mem: Optional[str] = typer.Option(None, "--balloon-mem", help="Minimum RAM for ballooning in MB"),
    storage: Optional[str] = typer.Option(None, "--storage", help="Primary storage pool"),
    disk_size: Optional[str] = typer.Option(None, "--disk-size", help="Disk size, e.g. 32G"),
    bridge: Optional[str] = typer.Option(None, "--bridge", help="Network bridge"),
    vlan: Optional[str] = typer.Option(None, "--vlan", help="VLAN tag (empty for none)"),
    iso_storage: Optional[str] = typer.Option(None, "--iso-storage", help="Storage for the cloud-init drive"),
    vm_class: Optional[str] = typer.Option(None, "--type", help="1/desktop or 2/minimal"),
    firmware: Optional[str] = typer.Option(None, "--firmware", help="1/uefi or 2/bios"),
    cloud_init: Optional[str] = typer.Option(None, "--cloud-init", help="Add cloud-init drive (y/n)"),
    profile: Optional[Path] = typer.Option(None, "--profile", "-p", help="YAML file with VM settings"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Prompt for every setting"),
    parallel_fetch: bool = typer.Option(False, "--parallel-fetch", help="Download the ISO while validating"),
    skip_preflight: bool = typer.Option(False, "--skip-preflight", help="Skip environment checks"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """Create a CachyOS VM ready to boot the installer."""
    configure_logging(debug)
    logger.info(f"CachyOS Proxmox VM Creator v{__version__}")
    logger.info(f"Start time: {datetime.now()}")

    store = get_store()
    fetcher = ArtifactFetcher()
    provisioner = Provisioner(store, fetcher)
    artifact = default_artifact()
    overrides = {
        "vmid": vmid,
        "name": name,
        "cores": cores,
        "memory": memory,
        "balloon": balloon,
        "balloon_mem": balloon_mem,
        "storage": storage,
        "disk_size": disk_size,
        "bridge": bridge,
        "vlan": vlan,
        "iso_storage": iso_storage,
        "vm_class": vm_class,
        "firmware": firmware,
        "cloud_init": cloud_init,
    }

    try:
        if not skip_preflight:
            run_preflight(store)
        raw = build_raw(profile, overrides)

        if interactive:
            raw = prompt_raw(provisioner.resolver, raw)

        iso_path = None
        if parallel_fetch:
            spec, iso_path = provisioner.prepare(raw, artifact, parallel_fetch=True)
        else:
            spec = provisioner.resolver.resolve(raw)

        print_summary(spec)
        if not yes and not Confirm.ask("Create this VM?", default=True, console=console):
            console.print("Aborted, nothing was changed.")
            raise typer.Exit(0)
        result = provisioner.provision_spec(spec, artifact, iso_path)
    except KeyboardInterrupt:
        raise fail(Interrupted("Script interrupted"), provisioner)
    except ProvisioningError as e:
        raise fail(e, provisioner)
    finally:
        store.close()
        if Config.LOG_FILE:
            logger.info(f"Log file: {Config.LOG_FILE}")

    console.print(f"✅ VM {result.identity} ({result.name}) created successfully")
    print_instructions(result)
    console.print(f"\n🚀 Setup complete! Run: qm start {result.identity}")
    logger.info(f"End time: {datetime.now()}")


@app.command("validate")
def validate_config(
    vmid: Optional[str] = typer.Option(None, "--vmid", help="VM ID"),
    name: Optional[str] = typer.Option(None, "--name", help="VM name"),
    cores: Optional[str] = typer.Option(None, "--cores", help="Number of CPU cores"),
    memory: Optional[str] = typer.Option(None, "--memory", help="RAM size in MB"),
    balloon: Optional[str] = typer.Option(None, "--balloon", help="Enable memory ballooning (y/n)"),
    balloon_mem: Optional[str] = typer.Option(None, "--balloon-mem", help="Minimum RAM for ballooning in MB"),
    storage: Optional[str] = typer.Option(None, "--storage", help="Primary storage pool"),
    disk_size: Optional[str] = typer.Option(None, "--disk-size", help="Disk size, e.g. 32G"),
    bridge: Optional[str] = typer.Option(None, "--bridge", help="Network bridge"),
    vlan: Optional[str] = typer.Option(None, "--vlan", help="VLAN tag (empty for none)"),
    iso_storage: Optional[str] = typer.Option(None, "--iso-storage", help="Storage for the cloud-init drive"),
    vm_class: Optional[str] = typer.Option(None, "--type", help="1/desktop or 2/minimal"),
    firmware: Optional[str] = typer.Option(None, "--firmware", help="1/uefi or 2/bios"),
    cloud_init: Optional[str] = typer.Option(None, "--cloud-init", help="Add cloud-init drive (y/n)"),
    profile: Optional[Path] = typer.Option(None, "--profile", "-p", help="YAML file with VM settings"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """Resolve the configuration against the host without changing anything."""
    configure_logging(debug, log_file="")
    store = get_store()
    overrides = {
        "vmid": vmid,
        "name": name,
        "cores": cores,
        "memory": memory,
        "balloon": balloon,
        "balloon_mem": balloon_mem,
        "storage": storage,
        "disk_size": disk_size,
        "bridge": bridge,
        "vlan": vlan,
        "iso_storage": iso_storage,
        "vm_class": vm_class,
        "firmware": firmware,
        "cloud_init": cloud_init,
    }
    try:
        raw = build_raw(profile, overrides)
        spec = ConfigResolver(store).resolve(raw)
    except ProvisioningError as e:
        raise fail(e)
    finally:
        store.close()
    print_summary(spec)
    console.print("✅ Configuration is valid")


@app.command("fetch")
def fetch_iso(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Directory for the ISO cache"),
    verify_cached: bool = typer.Option(False, "--verify-cached", help="Re-hash an existing cached ISO"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """Download and verify the installation ISO only."""
    configure_logging(debug)
    fetcher = ArtifactFetcher(cache_dir=cache_dir, verify_cached=verify_cached or None)
    try:
        path = fetcher.fetch(default_artifact())
    except KeyboardInterrupt:
        raise fail(Interrupted("Download interrupted"))
    except ProvisioningError as e:
        raise fail(e)
    console.print(f"📀 ISO ready: {path}")


@app.command("pools")
def list_pools() -> None:
    """List storage pools with type and free space."""
    configure_logging(log_file="")
    store = get_store()
    try:
        pools = store.list_storage_pools()
    except ProvisioningError as e:
        raise fail(e)
    finally:
        store.close()

    table = Table(title="Storage Pools")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="blue")
    table.add_column("Available", style="green")
    for pool in pools:
        table.add_row(pool.name, pool.backend.value, f"{pool.available_bytes / (1024**3):.1f} GiB")
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
