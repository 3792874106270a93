"""
Resolve raw string inputs into an immutable ProvisioningSpec.

Every check that depends on the host (identity, storage pools, bridge, EFI
layout) goes through the ResourceStore, so resolution never mutates anything.
"""

import logging
import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from cachyprox.config import Config
from cachyprox.devices import EfiDisk, efi_options_for
from cachyprox.exceptions import StoreCommandError, ValidationError
from cachyprox.models import FirmwareMode, ProvisioningSpec, VMClass
from cachyprox.resource_store import ResourceStore

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
DISK_SIZE_PATTERN = re.compile(r"^([0-9]+)([GMT])$")
NUMBER_PATTERN = re.compile(r"^[0-9]+$")

MIN_CORES, MAX_CORES = 1, 128
MIN_MEMORY_MIB = 512
MIN_VLAN, MAX_VLAN = 1, 4094

_TRUE = {"y", "yes", "true", "1", "on"}
_FALSE = {"n", "no", "false", "0", "off"}

_FIRMWARE_CHOICES = {
    "1": FirmwareMode.UEFI,
    "uefi": FirmwareMode.UEFI,
    "ovmf": FirmwareMode.UEFI,
    "2": FirmwareMode.LEGACY_BIOS,
    "bios": FirmwareMode.LEGACY_BIOS,
    "seabios": FirmwareMode.LEGACY_BIOS,
}

_VM_CLASS_CHOICES = {
    "1": VMClass.DESKTOP,
    "desktop": VMClass.DESKTOP,
    "2": VMClass.MINIMAL,
    "minimal": VMClass.MINIMAL,
}


def convert_to_gib(size: str) -> int:
    """Convert ``<n>G``, ``<n>M`` or ``<n>T`` to whole GiB.

    Megabyte values round down, so ``1500M`` becomes 1.
    """
    match = DISK_SIZE_PATTERN.match(size.strip())
    if not match:
        raise ValidationError("disk_size", "must be a positive integer ending with G, M, or T (e.g. 32G)")
    number, unit = int(match.group(1)), match.group(2)
    if number <= 0:
        raise ValidationError("disk_size", "must be a positive integer ending with G, M, or T (e.g. 32G)")
    if unit == "M":
        return number // 1024
    if unit == "T":
        return number * 1024
    return number


@dataclass
class RawConfig:
    """String-typed provisioning inputs as gathered by a front-end."""

    vmid: str = ""
    name: str = ""
    cores: str = ""
    memory: str = ""
    balloon: str = ""
    balloon_mem: str = ""
    storage: str = ""
    disk_size: str = ""
    bridge: str = ""
    vlan: str = ""
    iso_storage: str = ""
    vm_class: str = ""
    firmware: str = ""
    cloud_init: str = ""

    @classmethod
    def from_config(cls) -> "RawConfig":
        """Defaults taken from the environment / .env file."""
        return cls(
            vmid=Config.DEFAULT_VMID,
            name=Config.DEFAULT_NAME,
            cores=Config.DEFAULT_CORES,
            memory=Config.DEFAULT_MEMORY,
            balloon=Config.DEFAULT_BALLOON,
            balloon_mem=Config.DEFAULT_BALLOON_MEM,
            storage=Config.DEFAULT_STORAGE,
            disk_size=Config.DEFAULT_DISK_SIZE,
            bridge=Config.DEFAULT_BRIDGE,
            vlan=Config.DEFAULT_VLAN,
            iso_storage=Config.DEFAULT_ISO_STORAGE,
            vm_class=Config.DEFAULT_VM_CLASS,
            firmware=Config.DEFAULT_FIRMWARE,
            cloud_init=Config.DEFAULT_CLOUD_INIT,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "RawConfig":
        """Load a YAML profile on top of the environment defaults."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError("profile", f"{path} must contain a mapping")
        return cls.from_config().merged(data)

    def merged(self, overrides: Dict[str, Any]) -> "RawConfig":
        """Return a copy with the non-None overrides applied (values stringified)."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValidationError("profile", f"unknown keys: {', '.join(sorted(unknown))}")
        values = asdict(self)
        for key, value in overrides.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "y" if value else "n"
            values[key] = str(value)
        return RawConfig(**values)


@dataclass(frozen=True)
class IdentityPolicy:
    minimum: int = 100
    maximum: int = 999

    @classmethod
    def from_config(cls) -> "IdentityPolicy":
        return cls(minimum=Config.VMID_MIN, maximum=Config.VMID_MAX)


def _parse_int(value: str, field: str, constraint: str) -> int:
    value = value.strip()
    if not NUMBER_PATTERN.match(value):
        raise ValidationError(field, constraint)
    return int(value)


class ConfigResolver:
    """Validates raw inputs against the host and builds a ProvisioningSpec."""

    def __init__(self, store: ResourceStore, policy: Optional[IdentityPolicy] = None) -> None:
        self.store = store
        self.policy = policy or IdentityPolicy.from_config()

    def resolve_identity(self, value: str) -> int:
        lo, hi = self.policy.minimum, self.policy.maximum
        vmid = _parse_int(value, "vmid", f"must be a number between {lo}-{hi}")
        if not lo <= vmid <= hi:
            raise ValidationError("vmid", f"must be a number between {lo}-{hi}")
        if self.store.identity_exists(vmid):
            raise ValidationError("vmid", f"VM ID {vmid} already in use")
        return vmid

    def resolve_name(self, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValidationError("name", "must not be empty")
        if not NAME_PATTERN.match(name):
            raise ValidationError("name", "use alphanumeric characters, dots, hyphens, underscores only")
        return name

    def resolve_cores(self, value: str) -> int:
        constraint = f"CPU cores must be {MIN_CORES}-{MAX_CORES}"
        cores = _parse_int(value, "cores", constraint)
        if not MIN_CORES <= cores <= MAX_CORES:
            raise ValidationError("cores", constraint)
        return cores

    def resolve_memory(self, value: str) -> int:
        constraint = f"RAM must be at least {MIN_MEMORY_MIB} MB"
        memory = _parse_int(value, "memory", constraint)
        if memory < MIN_MEMORY_MIB:
            raise ValidationError("memory", constraint)
        return memory

    def resolve_balloon(self, enabled: str, value: str, memory_mib: int) -> int:
        """Return the minimum balloon size, or 0 when ballooning is disabled."""
        if not self.resolve_bool(enabled, "balloon"):
            return 0
        constraint = f"balloon memory must be less than total memory ({memory_mib} MB)"
        balloon = _parse_int(value, "balloon_mem", constraint)
        if balloon >= memory_mib:
            raise ValidationError("balloon_mem", constraint)
        return balloon

    def resolve_storage(self, value: str, field: str = "storage") -> str:
        name = value.strip()
        try:
            pools = self.store.list_storage_pools()
        except StoreCommandError as e:
            raise ValidationError(field, f"cannot list storage pools: {e.detail}")
        if any(pool.name == name for pool in pools):
            return name
        listing = "\n".join(f"  - {pool.describe()}" for pool in pools) or "  (none)"
        raise ValidationError(
            field, f"storage pool '{name}' not found. Available storage pools:\n{listing}"
        )

    def resolve_disk_size(self, value: str) -> int:
        return convert_to_gib(value)

    def resolve_bridge(self, value: str) -> str:
        bridge = value.strip()
        if not bridge or not self.store.interface_exists(bridge):
            raise ValidationError("bridge", f"bridge interface '{bridge}' not found")
        return bridge

    def resolve_vlan(self, value: str) -> Optional[int]:
        if not value.strip():
            return None
        constraint = f"VLAN ID must be {MIN_VLAN}-{MAX_VLAN}"
        tag = _parse_int(value, "vlan", constraint)
        if not MIN_VLAN <= tag <= MAX_VLAN:
            raise ValidationError("vlan", constraint)
        return tag

    def resolve_firmware(self, value: str) -> FirmwareMode:
        try:
            return _FIRMWARE_CHOICES[value.strip().lower()]
        except KeyError:
            raise ValidationError("firmware", "select 1 (UEFI) or 2 (BIOS)")

    def resolve_vm_class(self, value: str) -> VMClass:
        try:
            return _VM_CLASS_CHOICES[value.strip().lower()]
        except KeyError:
            raise ValidationError("vm_class", "select 1 (Desktop) or 2 (Minimal)")

    def resolve_bool(self, value: str, field: str = "cloud_init") -> bool:
        answer = value.strip().lower()
        if answer in _TRUE:
            return True
        if answer in _FALSE:
            return False
        raise ValidationError(field, "answer y or n")

    def efi_disk_for(self, storage: str) -> EfiDisk:
        """Pick the EFI disk layout that the storage backend accepts."""
        try:
            backend = self.store.storage_pool_type(storage)
        except StoreCommandError as e:
            raise ValidationError("storage", f"cannot determine storage type: {e.detail}")
        disk = EfiDisk(storage=storage, options=efi_options_for(backend))
        logger.debug(f"EFI disk config for {storage} ({backend.value}): {disk.render()}")
        return disk

    def resolve(self, raw: RawConfig) -> ProvisioningSpec:
        """Validate all fields in prompt order, stopping at the first failure."""
        identity = self.resolve_identity(raw.vmid)
        name = self.resolve_name(raw.name)
        cores = self.resolve_cores(raw.cores)
        memory = self.resolve_memory(raw.memory)
        balloon = self.resolve_balloon(raw.balloon, raw.balloon_mem, memory)
        storage = self.resolve_storage(raw.storage, "storage")
        disk_size = self.resolve_disk_size(raw.disk_size)
        bridge = self.resolve_bridge(raw.bridge)
        vlan = self.resolve_vlan(raw.vlan)
        iso_storage = self.resolve_storage(raw.iso_storage, "iso_storage")
        vm_class = self.resolve_vm_class(raw.vm_class)
        firmware = self.resolve_firmware(raw.firmware)
        cloud_init = self.resolve_bool(raw.cloud_init, "cloud_init")

        efi_disk = self.efi_disk_for(storage) if firmware is FirmwareMode.UEFI else None

        spec = ProvisioningSpec(
            identity=identity,
            name=name,
            cpu_cores=cores,
            memory_mib=memory,
            balloon_mib=balloon,
            primary_storage=storage,
            iso_storage=iso_storage,
            disk_size_gib=disk_size,
            network_bridge=bridge,
            vlan_tag=vlan,
            firmware_mode=firmware,
            vm_class=vm_class,
            cloud_init_enabled=cloud_init,
            efi_disk=efi_disk,
        )
        logger.info(f"Resolved configuration for VM {identity} ({name})")
        return spec
