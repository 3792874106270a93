"""Data model for a single VM provisioning run."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from cachyprox.devices import EfiDisk


class StorageBackend(Enum):
    """Proxmox storage types as reported by ``pvesm status``."""

    DIR = "dir"
    NFS = "nfs"
    CIFS = "cifs"
    GLUSTERFS = "glusterfs"
    CEPHFS = "cephfs"
    LVM = "lvm"
    LVMTHIN = "lvmthin"
    ZFS = "zfs"
    ZFSPOOL = "zfspool"
    RBD = "rbd"
    ISCSI = "iscsi"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "StorageBackend":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_file_based(self) -> bool:
        return self in _FILE_BACKENDS


_FILE_BACKENDS = {
    StorageBackend.DIR,
    StorageBackend.NFS,
    StorageBackend.CIFS,
    StorageBackend.GLUSTERFS,
    StorageBackend.CEPHFS,
}


class FirmwareMode(Enum):
    UEFI = "ovmf"
    LEGACY_BIOS = "seabios"


class VMClass(Enum):
    DESKTOP = "desktop"
    MINIMAL = "minimal"


class VMState(Enum):
    NONEXISTENT = "nonexistent"
    EXISTS = "exists"


class ArtifactState(Enum):
    ABSENT = "absent"
    CACHED_VALID = "cached_valid"
    CACHED_CORRUPT = "cached_corrupt"
    DOWNLOADING = "downloading"


class ProvisioningState(Enum):
    UNRESOLVED = "unresolved"
    VALIDATED = "validated"
    REAPED = "reaped"
    BASE_CREATED = "base_created"
    DISK_ATTACHED = "disk_attached"
    CLOUD_INIT_ATTACHED = "cloud_init_attached"
    CLOUD_INIT_SKIPPED_WARN = "cloud_init_skipped_warn"
    MEDIA_ATTACHED = "media_attached"
    BOOT_ORDER_SET = "boot_order_set"
    SERIAL_ATTACHED = "serial_attached"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class StoragePool:
    """A storage pool on the host."""

    name: str
    backend: StorageBackend
    available_bytes: int

    def describe(self) -> str:
        available_gib = self.available_bytes / (1024**3)
        return f"{self.name:<15} (Type: {self.backend.value}, Available: {available_gib:.1f} GiB)"


@dataclass(frozen=True)
class Artifact:
    """A remote installation image and its published SHA-256 sidecar."""

    name: str
    url: str
    checksum_url: str

    def local_path(self, cache_dir: Path) -> Path:
        return Path(cache_dir) / self.name

    def checksum_path(self, cache_dir: Path) -> Path:
        return Path(cache_dir) / f"{self.name}.sha256"


@dataclass(frozen=True)
class ProvisioningSpec:
    """Fully resolved configuration for one orchestration attempt."""

    identity: int
    name: str
    cpu_cores: int
    memory_mib: int
    balloon_mib: int
    primary_storage: str
    iso_storage: str
    disk_size_gib: int
    network_bridge: str
    vlan_tag: Optional[int]
    firmware_mode: FirmwareMode
    vm_class: VMClass
    cloud_init_enabled: bool
    efi_disk: Optional["EfiDisk"] = None

    def __post_init__(self) -> None:
        if (self.firmware_mode is FirmwareMode.UEFI) != (self.efi_disk is not None):
            raise ValueError("efi_disk must be set if and only if firmware_mode is UEFI")

    @property
    def ballooning(self) -> bool:
        return self.balloon_mib > 0


@dataclass
class ProvisioningResult:
    """Outcome of an orchestration run, exposed as plain data."""

    identity: int
    name: str
    state: ProvisioningState = ProvisioningState.UNRESOLVED
    completed_steps: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.state is ProvisioningState.READY
