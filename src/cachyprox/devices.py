"""
Structured Proxmox device descriptors.

Each descriptor renders to the property string accepted by both ``qm set``
and the ``/nodes/{node}/qemu`` API, so stores never interpolate raw user
input into option strings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from cachyprox.models import FirmwareMode, ProvisioningSpec, StorageBackend


class DiskBus(Enum):
    IDE = "ide"
    SATA = "sata"
    SCSI = "scsi"
    VIRTIO = "virtio"

    def slot(self, index: int) -> str:
        return f"{self.value}{index}"


@dataclass(frozen=True)
class EfiDiskOptions:
    """Format parameters for the EFI variable-store disk."""

    efitype: str = "4m"
    size: str = "4M"
    image_format: Optional[str] = None


_FILE_EFI = EfiDiskOptions(image_format="qcow2")
_BLOCK_EFI = EfiDiskOptions()

# File-based storages need an explicit image container format; block-based
# storages reject it.
EFI_DISK_OPTIONS: Dict[StorageBackend, EfiDiskOptions] = {
    StorageBackend.DIR: _FILE_EFI,
    StorageBackend.NFS: _FILE_EFI,
    StorageBackend.CIFS: _FILE_EFI,
    StorageBackend.GLUSTERFS: _FILE_EFI,
    StorageBackend.CEPHFS: _FILE_EFI,
    StorageBackend.LVM: _BLOCK_EFI,
    StorageBackend.LVMTHIN: _BLOCK_EFI,
    StorageBackend.ZFS: _BLOCK_EFI,
    StorageBackend.ZFSPOOL: _BLOCK_EFI,
    StorageBackend.RBD: _BLOCK_EFI,
    StorageBackend.ISCSI: _BLOCK_EFI,
}


def efi_options_for(backend: StorageBackend) -> EfiDiskOptions:
    """Return the EFI disk options for a storage backend (block layout if unknown)."""
    return EFI_DISK_OPTIONS.get(backend, _BLOCK_EFI)


@dataclass(frozen=True)
class EfiDisk:
    storage: str
    options: EfiDiskOptions = _BLOCK_EFI

    def render(self) -> str:
        parts = [f"{self.storage}:0", f"efitype={self.options.efitype}"]
        if self.options.image_format:
            parts.append(f"format={self.options.image_format}")
        parts.append(f"size={self.options.size}")
        return ",".join(parts)


@dataclass(frozen=True)
class NetworkDevice:
    bridge: str
    model: str = "virtio"
    vlan_tag: Optional[int] = None

    def render(self) -> str:
        value = f"{self.model},bridge={self.bridge}"
        if self.vlan_tag is not None:
            value += f",tag={self.vlan_tag}"
        return value


@dataclass(frozen=True)
class DiskOptions:
    discard: bool = True
    iothread: bool = True


@dataclass(frozen=True)
class ScsiDisk:
    """A newly allocated disk; size is always a bare GiB integer."""

    storage: str
    size_gib: int
    options: DiskOptions = DiskOptions()

    def render(self) -> str:
        parts = [f"{self.storage}:{int(self.size_gib)}"]
        if self.options.discard:
            parts.append("discard=on")
        if self.options.iothread:
            parts.append("iothread=1")
        return ",".join(parts)


@dataclass(frozen=True)
class MediaDrive:
    path: str
    read_only: bool = True

    def render(self) -> str:
        media = "cdrom" if self.read_only else "disk"
        return f"{self.path},media={media}"


@dataclass(frozen=True)
class CloudInitDrive:
    storage: str

    def render(self) -> str:
        return f"{self.storage}:cloudinit"


@dataclass(frozen=True)
class BootOrder:
    devices: List[str] = field(default_factory=list)

    def render(self) -> str:
        return "order=" + ";".join(self.devices)


@dataclass(frozen=True)
class VMCreateRequest:
    """Every parameter of the single base-creation call."""

    vmid: int
    name: str
    memory_mib: int
    cores: int
    firmware_mode: FirmwareMode
    network: NetworkDevice
    efi_disk: Optional[EfiDisk] = None
    balloon_mib: int = 0
    ostype: str = "l26"
    machine: str = "q35"
    agent: bool = True
    vga: str = "virtio"
    sockets: int = 1
    cpu: str = "host"

    @classmethod
    def from_spec(cls, spec: ProvisioningSpec) -> "VMCreateRequest":
        return cls(
            vmid=spec.identity,
            name=spec.name,
            memory_mib=spec.memory_mib,
            cores=spec.cpu_cores,
            firmware_mode=spec.firmware_mode,
            network=NetworkDevice(bridge=spec.network_bridge, vlan_tag=spec.vlan_tag),
            efi_disk=spec.efi_disk,
            balloon_mib=spec.balloon_mib,
        )

    def options(self) -> Dict[str, str]:
        """Render ``qm create`` options (also the API payload) without the vmid."""
        opts = {
            "name": self.name,
            "ostype": self.ostype,
            "machine": self.machine,
            "bios": self.firmware_mode.value,
            "agent": "1" if self.agent else "0",
            "vga": self.vga,
            "memory": str(self.memory_mib),
            "cores": str(self.cores),
            "sockets": str(self.sockets),
            "cpu": self.cpu,
            "net0": self.network.render(),
        }
        if self.firmware_mode is FirmwareMode.UEFI and self.efi_disk is not None:
            opts["efidisk0"] = self.efi_disk.render()
        if self.balloon_mib > 0:
            opts["balloon"] = str(self.balloon_mib)
        return opts
