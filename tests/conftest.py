"""Shared test fixtures for cachyprox tests."""

from typing import Any, Dict, List, Optional, Set
from unittest import mock

import pytest

from cachyprox.config_resolver import RawConfig
from cachyprox.devices import DiskBus, DiskOptions, EfiDisk, VMCreateRequest, efi_options_for
from cachyprox.exceptions import HostEnvironmentError, StoreCommandError
from cachyprox.models import FirmwareMode, ProvisioningSpec, StorageBackend, StoragePool, VMClass
from cachyprox.resource_store import ResourceStore


class FakeResourceStore(ResourceStore):
    """In-memory Proxmox host with per-operation fault injection."""

    def __init__(
        self,
        pools: Optional[List[StoragePool]] = None,
        interfaces: Optional[Set[str]] = None,
    ) -> None:
        self.pools = pools if pools is not None else [
            StoragePool("local", StorageBackend.DIR, 80 * 1024**3),
            StoragePool("local-lvm", StorageBackend.LVMTHIN, 400 * 1024**3),
        ]
        self.interfaces = interfaces if interfaces is not None else {"lo", "vmbr0", "vmbr1"}
        self.vms: Dict[int, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_on: Set[str] = set()

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append((operation,))
        if operation in self.fail_on:
            raise StoreCommandError(operation, "injected failure")

    def add_vm(self, vmid: int, **config: Any) -> None:
        self.vms[vmid] = {"status": "running", **config}

    def identity_exists(self, vmid: int) -> bool:
        return vmid in self.vms

    def list_storage_pools(self) -> List[StoragePool]:
        return list(self.pools)

    def interface_exists(self, name: str) -> bool:
        return name in self.interfaces

    def create_vm(self, request: VMCreateRequest) -> None:
        self._maybe_fail("create")
        if request.vmid in self.vms:
            raise StoreCommandError("create", f"VM {request.vmid} already exists")
        self.vms[request.vmid] = {"status": "stopped", **request.options()}

    def attach_disk(
        self, vmid: int, bus: DiskBus, index: int, storage: str, size_gib: int, options: DiskOptions
    ) -> None:
        self._maybe_fail("disk")
        self.vms[vmid][bus.slot(index)] = f"{storage}:{size_gib}"

    def attach_cloud_init(self, vmid: int, bus: DiskBus, index: int, storage: str) -> None:
        self._maybe_fail("cloud-init")
        self.vms[vmid][bus.slot(index)] = f"{storage}:cloudinit"

    def attach_media(self, vmid: int, bus: DiskBus, index: int, path: str, read_only: bool = True) -> None:
        self._maybe_fail("media")
        self.vms[vmid][bus.slot(index)] = f"{path},media=cdrom"

    def set_boot_order(self, vmid: int, devices: List[str]) -> None:
        self._maybe_fail("boot-order")
        self.vms[vmid]["boot"] = "order=" + ";".join(devices)

    def attach_serial(self, vmid: int, index: int = 0) -> None:
        self._maybe_fail("serial")
        self.vms[vmid][f"serial{index}"] = "socket"

    def stop_vm(self, vmid: int) -> None:
        self._maybe_fail("stop")
        if vmid not in self.vms:
            raise StoreCommandError("stop", f"VM {vmid} does not exist")
        self.vms[vmid]["status"] = "stopped"

    def destroy_vm(self, vmid: int) -> None:
        self._maybe_fail("destroy")
        if vmid not in self.vms:
            raise StoreCommandError("destroy", f"VM {vmid} does not exist")
        del self.vms[vmid]

    def ping(self) -> None:
        if "ping" in self.fail_on:
            raise HostEnvironmentError("qm command failed")


@pytest.fixture
def fake_store() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture
def raw_config() -> RawConfig:
    """Raw inputs matching the interactive defaults."""
    return RawConfig(
        vmid="111",
        name="cachy",
        cores="4",
        memory="9000",
        balloon="y",
        balloon_mem="4096",
        storage="local-lvm",
        disk_size="32G",
        bridge="vmbr0",
        vlan="",
        iso_storage="local",
        vm_class="1",
        firmware="1",
        cloud_init="n",
    )


@pytest.fixture
def sample_spec() -> ProvisioningSpec:
    return ProvisioningSpec(
        identity=111,
        name="cachy",
        cpu_cores=4,
        memory_mib=9000,
        balloon_mib=4096,
        primary_storage="local-lvm",
        iso_storage="local",
        disk_size_gib=32,
        network_bridge="vmbr0",
        vlan_tag=None,
        firmware_mode=FirmwareMode.UEFI,
        vm_class=VMClass.DESKTOP,
        cloud_init_enabled=True,
        efi_disk=EfiDisk("local-lvm", efi_options_for(StorageBackend.LVMTHIN)),
    )


@pytest.fixture
def mock_proxmox():
    """Mock proxmoxer client for the API backend."""
    proxmox = mock.MagicMock()
    proxmox.cluster.resources.get.return_value = [{"vmid": 100, "type": "qemu"}]
    proxmox.nodes.return_value.storage.get.return_value = [
        {"storage": "local", "type": "dir", "avail": 80 * 1024**3},
        {"storage": "local-lvm", "type": "lvmthin", "avail": 400 * 1024**3},
    ]
    proxmox.nodes.return_value.network.get.return_value = [
        {"iface": "vmbr0", "type": "bridge"},
        {"iface": "eno1", "type": "eth"},
    ]
    yield proxmox


@pytest.fixture
def iso_payload() -> bytes:
    return b"cachyos iso bytes" * 64
