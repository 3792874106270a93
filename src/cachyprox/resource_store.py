"""
Typed facade over the Proxmox management system.

Two implementations share one contract:

- QmResourceStore drives ``qm``/``pvesm``/``ip`` on the host, either locally
  or over SSH.
- ApiResourceStore talks to the Proxmox REST API through proxmoxer.
"""

import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

import paramiko
from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException
from proxmoxer.tools import Tasks

from cachyprox.config import Config
from cachyprox.devices import (
    BootOrder,
    CloudInitDrive,
    DiskBus,
    DiskOptions,
    MediaDrive,
    ScsiDisk,
    VMCreateRequest,
)
from cachyprox.exceptions import HostEnvironmentError, StoreCommandError
from cachyprox.models import StorageBackend, StoragePool, VMState

logger = logging.getLogger(__name__)


class ResourceStore(ABC):
    """Query and mutation operations consumed by the resolver and orchestrator."""

    @abstractmethod
    def identity_exists(self, vmid: int) -> bool:
        """Return True if a VM or container with this id exists in any state."""

    def vm_state(self, vmid: int) -> VMState:
        return VMState.EXISTS if self.identity_exists(vmid) else VMState.NONEXISTENT

    @abstractmethod
    def list_storage_pools(self) -> List[StoragePool]:
        """Return every storage pool known to the host."""

    def storage_pool_type(self, name: str) -> StorageBackend:
        """Return the backend type of a storage pool."""
        for pool in self.list_storage_pools():
            if pool.name == name:
                return pool.backend
        raise StoreCommandError("storage type lookup", f"storage pool '{name}' not found")

    @abstractmethod
    def interface_exists(self, name: str) -> bool:
        """Return True if a host network interface with this name exists."""

    @abstractmethod
    def create_vm(self, request: VMCreateRequest) -> None:
        """Create the VM shell with all base parameters in one call."""

    @abstractmethod
    def attach_disk(
        self, vmid: int, bus: DiskBus, index: int, storage: str, size_gib: int, options: DiskOptions
    ) -> None:
        """Allocate and attach a new disk of ``size_gib`` GiB."""

    @abstractmethod
    def attach_cloud_init(self, vmid: int, bus: DiskBus, index: int, storage: str) -> None:
        """Attach a cloud-init drive."""

    @abstractmethod
    def attach_media(self, vmid: int, bus: DiskBus, index: int, path: str, read_only: bool = True) -> None:
        """Attach an ISO image as removable medium."""

    @abstractmethod
    def set_boot_order(self, vmid: int, devices: List[str]) -> None:
        """Set boot priority, first entry boots first."""

    @abstractmethod
    def attach_serial(self, vmid: int, index: int = 0) -> None:
        """Attach a host socket-backed serial port."""

    @abstractmethod
    def stop_vm(self, vmid: int) -> None:
        """Hard-stop a VM."""

    @abstractmethod
    def destroy_vm(self, vmid: int) -> None:
        """Destroy a VM and its disks."""

    @abstractmethod
    def ping(self) -> None:
        """Check that the management system answers, raising HostEnvironmentError if not."""

    def close(self) -> None:
        """Release connections held by the store."""


# === CLI backend ===


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(ABC):
    """Executes an argument vector on the Proxmox host."""

    @abstractmethod
    def run(self, argv: List[str]) -> CommandResult:
        ...

    def close(self) -> None:
        pass


class LocalCommandRunner(CommandRunner):
    """Runs commands on this machine, never through a shell."""

    def __init__(self, timeout: Optional[int] = None) -> None:
        self.timeout = timeout or Config.COMMAND_TIMEOUT

    def run(self, argv: List[str]) -> CommandResult:
        logger.debug(f"Running: {shlex.join(argv)}")
        try:
            proc = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            return CommandResult(127, "", f"command not found: {argv[0]}")
        except subprocess.TimeoutExpired:
            return CommandResult(124, "", f"timed out after {self.timeout}s: {shlex.join(argv)}")
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)


class SshCommandRunner(CommandRunner):
    """Runs commands on a remote Proxmox host over SSH."""

    def __init__(
        self,
        host: str,
        user: Optional[str] = None,
        key_path: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.host = host
        self.user = user or Config.SSH_USER
        self.key_path = os.path.expanduser(key_path or Config.SSH_KEY_PATH)
        self.timeout = timeout or Config.COMMAND_TIMEOUT
        self._client: Optional[paramiko.SSHClient] = None

    def _connect(self) -> paramiko.SSHClient:
        if self._client is None:
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            client.connect(hostname=self.host, username=self.user, key_filename=self.key_path)
            self._client = client
        return self._client

    def run(self, argv: List[str]) -> CommandResult:
        command = shlex.join(argv)
        logger.debug(f"Running on {self.host}: {command}")
        try:
            client = self._connect()
            _, stdout, stderr = client.exec_command(command, timeout=self.timeout)
            returncode = stdout.channel.recv_exit_status()
            out = stdout.read().decode().strip()
            err = stderr.read().decode().strip()
        except (paramiko.SSHException, OSError) as e:
            return CommandResult(255, "", f"ssh to {self.host} failed: {e}")
        return CommandResult(returncode, out, err)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def parse_pvesm_status(output: str) -> List[StoragePool]:
    """Parse ``pvesm status`` output (sizes in KiB) into storage pools."""
    pools = []
    for line in output.splitlines()[1:]:
        cols = line.split()
        if len(cols) < 6:
            continue
        available = int(cols[5]) * 1024 if cols[5].isdigit() else 0
        pools.append(StoragePool(name=cols[0], backend=StorageBackend.parse(cols[1]), available_bytes=available))
    return pools


class QmResourceStore(ResourceStore):
    """ResourceStore backed by the qm/pvesm command-line tools."""

    def __init__(self, runner: Optional[CommandRunner] = None) -> None:
        self.runner = runner or LocalCommandRunner()

    def _check(self, argv: List[str], operation: str) -> CommandResult:
        result = self.runner.run(argv)
        if result.stdout:
            logger.debug(result.stdout)
        if not result.ok:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise StoreCommandError(operation, detail)
        return result

    def _qm_set(self, vmid: int, key: str, value: str, operation: str) -> None:
        self._check(["qm", "set", str(vmid), f"--{key}", value], operation)

    def identity_exists(self, vmid: int) -> bool:
        return self.runner.run(["qm", "status", str(vmid)]).ok

    def list_storage_pools(self) -> List[StoragePool]:
        result = self._check(["pvesm", "status"], "storage listing")
        return parse_pvesm_status(result.stdout)

    def interface_exists(self, name: str) -> bool:
        return self.runner.run(["ip", "link", "show", name]).ok

    def create_vm(self, request: VMCreateRequest) -> None:
        argv = ["qm", "create", str(request.vmid)]
        for key, value in request.options().items():
            argv += [f"--{key}", value]
        self._check(argv, "VM creation")

    def attach_disk(
        self, vmid: int, bus: DiskBus, index: int, storage: str, size_gib: int, options: DiskOptions
    ) -> None:
        disk = ScsiDisk(storage=storage, size_gib=size_gib, options=options)
        self._qm_set(vmid, bus.slot(index), disk.render(), "disk attach")

    def attach_cloud_init(self, vmid: int, bus: DiskBus, index: int, storage: str) -> None:
        self._qm_set(vmid, bus.slot(index), CloudInitDrive(storage).render(), "cloud-init attach")

    def attach_media(self, vmid: int, bus: DiskBus, index: int, path: str, read_only: bool = True) -> None:
        self._qm_set(vmid, bus.slot(index), MediaDrive(path, read_only).render(), "media attach")

    def set_boot_order(self, vmid: int, devices: List[str]) -> None:
        self._qm_set(vmid, "boot", BootOrder(devices).render(), "boot order")

    def attach_serial(self, vmid: int, index: int = 0) -> None:
        self._qm_set(vmid, f"serial{index}", "socket", "serial attach")

    def stop_vm(self, vmid: int) -> None:
        self._check(["qm", "stop", str(vmid)], "VM stop")

    def destroy_vm(self, vmid: int) -> None:
        self._check(["qm", "destroy", str(vmid)], "VM destroy")

    def ping(self) -> None:
        for argv in (["qm", "list"], ["pvesm", "status"]):
            result = self.runner.run(argv)
            if not result.ok:
                raise HostEnvironmentError(f"{argv[0]} command failed: {result.stderr.strip()}")

    def close(self) -> None:
        self.runner.close()


# === API backend ===


class ApiResourceStore(ResourceStore):
    """ResourceStore backed by the Proxmox REST API."""

    def __init__(
        self,
        proxmox: Any,
        node: str,
        iso_dir: Optional[str] = None,
        iso_storage: Optional[str] = None,
        task_timeout: Optional[int] = None,
    ) -> None:
        self.proxmox = proxmox
        self.node = node
        self.iso_dir = os.path.normpath(iso_dir or Config.ISO_CACHE_DIR)
        self.iso_storage = iso_storage or Config.ISO_CACHE_STORAGE
        self.task_timeout = task_timeout or Config.COMMAND_TIMEOUT

    def _wait(self, upid: Any, operation: str) -> None:
        """Block until an asynchronous task finishes, raising if it failed."""
        if not (isinstance(upid, str) and upid.startswith("UPID:")):
            return
        status = Tasks.blocking_status(self.proxmox, upid, timeout=self.task_timeout)
        if not status or status.get("exitstatus") != "OK":
            exitstatus = (status or {}).get("exitstatus", "timeout")
            raise StoreCommandError(operation, f"task {upid} ended with {exitstatus}")

    def _call(self, operation: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            result = fn(*args, **kwargs)
        except ResourceException as e:
            raise StoreCommandError(operation, str(e)) from e
        self._wait(result, operation)
        return result

    def _qm_config(self, vmid: int, operation: str, **options: str) -> None:
        self._call(operation, self.proxmox.nodes(self.node).qemu(vmid).config.post, **options)

    def identity_exists(self, vmid: int) -> bool:
        try:
            resources = self.proxmox.cluster.resources.get(type="vm")
            return any(int(r["vmid"]) == vmid for r in resources)
        except ResourceException:
            # Standalone nodes may refuse cluster queries
            node = self.proxmox.nodes(self.node)
            used = [int(vm["vmid"]) for vm in node.qemu.get()] + [int(ct["vmid"]) for ct in node.lxc.get()]
            return vmid in used

    def list_storage_pools(self) -> List[StoragePool]:
        items = self._call("storage listing", self.proxmox.nodes(self.node).storage.get)
        return [
            StoragePool(
                name=item["storage"],
                backend=StorageBackend.parse(item.get("type", "")),
                available_bytes=int(item.get("avail", 0)),
            )
            for item in items
        ]

    def interface_exists(self, name: str) -> bool:
        interfaces = self._call("interface listing", self.proxmox.nodes(self.node).network.get)
        return any(iface.get("iface") == name for iface in interfaces)

    def create_vm(self, request: VMCreateRequest) -> None:
        self._call("VM creation", self.proxmox.nodes(self.node).qemu.create, vmid=request.vmid, **request.options())

    def attach_disk(
        self, vmid: int, bus: DiskBus, index: int, storage: str, size_gib: int, options: DiskOptions
    ) -> None:
        disk = ScsiDisk(storage=storage, size_gib=size_gib, options=options)
        self._qm_config(vmid, "disk attach", **{bus.slot(index): disk.render()})

    def attach_cloud_init(self, vmid: int, bus: DiskBus, index: int, storage: str) -> None:
        self._qm_config(vmid, "cloud-init attach", **{bus.slot(index): CloudInitDrive(storage).render()})

    def volume_for(self, path: str) -> str:
        """Map a file in the ISO cache directory to its storage volume id."""
        if os.path.dirname(os.path.normpath(path)) == self.iso_dir:
            return f"{self.iso_storage}:iso/{os.path.basename(path)}"
        return path

    def attach_media(self, vmid: int, bus: DiskBus, index: int, path: str, read_only: bool = True) -> None:
        drive = MediaDrive(self.volume_for(path), read_only)
        self._qm_config(vmid, "media attach", **{bus.slot(index): drive.render()})

    def set_boot_order(self, vmid: int, devices: List[str]) -> None:
        self._qm_config(vmid, "boot order", boot=BootOrder(devices).render())

    def attach_serial(self, vmid: int, index: int = 0) -> None:
        self._qm_config(vmid, "serial attach", **{f"serial{index}": "socket"})

    def stop_vm(self, vmid: int) -> None:
        self._call("VM stop", self.proxmox.nodes(self.node).qemu(vmid).status.stop.post)

    def destroy_vm(self, vmid: int) -> None:
        self._call("VM destroy", self.proxmox.nodes(self.node).qemu(vmid).delete)

    def ping(self) -> None:
        try:
            self.proxmox.version.get()
        except Exception as e:
            raise HostEnvironmentError(f"Proxmox API not reachable: {e}") from e


def connect_api_store(host: str, node: Optional[str] = None, api_token: Optional[str] = None) -> ApiResourceStore:
    """Connect to the Proxmox API with a ``user!tokenname=secret`` token."""
    token = api_token or Config.API_TOKEN
    if not token:
        raise HostEnvironmentError("API_TOKEN environment variable is not set")
    try:
        user_token, token_value = token.split("=", 1)
        user, token_name = user_token.split("!", 1)
    except ValueError:
        raise HostEnvironmentError("API_TOKEN must look like user@realm!tokenname=secret")

    proxmox = ProxmoxAPI(
        host, user=user, token_name=token_name, token_value=token_value, verify_ssl=Config.VERIFY_SSL
    )
    return ApiResourceStore(proxmox, node or host.split(".")[0])


def build_store() -> ResourceStore:
    """Build the ResourceStore selected by BACKEND / PVE_HOST."""
    backend = Config.BACKEND.strip().lower()
    host = Config.PVE_HOST.strip()
    if backend == "cli":
        runner = SshCommandRunner(host) if host else LocalCommandRunner()
        return QmResourceStore(runner)
    if backend == "api":
        return connect_api_store(host or "localhost", Config.PVE_NODE or None)
    raise HostEnvironmentError(f"Unknown BACKEND '{Config.BACKEND}', expected 'cli' or 'api'")
