import os
from typing import Optional

from dotenv import load_dotenv


def _as_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "y", "yes", "true", "on")


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    # Defaults offered for each provisioning input
    DEFAULT_VMID = os.getenv("DEFAULT_VMID", "111")
    DEFAULT_NAME = os.getenv("DEFAULT_NAME", "cachy")
    DEFAULT_CORES = os.getenv("DEFAULT_CORES", "4")
    DEFAULT_MEMORY = os.getenv("DEFAULT_MEMORY", "9000")
    DEFAULT_BALLOON = os.getenv("DEFAULT_BALLOON", "Y")
    DEFAULT_BALLOON_MEM = os.getenv("DEFAULT_BALLOON_MEM", "4096")
    DEFAULT_STORAGE = os.getenv("DEFAULT_STORAGE", "local-lvm")
    DEFAULT_DISK_SIZE = os.getenv("DEFAULT_DISK_SIZE", "32G")
    DEFAULT_BRIDGE = os.getenv("DEFAULT_BRIDGE", "vmbr0")
    DEFAULT_VLAN = os.getenv("DEFAULT_VLAN", "")
    DEFAULT_ISO_STORAGE = os.getenv("DEFAULT_ISO_STORAGE", "local")
    DEFAULT_VM_CLASS = os.getenv("DEFAULT_VM_CLASS", "1")
    DEFAULT_FIRMWARE = os.getenv("DEFAULT_FIRMWARE", "1")
    DEFAULT_CLOUD_INIT = os.getenv("DEFAULT_CLOUD_INIT", "n")

    VMID_MIN = int(os.getenv("VMID_MIN", "100"))
    VMID_MAX = int(os.getenv("VMID_MAX", "999"))

    # Installation image
    ISO_VERSION = os.getenv("ISO_VERSION", "251129")
    ISO_BASE_URL = os.getenv("ISO_BASE_URL", "https://iso.cachyos.org/desktop")
    ISO_CACHE_DIR = os.getenv("ISO_CACHE_DIR", "/var/lib/vz/template/iso")
    ISO_CACHE_STORAGE = os.getenv("ISO_CACHE_STORAGE", "local")
    ISO_MIN_SIZE = int(os.getenv("ISO_MIN_SIZE", "2000000000"))
    VERIFY_CACHED_ISO = _as_bool(os.getenv("VERIFY_CACHED_ISO", "false"))
    DOWNLOAD_TOOL = os.getenv("DOWNLOAD_TOOL", "requests")
    DOWNLOAD_TIMEOUT = int(os.getenv("DOWNLOAD_TIMEOUT", "60"))

    # Management backend: "cli" drives qm/pvesm, "api" talks to the REST API
    BACKEND = os.getenv("BACKEND", "cli")
    PVE_HOST = os.getenv("PVE_HOST", "")
    PVE_NODE = os.getenv("PVE_NODE", "")
    API_TOKEN = os.getenv("API_TOKEN")
    VERIFY_SSL = _as_bool(os.getenv("VERIFY_SSL", "false"))
    SSH_USER = os.getenv("SSH_USER", "root")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "300"))

    # Seconds to let the host release resources between stop and destroy
    REAP_WAIT_SECONDS = float(os.getenv("REAP_WAIT_SECONDS", "2"))

    DEBUG = _as_bool(os.getenv("DEBUG", "0"))
    LOG_FILE = os.getenv("LOG_FILE", "/var/log/cachyos-vm-creator.log")

    @classmethod
    def iso_name(cls) -> str:
        return f"cachyos-desktop-linux-{cls.ISO_VERSION}.iso"

    @classmethod
    def iso_url(cls) -> str:
        """Build the download URL of the pinned CachyOS desktop ISO."""
        return f"{cls.ISO_BASE_URL.rstrip('/')}/{cls.ISO_VERSION}/{cls.iso_name()}"
