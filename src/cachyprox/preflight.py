"""Host environment checks run before any input is gathered."""

import logging
import os
import shutil
from typing import Sequence

from cachyprox.exceptions import HostEnvironmentError
from cachyprox.resource_store import LocalCommandRunner, QmResourceStore, ResourceStore

logger = logging.getLogger(__name__)

REQUIRED_COMMANDS = ("qm", "pvesm", "ip")


def is_local_cli(store: ResourceStore) -> bool:
    return isinstance(store, QmResourceStore) and isinstance(store.runner, LocalCommandRunner)


def run_preflight(store: ResourceStore, required_commands: Sequence[str] = REQUIRED_COMMANDS) -> None:
    """Validate privileges, tooling and connectivity.

    Root and local tooling are only required when the qm/pvesm tools run on
    this machine; remote and API backends only need to answer a ping.

    Raises:
        HostEnvironmentError: if any check fails
    """
    logger.debug("Validating environment...")

    if is_local_cli(store):
        if os.geteuid() != 0:
            raise HostEnvironmentError("Root privileges required")
        for cmd in required_commands:
            if shutil.which(cmd) is None:
                raise HostEnvironmentError(f"Required command not found: {cmd}")
            logger.debug(f"Found: {cmd}")

    store.ping()
    logger.info("Environment validation passed")
