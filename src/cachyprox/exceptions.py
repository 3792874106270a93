"""Error taxonomy for VM provisioning.

Every fatal error carries the process exit code the CLI reports for it.
"""

from enum import Enum
from typing import Optional

EXIT_SUCCESS = 0
EXIT_INTERNAL = 1
EXIT_ENVIRONMENT = 2
EXIT_VALIDATION = 3
EXIT_FETCH = 4
EXIT_ORCHESTRATION = 5
EXIT_INTERRUPTED = 130


class ProvisioningError(Exception):
    """Base class for all fatal provisioning errors."""

    exit_code = EXIT_INTERNAL


class HostEnvironmentError(ProvisioningError):
    """Missing privilege or management tooling on the host."""

    exit_code = EXIT_ENVIRONMENT


class ValidationError(ProvisioningError):
    """A raw configuration value violated a constraint."""

    exit_code = EXIT_VALIDATION

    def __init__(self, field: str, constraint: str) -> None:
        super().__init__(f"{field}: {constraint}")
        self.field = field
        self.constraint = constraint


class FetchErrorKind(Enum):
    NETWORK_FAILURE = "network_failure"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    NO_DOWNLOAD_TOOL = "no_download_tool"
    CANCELLED = "cancelled"


class FetchError(ProvisioningError):
    """The installation image could not be acquired or verified."""

    exit_code = EXIT_FETCH

    def __init__(self, kind: FetchErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class StoreCommandError(ProvisioningError):
    """A command against the management system failed."""

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class OrchestrationError(ProvisioningError):
    """A fatal step of the creation sequence failed."""

    exit_code = EXIT_ORCHESTRATION

    def __init__(self, step: str, cause: Optional[BaseException] = None) -> None:
        message = f"Step '{step}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.step = step
        self.cause = cause


class Interrupted(ProvisioningError):
    """The operator aborted the run (SIGINT/SIGTERM)."""

    exit_code = EXIT_INTERRUPTED
