"""
Ordered VM creation sequence.

The sequence is declared as a list of steps, each naming the state it
reaches and whether its failure aborts the run or only produces a warning:

    reap -> create -> disk -> cloud-init (warn) -> media -> boot-order -> serial (warn)
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from cachyprox.devices import DiskBus, DiskOptions, VMCreateRequest
from cachyprox.exceptions import Interrupted, OrchestrationError, StoreCommandError
from cachyprox.models import ProvisioningResult, ProvisioningSpec, ProvisioningState, VMState
from cachyprox.recovery import FailureRecovery
from cachyprox.resource_store import ResourceStore

logger = logging.getLogger(__name__)

PRIMARY_DISK_BUS, PRIMARY_DISK_INDEX = DiskBus.SCSI, 0
MEDIA_BUS, MEDIA_INDEX = DiskBus.IDE, 1
CLOUD_INIT_BUS, CLOUD_INIT_INDEX = DiskBus.IDE, 2
SERIAL_INDEX = 0


@dataclass(frozen=True)
class Step:
    """One stage of the creation sequence."""

    name: str
    action: Callable[[ProvisioningSpec, str], None]
    success_state: ProvisioningState
    fatal: bool = True
    warn_state: Optional[ProvisioningState] = None
    applies: Callable[[ProvisioningSpec], bool] = lambda spec: True


class ProvisioningOrchestrator:
    """Creates one boot-ready VM from a resolved spec and a verified ISO."""

    def __init__(
        self,
        store: ResourceStore,
        recovery: Optional[FailureRecovery] = None,
        reap_wait_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.recovery = recovery
        self.reap_wait_seconds = reap_wait_seconds
        self.sleep = sleep
        self.state = ProvisioningState.UNRESOLVED

    @property
    def steps(self) -> List[Step]:
        return [
            Step("reap", self._reap_existing, ProvisioningState.REAPED),
            Step("create", self._create_base, ProvisioningState.BASE_CREATED),
            Step("disk", self._attach_primary_disk, ProvisioningState.DISK_ATTACHED),
            Step(
                "cloud-init",
                self._attach_cloud_init,
                ProvisioningState.CLOUD_INIT_ATTACHED,
                fatal=False,
                warn_state=ProvisioningState.CLOUD_INIT_SKIPPED_WARN,
                applies=lambda spec: spec.cloud_init_enabled,
            ),
            Step("media", self._attach_media, ProvisioningState.MEDIA_ATTACHED),
            Step("boot-order", self._set_boot_order, ProvisioningState.BOOT_ORDER_SET),
            Step("serial", self._attach_serial, ProvisioningState.SERIAL_ATTACHED, fatal=False),
        ]

    def run(self, spec: ProvisioningSpec, iso_path: str) -> ProvisioningResult:
        """Execute every step in order.

        Raises:
            OrchestrationError: naming the first fatal step that failed
            Interrupted: unchanged, whichever step was running
        """
        result = ProvisioningResult(identity=spec.identity, name=spec.name)
        self._transition(result, ProvisioningState.VALIDATED)
        if self.recovery is not None:
            self.recovery.allocate(spec.identity)

        logger.info(f"Creating VM {spec.identity} ({spec.name})...")
        for step in self.steps:
            if not step.applies(spec):
                logger.debug(f"Skipping step '{step.name}'")
                continue
            try:
                step.action(spec, str(iso_path))
            except (Interrupted, KeyboardInterrupt):
                self._transition(result, ProvisioningState.FAILED)
                logger.error(f"Step '{step.name}' interrupted")
                raise
            except Exception as e:
                if step.fatal:
                    self._transition(result, ProvisioningState.FAILED)
                    logger.error(f"Step '{step.name}' failed: {e}")
                    raise OrchestrationError(step.name, e) from e
                logger.warning(f"Step '{step.name}' failed, continuing: {e}")
                result.warnings.append(f"{step.name}: {e}")
                if step.warn_state is not None:
                    self._transition(result, step.warn_state)
                continue
            result.completed_steps.append(step.name)
            self._transition(result, step.success_state)

        self._transition(result, ProvisioningState.READY)
        if self.recovery is not None:
            self.recovery.mark_ready()
        logger.info(f"VM {spec.identity} created successfully")
        return result

    def _transition(self, result: ProvisioningResult, state: ProvisioningState) -> None:
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state
        result.state = state

    def _reap_existing(self, spec: ProvisioningSpec, iso_path: str) -> None:
        vmid = spec.identity
        if self.store.vm_state(vmid) is VMState.NONEXISTENT:
            return
        logger.warning(f"VM {vmid} exists. Deleting...")
        try:
            self.store.stop_vm(vmid)
        except StoreCommandError as e:
            logger.debug(f"Stop of VM {vmid} ignored: {e}")
        self.sleep(self.reap_wait_seconds)
        self.store.destroy_vm(vmid)

    def _create_base(self, spec: ProvisioningSpec, iso_path: str) -> None:
        self.store.create_vm(VMCreateRequest.from_spec(spec))

    def _attach_primary_disk(self, spec: ProvisioningSpec, iso_path: str) -> None:
        self.store.attach_disk(
            spec.identity,
            PRIMARY_DISK_BUS,
            PRIMARY_DISK_INDEX,
            spec.primary_storage,
            spec.disk_size_gib,
            DiskOptions(discard=True, iothread=True),
        )

    def _attach_cloud_init(self, spec: ProvisioningSpec, iso_path: str) -> None:
        self.store.attach_cloud_init(spec.identity, CLOUD_INIT_BUS, CLOUD_INIT_INDEX, spec.iso_storage)

    def _attach_media(self, spec: ProvisioningSpec, iso_path: str) -> None:
        self.store.attach_media(spec.identity, MEDIA_BUS, MEDIA_INDEX, iso_path, read_only=True)

    def _set_boot_order(self, spec: ProvisioningSpec, iso_path: str) -> None:
        self.store.set_boot_order(
            spec.identity,
            [MEDIA_BUS.slot(MEDIA_INDEX), PRIMARY_DISK_BUS.slot(PRIMARY_DISK_INDEX)],
        )

    def _attach_serial(self, spec: ProvisioningSpec, iso_path: str) -> None:
        self.store.attach_serial(spec.identity, SERIAL_INDEX)
