"""Compensating cleanup for a partially provisioned VM."""

import contextlib
import logging
import signal
import threading
import time
from enum import Enum
from types import TracebackType
from typing import Callable, Iterator, Optional, Type

from cachyprox.resource_store import ResourceStore

logger = logging.getLogger(__name__)

CLEANUP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextlib.contextmanager
def signals_ignored() -> Iterator[None]:
    """Ignore SIGINT and SIGTERM for the duration of the block (main thread only)."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {signum: signal.signal(signum, signal.SIG_IGN) for signum in CLEANUP_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


class RecoveryOutcome(Enum):
    NOT_NEEDED = "not_needed"
    CLEANED = "cleaned"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class FailureRecovery:
    """Wraps one orchestration attempt and reaps the VM if it never became ready.

    Use as a context manager. The orchestrator calls :meth:`allocate` just
    before the VM is created and :meth:`mark_ready` once it is boot-ready.
    Any exception escaping the block (including KeyboardInterrupt) triggers
    :meth:`compensate` exactly once; the exception then propagates unchanged.
    """

    def __init__(
        self,
        store: ResourceStore,
        wait_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.wait_seconds = wait_seconds
        self.sleep = sleep
        self.identity: Optional[int] = None
        self.ready = False
        self.outcome = RecoveryOutcome.NOT_NEEDED
        self._ran = False

    def allocate(self, vmid: int) -> None:
        self.identity = vmid

    def mark_ready(self) -> None:
        self.ready = True

    @property
    def attempted(self) -> bool:
        return self._ran

    def __enter__(self) -> "FailureRecovery":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> bool:
        if exc_type is not None:
            logger.warning(f"Provisioning aborted: {exc or exc_type.__name__}")
            self.compensate()
        return False

    def compensate(self) -> RecoveryOutcome:
        """Stop and destroy the allocated identity. Never raises.

        SIGINT and SIGTERM are ignored while cleanup runs, and an interrupt
        raised from any single action does not skip the destroy.
        """
        if self._ran or self.ready or self.identity is None:
            return self.outcome
        self._ran = True
        with signals_ignored():
            self.outcome = self._destroy(self.identity)
        return self.outcome

    def _destroy(self, vmid: int) -> RecoveryOutcome:
        try:
            if not self.store.identity_exists(vmid):
                logger.info(f"VM {vmid} was never created, nothing to clean up")
                return RecoveryOutcome.NOT_FOUND
        except BaseException as e:
            logger.warning(f"Could not check VM {vmid} before cleanup: {e!r}")

        logger.warning(f"Cleaning up VM {vmid}...")
        try:
            self.store.stop_vm(vmid)
        except BaseException as e:
            logger.debug(f"Ignoring stop failure for VM {vmid}: {e!r}")
        try:
            self.sleep(self.wait_seconds)
        except BaseException as e:
            logger.debug(f"Wait before destroying VM {vmid} cut short: {e!r}")

        try:
            self.store.destroy_vm(vmid)
        except BaseException as e:
            logger.error(f"Failed to destroy VM {vmid} during cleanup: {e!r}")
            return RecoveryOutcome.FAILED

        logger.info(f"VM {vmid} removed")
        return RecoveryOutcome.CLEANED
