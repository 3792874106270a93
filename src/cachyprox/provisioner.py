"""
Run-wrapper for a single provisioning attempt.

This is the one place that owns FailureRecovery: interruption and fatal step
failures both leave through the same ``with`` block, so cleanup runs once.
"""

import contextlib
import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Tuple

from cachyprox.artifact_fetcher import ArtifactFetcher
from cachyprox.config import Config
from cachyprox.config_resolver import ConfigResolver, RawConfig
from cachyprox.exceptions import Interrupted
from cachyprox.models import Artifact, ProvisioningResult, ProvisioningSpec
from cachyprox.orchestrator import ProvisioningOrchestrator
from cachyprox.recovery import FailureRecovery
from cachyprox.resource_store import ResourceStore

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def termination_as_interrupt() -> Iterator[None]:
    """Turn SIGTERM into :class:`Interrupted` for the duration of the block."""

    def _handler(signum: int, frame: Any) -> None:
        raise Interrupted(f"Script interrupted ({signal.Signals(signum).name})")

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)


class Provisioner:
    """Resolves, fetches and orchestrates one VM, with rollback on failure."""

    def __init__(
        self,
        store: ResourceStore,
        fetcher: ArtifactFetcher,
        resolver: Optional[ConfigResolver] = None,
        reap_wait_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.resolver = resolver or ConfigResolver(store)
        self.reap_wait_seconds = Config.REAP_WAIT_SECONDS if reap_wait_seconds is None else reap_wait_seconds
        self.sleep = sleep
        self.last_recovery: Optional[FailureRecovery] = None

    def provision(self, raw: RawConfig, artifact: Artifact, parallel_fetch: bool = False) -> ProvisioningResult:
        """Resolve ``raw``, fetch ``artifact`` and create the VM."""
        with termination_as_interrupt():
            try:
                spec, iso_path = self._prepare(raw, artifact, parallel_fetch)
                return self.run(spec, iso_path)
            except KeyboardInterrupt:
                raise Interrupted("Script interrupted")

    def prepare(
        self, raw: RawConfig, artifact: Artifact, parallel_fetch: bool = False
    ) -> Tuple[ProvisioningSpec, Path]:
        """Resolve ``raw`` and fetch ``artifact`` without touching any VM."""
        with termination_as_interrupt():
            try:
                return self._prepare(raw, artifact, parallel_fetch)
            except KeyboardInterrupt:
                raise Interrupted("Script interrupted")

    def provision_spec(
        self, spec: ProvisioningSpec, artifact: Artifact, iso_path: Optional[Path] = None
    ) -> ProvisioningResult:
        """Create the VM for an already resolved spec, fetching ``artifact`` unless ``iso_path`` is given."""
        with termination_as_interrupt():
            try:
                if iso_path is None:
                    iso_path = self.fetcher.fetch(artifact)
                return self.run(spec, iso_path)
            except KeyboardInterrupt:
                raise Interrupted("Script interrupted")

    def _prepare(self, raw: RawConfig, artifact: Artifact, parallel_fetch: bool) -> Tuple[ProvisioningSpec, Path]:
        if not parallel_fetch:
            spec = self.resolver.resolve(raw)
            return spec, self.fetcher.fetch(artifact)

        cancel = threading.Event()
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="fetch") as pool:
            future = pool.submit(self.fetcher.fetch, artifact, cancel)
            try:
                spec = self.resolver.resolve(raw)
                return spec, future.result()
            except BaseException:
                # Executor shutdown waits for the download to stop
                cancel.set()
                raise

    def run(self, spec: ProvisioningSpec, iso_path: Path) -> ProvisioningResult:
        """Run the orchestrator inside a fresh FailureRecovery."""
        recovery = FailureRecovery(self.store, wait_seconds=self.reap_wait_seconds, sleep=self.sleep)
        self.last_recovery = recovery
        orchestrator = ProvisioningOrchestrator(
            self.store, recovery=recovery, reap_wait_seconds=self.reap_wait_seconds, sleep=self.sleep
        )
        with recovery:
            return orchestrator.run(spec, str(iso_path))
