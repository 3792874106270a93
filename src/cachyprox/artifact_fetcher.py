"""
Acquire and verify the installation ISO.

Downloads land in ``<name>.tmp`` files next to the cache entry and are only
renamed into place once both the image and its ``.sha256`` sidecar arrived,
so no reader ever sees a partial file under the canonical name.
"""

import hashlib
import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Iterable, Optional

import requests
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TimeRemainingColumn, TransferSpeedColumn

from cachyprox.config import Config
from cachyprox.exceptions import FetchError, FetchErrorKind
from cachyprox.models import Artifact, ArtifactState

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
EXTERNAL_TOOLS = ("wget", "curl")


def default_artifact() -> Artifact:
    """The pinned CachyOS desktop ISO and its published checksum."""
    url = Config.iso_url()
    return Artifact(name=Config.iso_name(), url=url, checksum_url=f"{url}.sha256")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def read_expected_digest(checksum_path: Path, filename: str) -> str:
    """Extract the digest for ``filename`` from a sha256sum-style sidecar."""
    entries = []
    for line in Path(checksum_path).read_text().splitlines():
        parts = line.split()
        if not parts:
            continue
        digest = parts[0].lower()
        name = parts[1].lstrip("*") if len(parts) > 1 else None
        entries.append((digest, name))

    for digest, name in entries:
        if name == filename:
            return digest
    if len(entries) == 1:
        return entries[0][0]
    raise ValueError(f"no checksum for {filename} in {checksum_path}")


def human_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


class ArtifactFetcher:
    """Downloads, verifies and caches an installation image."""

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        min_size_bytes: Optional[int] = None,
        verify_cached: Optional[bool] = None,
        download_tool: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
        show_progress: bool = True,
    ) -> None:
        self.cache_dir = Path(cache_dir or Config.ISO_CACHE_DIR)
        self.min_size_bytes = Config.ISO_MIN_SIZE if min_size_bytes is None else min_size_bytes
        self.verify_cached = Config.VERIFY_CACHED_ISO if verify_cached is None else verify_cached
        self.download_tool = (download_tool or Config.DOWNLOAD_TOOL).strip().lower()
        self.session = session or requests.Session()
        self.timeout = timeout or Config.DOWNLOAD_TIMEOUT
        self.show_progress = show_progress

    def cache_state(self, artifact: Artifact) -> ArtifactState:
        path = artifact.local_path(self.cache_dir)
        if not path.is_file():
            if Path(f"{path}.tmp").is_file():
                return ArtifactState.DOWNLOADING
            return ArtifactState.ABSENT
        if path.stat().st_size < self.min_size_bytes:
            return ArtifactState.CACHED_CORRUPT
        return ArtifactState.CACHED_VALID

    def fetch(self, artifact: Artifact, cancel_event: Optional[threading.Event] = None) -> Path:
        """Return the path of a verified local copy of ``artifact``."""
        iso_path = artifact.local_path(self.cache_dir)
        checksum_path = artifact.checksum_path(self.cache_dir)

        state = self.cache_state(artifact)
        if state is ArtifactState.CACHED_CORRUPT:
            size = iso_path.stat().st_size
            logger.warning(f"Found corrupted ISO (size: {size} bytes), deleting...")
            self._purge(iso_path, checksum_path)
        elif state is ArtifactState.DOWNLOADING:
            logger.warning(f"Discarding incomplete download {iso_path}.tmp")
        elif state is ArtifactState.CACHED_VALID:
            if not self.verify_cached:
                logger.info(f"ISO already exists (size: {human_size(iso_path.stat().st_size)}): {iso_path}")
                return iso_path
            if self._cached_copy_verifies(iso_path, checksum_path, artifact.name):
                logger.info(f"Cached ISO verified: {iso_path}")
                return iso_path
            logger.warning(f"Cached ISO {iso_path} failed verification, downloading again")
            self._purge(iso_path, checksum_path)

        tool = self._select_tool()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        iso_tmp = Path(f"{iso_path}.tmp")
        checksum_tmp = Path(f"{checksum_path}.tmp")

        logger.info(f"Downloading {artifact.name} from: {artifact.url}")
        try:
            self._download(tool, artifact.url, iso_tmp, cancel_event)
            self._download(tool, artifact.checksum_url, checksum_tmp, cancel_event)
        except BaseException:
            self._purge(iso_tmp, checksum_tmp)
            raise

        os.replace(iso_tmp, iso_path)
        os.replace(checksum_tmp, checksum_path)

        logger.info("Verifying download...")
        try:
            expected = read_expected_digest(checksum_path, artifact.name)
        except (OSError, ValueError) as e:
            self._purge(iso_path, checksum_path)
            raise FetchError(FetchErrorKind.CHECKSUM_MISMATCH, f"Unreadable checksum file: {e}")
        actual = sha256_file(iso_path)
        if actual != expected:
            self._purge(iso_path, checksum_path)
            raise FetchError(
                FetchErrorKind.CHECKSUM_MISMATCH,
                f"ISO checksum verification failed (expected {expected}, got {actual}). Download corrupted.",
            )

        logger.info(f"Download verified: {human_size(iso_path.stat().st_size)}")
        return iso_path

    def _cached_copy_verifies(self, iso_path: Path, checksum_path: Path, filename: str) -> bool:
        try:
            return sha256_file(iso_path) == read_expected_digest(checksum_path, filename)
        except (OSError, ValueError):
            return False

    @staticmethod
    def _purge(*paths: Path) -> None:
        for path in paths:
            try:
                Path(path).unlink()
            except FileNotFoundError:
                pass

    def _select_tool(self) -> str:
        if self.download_tool == "requests":
            return "requests"
        if self.download_tool == "auto":
            candidates: Iterable[str] = EXTERNAL_TOOLS
        elif self.download_tool in EXTERNAL_TOOLS:
            candidates = (self.download_tool,)
        else:
            raise FetchError(FetchErrorKind.NO_DOWNLOAD_TOOL, f"Unknown download tool '{self.download_tool}'")
        for tool in candidates:
            if shutil.which(tool):
                return tool
        raise FetchError(
            FetchErrorKind.NO_DOWNLOAD_TOOL,
            f"Neither {' nor '.join(candidates)} found. Please install one of them.",
        )

    def _download(self, tool: str, url: str, dest: Path, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise FetchError(FetchErrorKind.CANCELLED, "Download cancelled")
        if tool == "requests":
            self._download_requests(url, dest, cancel_event)
        else:
            self._download_external(tool, url, dest)

    def _download_requests(self, url: str, dest: Path, cancel_event: Optional[threading.Event]) -> None:
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(FetchErrorKind.NETWORK_FAILURE, f"Failed to download {url}: {e}")

        total = int(response.headers.get("content-length", 0)) or None
        progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            disable=not self.show_progress,
        )
        try:
            with progress, open(dest, "wb") as out:
                task = progress.add_task(dest.name.removesuffix(".tmp"), total=total)
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise FetchError(FetchErrorKind.CANCELLED, "Download cancelled")
                    if chunk:
                        out.write(chunk)
                        progress.update(task, advance=len(chunk))
        except requests.RequestException as e:
            raise FetchError(FetchErrorKind.NETWORK_FAILURE, f"Failed to download {url}: {e}")
        except OSError as e:
            raise FetchError(FetchErrorKind.NETWORK_FAILURE, f"Failed to write {dest}: {e}")
        finally:
            response.close()

    def _download_external(self, tool: str, url: str, dest: Path) -> None:
        if tool == "wget":
            argv = ["wget", "--progress=bar:force:noscroll", "-O", str(dest), url]
        else:
            argv = ["curl", "-fL", "--progress-bar", "-o", str(dest), url]
        logger.debug(f"Running: {' '.join(argv)}")
        result = subprocess.run(argv)
        if result.returncode != 0:
            raise FetchError(
                FetchErrorKind.NETWORK_FAILURE, f"Failed to download {url} ({tool} exit status {result.returncode})"
            )
