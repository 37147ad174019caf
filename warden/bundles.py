"""Versioned bundle directories and the current-version pointer."""

import os
import shutil
import logging
import subprocess
import tempfile
import requests
from pathlib import Path
from typing import List, Optional

from .config import Config
from .watcher import Version

logger = logging.getLogger(__name__)

BUNDLE_URL = "https://github.com/{repo}/releases/download/v{version}/{version}_splice-node.tar.gz"

# Present only once an extraction finished
VALIDATOR_SUBPATH = Path("splice-node") / "docker-compose" / "validator"


class DownloadError(Exception):
    """The release archive could not be fetched."""


class ExtractError(Exception):
    """The release archive could not be unpacked."""


class ArtifactFetcher:
    """Downloads release archives."""

    def __init__(self, config: Config, timeout: int = 30):
        self.config = config
        self.timeout = timeout

    def url_for(self, version: Version) -> str:
        return BUNDLE_URL.format(repo=self.config.upgrade.github_repo, version=version)

    def fetch(self, version: Version, dest_dir: Path) -> Path:
        """Download the archive for version into dest_dir and return its path."""
        url = self.url_for(version)
        archive = dest_dir / f"{version}_splice-node.tar.gz"
        logger.info(f"Downloading v{version} from {url}")

        try:
            response = requests.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()

            total_size = int(response.headers.get('content-length', 0))
            downloaded = 0

            with open(archive, 'wb') as f:
                for chunk in response.iter_content(chunk_size=65536):
                    if chunk:
                        f.write(chunk)
                        downloaded += len(chunk)
                        if total_size > 0:
                            logger.debug(f"Download progress: {downloaded / total_size * 100:.1f}%")
        except (requests.exceptions.RequestException, OSError) as e:
            if archive.exists():
                archive.unlink()
            raise DownloadError(f"Download failed: {url}: {e}") from e

        return archive


class BundleStore:
    """Immutable per-version bundle directories under the Canton directory."""

    def __init__(self, config: Config, fetcher: Optional[ArtifactFetcher] = None):
        self.config = config
        self.root = config.canton_dir
        self.fetcher = fetcher or ArtifactFetcher(config)

    @property
    def current_link(self) -> Path:
        return self.root / "current"

    def bundle_dir(self, version: Version) -> Path:
        return self.root / str(version)

    def validator_dir(self, version: Version) -> Path:
        return self.bundle_dir(version) / VALIDATOR_SUBPATH

    def is_complete(self, version: Version) -> bool:
        return self.validator_dir(version).is_dir()

    def ensure_bundle(self, version: Version) -> Path:
        """Make sure version is unpacked locally; downloads at most once."""
        if self.is_complete(version):
            logger.info(f"Bundle {version} already downloaded")
            return self.bundle_dir(version)

        target = self.bundle_dir(version)
        try:
            self.root.mkdir(parents=True, exist_ok=True)

            # Unpack into a staging dir on the same filesystem and rename it in,
            # so an interrupted run never leaves a complete-looking bundle.
            with tempfile.TemporaryDirectory(prefix=f".{version}-", dir=self.root) as staging:
                staging_path = Path(staging)
                archive = self.fetcher.fetch(version, staging_path)
                unpack_dir = staging_path / "bundle"
                unpack_dir.mkdir()
                self._extract(archive, unpack_dir)

                if not (unpack_dir / VALIDATOR_SUBPATH).is_dir():
                    raise ExtractError(f"Archive for v{version} has no {VALIDATOR_SUBPATH}")

                if target.exists():
                    logger.warning(f"Removing incomplete bundle at {target}")
                    shutil.rmtree(target)
                os.replace(unpack_dir, target)
        except OSError as e:
            raise ExtractError(f"Installing bundle {version} into {self.root} failed: {e}") from e

        logger.info(f"Bundle extracted to {target}")
        return target

    def _extract(self, archive: Path, dest: Path):
        logger.info("Extracting...")
        try:
            subprocess.run(
                ['tar', '-xzf', str(archive), '-C', str(dest)],
                check=True,
                capture_output=True,
                timeout=600
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise ExtractError(f"Extracting {archive.name} failed: {e}") from e

    def current_version(self) -> Optional[Version]:
        """Version the current pointer names, or None."""
        link = self.current_link
        if not link.is_symlink():
            return None
        return Version.parse(Path(os.readlink(link)).name)

    def set_current(self, version: Version):
        """Atomically point current at version's bundle."""
        tmp_link = self.root / ".current.tmp"
        if tmp_link.is_symlink() or tmp_link.exists():
            tmp_link.unlink()
        tmp_link.symlink_to(self.bundle_dir(version))
        os.replace(tmp_link, self.current_link)
        logger.info(f"Symlink updated: {self.current_link} -> {version}")

    def list_versions(self) -> List[Version]:
        """All complete bundles, oldest first."""
        if not self.root.is_dir():
            return []
        versions = []
        for entry in self.root.iterdir():
            if entry.is_symlink() or not entry.is_dir():
                continue
            version = Version.parse(entry.name)
            if version and str(version) == entry.name and self.is_complete(version):
                versions.append(version)
        return sorted(versions)
