"""Version resolution for the deployed validator and the Canton network."""

import re
import logging
import requests
from typing import Optional, Tuple
from datetime import datetime
from dataclasses import dataclass

from .config import Config

logger = logging.getLogger(__name__)

VERSION_RE = re.compile(r'(\d+)\.(\d+)\.(\d+)')


@dataclass(frozen=True, order=True)
class Version:
    """A (major, minor, patch) release version."""
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional['Version']:
        """Parse the first x.y.z triple found in text, e.g. a tag or image reference."""
        if not text:
            return None
        match = VERSION_RE.search(str(text))
        if not match:
            return None
        return cls(*(int(p) for p in match.groups()))

    @property
    def line(self) -> Tuple[int, int]:
        """The major.minor release line."""
        return (self.major, self.minor)

    def same_line(self, other: 'Version') -> bool:
        return self.line == other.line

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class NetworkVersion:
    """Resolved network version plus the endpoint that answered."""
    version: Version
    source: str


class VersionWatcher:
    """Resolves the deployed version and the version the network runs."""

    RELEASE_TAG_URL = "https://api.github.com/repos/{repo}/releases/tags/v{version}"

    def __init__(self, config: Config, containers=None, bundles=None, timeout: float = 10.0):
        self.config = config
        self.containers = containers
        self.bundles = bundles
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'Canton-Warden/1.0'
        })

    def resolve_deployed_version(self) -> Optional[Version]:
        """Return the running version, or None when it cannot be determined.

        The current pointer written on commit is authoritative; the running
        validator's image tag is only consulted when no pointer exists.
        """
        if self.bundles is not None:
            current = self.bundles.current_version()
            if current:
                return current

        if self.containers is None:
            return None

        name = self.containers.find('validator')
        if not name:
            logger.warning("Validator container is not running")
            return None

        version = self.containers.image_version(name)
        if version is None:
            logger.warning(f"Cannot read image version of {name}")
        return version

    def resolve_network_version(self) -> Optional[NetworkVersion]:
        """Probe the configured endpoints in order; fall back to the release catalog.

        Returns None when nothing answered. Callers must treat that as
        "unknown", never as "up to date".
        """
        endpoints = self.config.endpoints

        for url in endpoints.primary:
            version = self._fetch_version(url, 'version')
            if version:
                logger.info(f"Network version {version} from {url}")
                return NetworkVersion(version, url)

        for scan_url in endpoints.scan:
            url = f"{scan_url.rstrip('/')}/api/scan/version"
            version = self._fetch_version(url, 'version')
            if version:
                logger.info(f"Network version {version} from {scan_url}")
                return NetworkVersion(version, scan_url)

        if endpoints.catalog:
            version = self._fetch_version(endpoints.catalog, 'tag_name')
            if version:
                logger.warning(f"No network endpoint reachable, using release catalog: {version}")
                return NetworkVersion(version, endpoints.catalog)

        logger.error(f"Cannot detect network version for {self.config.network}")
        return None

    def _fetch_version(self, url: str, key: str) -> Optional[Version]:
        """GET url and parse a version from the JSON field key."""
        try:
            response = self.session.get(url, timeout=self.timeout)
            if response.status_code != 200:
                logger.debug(f"{url} answered {response.status_code}")
                return None
            data = response.json()
        except requests.exceptions.Timeout:
            logger.debug(f"Timeout querying {url}")
            return None
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug(f"Error querying {url}: {e}")
            return None

        if not isinstance(data, dict):
            return None
        return Version.parse(data.get(key))

    def release_published_at(self, version: Version) -> Optional[datetime]:
        """Publication time of a release, or None when unknown."""
        url = self.RELEASE_TAG_URL.format(repo=self.config.upgrade.github_repo, version=version)
        try:
            response = self.session.get(url, timeout=self.timeout)
            if response.status_code != 200:
                logger.warning(f"GitHub API error for v{version}: {response.status_code}")
                return None
            published = response.json().get('published_at')
            if not published:
                return None
            return datetime.fromisoformat(published.replace('Z', '+00:00'))
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Cannot get release date for v{version}: {e}")
            return None
