"""Container lifecycle for the validator docker-compose stack."""

import os
import json
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional
from dataclasses import dataclass

from .config import Config, IdentityConfig
from .watcher import Version

logger = logging.getLogger(__name__)

# Role -> container name suffix. Compose prefixes differ per network.
ROLES = {
    'validator': 'validator-1',
    'participant': 'participant-1',
    'nginx': 'nginx-1',
}


class ContainerError(Exception):
    """A container runtime operation failed."""


@dataclass(frozen=True)
class ContainerStatus:
    """Runtime state of one container."""
    name: str
    running: bool
    health: str = ""

    @property
    def healthy(self) -> bool:
        return self.running and self.health == "healthy"


IdentityParams = IdentityConfig


class ContainerLifecycle(ABC):
    """Start, stop and inspect the managed processes of one bundle."""

    @abstractmethod
    def start(self, version: Version, identity: IdentityParams) -> None:
        """Start the stack of version; raises ContainerError on failure."""

    @abstractmethod
    def stop(self, version: Version) -> bool:
        """Stop the stack of version. Best effort."""

    @abstractmethod
    def pull(self, version: Version) -> None:
        """Fetch the runtime images of version; raises ContainerError on failure."""

    @abstractmethod
    def find(self, role: str) -> Optional[str]:
        """Name of the container playing role, or None."""

    @abstractmethod
    def status(self, name: str) -> ContainerStatus:
        """Running and health state of a container."""

    @abstractmethod
    def image_version(self, name: str) -> Optional[Version]:
        """Version from the container's image tag."""

    @abstractmethod
    def restart(self, name: str, running: bool) -> bool:
        """Start a stopped container or restart a running one."""

    def is_healthy(self, role: str = 'validator') -> bool:
        name = self.find(role)
        if not name:
            return False
        return self.status(name).healthy


class DockerLifecycle(ContainerLifecycle):
    """Drives the bundle's start/stop scripts and the docker CLI."""

    START_TIMEOUT = 600
    STOP_TIMEOUT = 300
    PULL_TIMEOUT = 1800
    INSPECT_TIMEOUT = 10

    def __init__(self, config: Config, bundles):
        self.config = config
        self.bundles = bundles

    def _env(self, version: Version) -> Dict[str, str]:
        env = os.environ.copy()
        env['IMAGE_TAG'] = str(version)
        return env

    def _run(self, args: List[str], timeout: int, cwd: Optional[Path] = None,
             env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            args,
            cwd=str(cwd) if cwd else None,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout
        )

    def start(self, version: Version, identity: IdentityParams) -> None:
        """Start the validator stack with the node's identity parameters."""
        validator_dir = self.bundles.validator_dir(version)
        logger.info(f"Starting v{version}")

        args = [
            './start.sh',
            '-s', identity.sv_url,
            '-c', identity.scan_url,
            '-p', identity.party_hint,
            '-m', str(identity.migration_id),
            '-o', identity.onboarding_secret,
            '-w',
        ]
        try:
            result = self._run(args, self.START_TIMEOUT, cwd=validator_dir, env=self._env(version))
        except (subprocess.TimeoutExpired, OSError) as e:
            raise ContainerError(f"start.sh for v{version} failed: {e}") from e

        if result.returncode != 0:
            raise ContainerError(f"start.sh for v{version} exited {result.returncode}: {result.stderr.strip()}")
        logger.info(f"v{version} started")

    def stop(self, version: Version) -> bool:
        """Stop the stack; falls back to docker compose down."""
        validator_dir = self.bundles.validator_dir(version)
        if not validator_dir.is_dir():
            logger.warning(f"Validator dir not found: {validator_dir}")
            return False

        logger.info(f"Stopping v{version}")
        env = self._env(version)
        for args in (['./stop.sh'], ['docker', 'compose', 'down']):
            try:
                result = self._run(args, self.STOP_TIMEOUT, cwd=validator_dir, env=env)
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.warning(f"{' '.join(args)} failed: {e}")
                continue
            if result.returncode == 0:
                logger.info(f"v{version} stopped")
                return True
            logger.warning(f"{' '.join(args)} exited {result.returncode}")

        logger.error(f"Could not stop v{version}")
        return False

    def pull(self, version: Version) -> None:
        """Pull images for version while the running stack keeps serving."""
        validator_dir = self.bundles.validator_dir(version)
        logger.info(f"Pre-pulling images for v{version}")
        try:
            result = self._run(['docker', 'compose', '--env-file', '.env', 'pull'],
                               self.PULL_TIMEOUT, cwd=validator_dir, env=self._env(version))
        except (subprocess.TimeoutExpired, OSError) as e:
            raise ContainerError(f"Image pull for v{version} failed: {e}") from e

        if result.returncode != 0:
            raise ContainerError(f"Image pull for v{version} failed: {result.stderr.strip()[-500:]}")
        logger.info("Images pulled")

    def find(self, role: str) -> Optional[str]:
        """Find a container by name suffix, including stopped ones."""
        suffix = ROLES[role]
        try:
            result = self._run(['docker', 'ps', '-a', '--format', '{{.Names}}'], self.INSPECT_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Failed to list containers: {e}")
            return None

        for name in result.stdout.split():
            if name.endswith(suffix) and 'postgres' not in name:
                return name
        return None

    def status(self, name: str) -> ContainerStatus:
        try:
            result = self._run(['docker', 'inspect', '--format', '{{json .State}}', name],
                               self.INSPECT_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Failed to inspect {name}: {e}")
            return ContainerStatus(name, running=False, health="not_found")

        if result.returncode != 0:
            return ContainerStatus(name, running=False, health="not_found")

        try:
            state = json.loads(result.stdout)
        except ValueError:
            return ContainerStatus(name, running=False, health="not_found")

        health = (state.get('Health') or {}).get('Status', "")
        return ContainerStatus(name, running=bool(state.get('Running')), health=health)

    def image_version(self, name: str) -> Optional[Version]:
        try:
            result = self._run(['docker', 'inspect', '--format', '{{.Config.Image}}', name],
                               self.INSPECT_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Failed to inspect {name}: {e}")
            return None

        if result.returncode != 0:
            return None
        image = result.stdout.strip()
        # Only the tag, not registry ports or path segments
        tag = image.rsplit(':', 1)[-1] if ':' in image else ""
        return Version.parse(tag)

    def restart(self, name: str, running: bool) -> bool:
        action = 'restart' if running else 'start'
        try:
            result = self._run(['docker', action, name], self.STOP_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"docker {action} {name} failed: {e}")
            return False
        return result.returncode == 0
