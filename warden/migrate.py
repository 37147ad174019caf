"""Carry node identity and proxy auth from one bundle to the next."""

import shutil
import logging
from pathlib import Path

from dotenv import dotenv_values, set_key

from .bundles import BundleStore
from .watcher import Version

logger = logging.getLogger(__name__)

AUTH_URL_PLACEHOLDER = "https://unsafe.auth"
AUTH_OVERLAY = "compose-disable-auth.yaml"
DEFAULT_COMPOSE_FILE = f"compose.yaml:{AUTH_OVERLAY}"

# The wallet UI refuses to load when any of these is missing
UI_BRANDING = {
    'SPLICE_APP_UI_NETWORK_NAME': "Canton Network",
    'SPLICE_APP_UI_NETWORK_FAVICON_URL': "https://www.canton.network/hubfs/cn-favicon-05%201-1.png",
    'SPLICE_APP_UI_AMULET_NAME': "Canton Coin",
    'SPLICE_APP_UI_AMULET_NAME_ACRONYM': "CC",
    'SPLICE_APP_UI_NAME_SERVICE_NAME': "Canton Name Service",
    'SPLICE_APP_UI_NAME_SERVICE_NAME_ACRONYM': "CNS",
}

COMPOSE_PORT_REWRITES = (
    ('"${HOST_BIND_IP:-0.0.0.0}:80:80"', '"${HOST_BIND_IP:-127.0.0.1}:8888:80"'),
    ('"${HOST_BIND_IP:-127.0.0.1}:80:80"', '"${HOST_BIND_IP:-127.0.0.1}:8888:80"'),
    ('"0.0.0.0:80:80"', '"127.0.0.1:8888:80"'),
    ('"127.0.0.1:80:80"', '"127.0.0.1:8888:80"'),
)


class MigrationError(Exception):
    """Configuration could not be carried over to the new bundle."""


class ConfigMigrator:
    """Copies and patches validator configuration between bundles."""

    def __init__(self, bundles: BundleStore):
        self.bundles = bundles

    def migrate_config(self, old: Version, new: Version):
        """Copy .env and the nginx auth files from old's bundle into new's."""
        old_dir = self.bundles.validator_dir(old)
        new_dir = self.bundles.validator_dir(new)

        if not (old_dir / ".env").is_file():
            raise MigrationError(f"Previous version env file not found: {old_dir / '.env'}")
        if not new_dir.is_dir():
            raise MigrationError(f"New version dir not found: {new_dir}")

        logger.info(f"Migrating config from {old} to {new}")
        try:
            shutil.copy2(old_dir / ".env", new_dir / ".env")

            if (old_dir / "nginx.conf").is_file():
                shutil.copy2(old_dir / "nginx.conf", new_dir / "nginx.conf")
                logger.info("nginx.conf copied")
            else:
                logger.warning("nginx.conf not found in old version, keeping the bundled one")

            # nginx/ holds .htpasswd
            if (old_dir / "nginx").is_dir():
                shutil.copytree(old_dir / "nginx", new_dir / "nginx", dirs_exist_ok=True)
                logger.info("nginx/ dir copied (incl. .htpasswd)")
        except OSError as e:
            raise MigrationError(f"Copying config to {new} failed: {e}") from e

        logger.info("Config migrated")

    def patch_config(self, version: Version):
        """Rewrite the new bundle's .env and compose file for version. Idempotent."""
        validator_dir = self.bundles.validator_dir(version)
        env_file = validator_dir / ".env"
        if not env_file.is_file():
            raise MigrationError(f"Env file not found: {env_file}")

        logger.info(f"Patching .env for {version}")
        try:
            self._patch_env(env_file, version)
            self._patch_compose(validator_dir / "compose.yaml")
        except OSError as e:
            raise MigrationError(f"Patching config for {version} failed: {e}") from e

    def _patch_env(self, env_file: Path, version: Version):
        current = dotenv_values(env_file, interpolate=False)

        def ensure(key: str, value: str):
            if current.get(key) != value:
                set_key(str(env_file), key, value, quote_mode="never")
                current[key] = value

        ensure('IMAGE_TAG', str(version))

        if not (current.get('AUTH_URL') or "").strip('"\' '):
            ensure('AUTH_URL', AUTH_URL_PLACEHOLDER)

        compose_file = current.get('COMPOSE_FILE') or ""
        if not compose_file:
            ensure('COMPOSE_FILE', DEFAULT_COMPOSE_FILE)
        elif AUTH_OVERLAY not in compose_file.split(':'):
            ensure('COMPOSE_FILE', f"{compose_file}:{AUTH_OVERLAY}")

        added = [key for key in UI_BRANDING if not current.get(key)]
        for key in added:
            ensure(key, UI_BRANDING[key])
        if added:
            logger.info(f"Added UI branding vars: {', '.join(added)}")

    def _patch_compose(self, compose_file: Path):
        """Bind nginx to localhost:8888 instead of the public port 80."""
        if not compose_file.is_file():
            logger.warning("compose.yaml not found, skipping port patch")
            return

        text = compose_file.read_text()
        patched = text
        for old, new in COMPOSE_PORT_REWRITES:
            patched = patched.replace(old, new)

        if patched != text:
            compose_file.write_text(patched)
            logger.info("compose.yaml patched (port 8888)")
