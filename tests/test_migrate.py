"""Tests for config migration between bundles."""

import pytest
from dotenv import dotenv_values

from warden.config import Config
from warden.bundles import BundleStore
from warden.migrate import ConfigMigrator, MigrationError, AUTH_URL_PLACEHOLDER, UI_BRANDING
from warden.watcher import Version

OLD = Version(0, 5, 9)
NEW = Version(0, 5, 10)


class TestConfigMigrator:
    """Test copying and patching validator configuration."""

    @pytest.fixture
    def bundles(self, tmp_path):
        bundles = BundleStore(Config(canton_dir=tmp_path))
        for version in (OLD, NEW):
            bundles.validator_dir(version).mkdir(parents=True)
        return bundles

    @pytest.fixture
    def migrator(self, bundles):
        return ConfigMigrator(bundles)

    def write_old_config(self, bundles):
        old_dir = bundles.validator_dir(OLD)
        (old_dir / ".env").write_text("IMAGE_TAG=0.5.9\nPARTY_HINT=acme-1\nAUTH_URL=\n")
        (old_dir / "nginx.conf").write_text("server {}\n")
        (old_dir / "nginx").mkdir()
        (old_dir / "nginx" / ".htpasswd").write_text("admin:hash\n")

    def test_migrate_copies_identity_and_auth(self, migrator, bundles):
        self.write_old_config(bundles)

        migrator.migrate_config(OLD, NEW)

        new_dir = bundles.validator_dir(NEW)
        assert "PARTY_HINT=acme-1" in (new_dir / ".env").read_text()
        assert (new_dir / "nginx.conf").read_text() == "server {}\n"
        assert (new_dir / "nginx" / ".htpasswd").read_text() == "admin:hash\n"

    def test_migrate_without_old_env(self, migrator):
        with pytest.raises(MigrationError):
            migrator.migrate_config(OLD, NEW)

    def test_migrate_without_nginx_conf(self, migrator, bundles):
        (bundles.validator_dir(OLD) / ".env").write_text("PARTY_HINT=acme-1\n")

        migrator.migrate_config(OLD, NEW)

        assert (bundles.validator_dir(NEW) / ".env").exists()
        assert not (bundles.validator_dir(NEW) / "nginx.conf").exists()

    def test_patch_env(self, migrator, bundles):
        self.write_old_config(bundles)
        migrator.migrate_config(OLD, NEW)

        migrator.patch_config(NEW)

        env = dotenv_values(bundles.validator_dir(NEW) / ".env", interpolate=False)
        assert env['IMAGE_TAG'] == "0.5.10"
        assert env['PARTY_HINT'] == "acme-1"
        assert env['AUTH_URL'] == AUTH_URL_PLACEHOLDER
        assert env['COMPOSE_FILE'] == "compose.yaml:compose-disable-auth.yaml"
        for key, value in UI_BRANDING.items():
            assert env[key] == value

    def test_patch_keeps_existing_values(self, migrator, bundles):
        env_file = bundles.validator_dir(NEW) / ".env"
        env_file.write_text(
            "AUTH_URL=https://auth.acme.com\n"
            "COMPOSE_FILE=compose.yaml:compose-extra.yaml\n"
            "SPLICE_APP_UI_NETWORK_NAME=Acme Net\n"
        )

        migrator.patch_config(NEW)

        env = dotenv_values(env_file, interpolate=False)
        assert env['AUTH_URL'] == "https://auth.acme.com"
        assert env['COMPOSE_FILE'] == "compose.yaml:compose-extra.yaml:compose-disable-auth.yaml"
        assert env['SPLICE_APP_UI_NETWORK_NAME'] == "Acme Net"

    def test_patch_is_idempotent(self, migrator, bundles):
        env_file = bundles.validator_dir(NEW) / ".env"
        env_file.write_text("IMAGE_TAG=0.5.9\n")
        compose = bundles.validator_dir(NEW) / "compose.yaml"
        compose.write_text('ports:\n  - "${HOST_BIND_IP:-0.0.0.0}:80:80"\n')

        migrator.patch_config(NEW)
        env_once, compose_once = env_file.read_text(), compose.read_text()
        migrator.patch_config(NEW)

        assert env_file.read_text() == env_once
        assert compose.read_text() == compose_once
        assert '"${HOST_BIND_IP:-127.0.0.1}:8888:80"' in compose_once

    def test_patch_without_env(self, migrator):
        with pytest.raises(MigrationError):
            migrator.patch_config(NEW)
