"""Tests for the command line interface."""

import json
import pytest
from unittest.mock import Mock, patch
from click.testing import CliRunner

from warden.__main__ import cli
from warden.health import HealthProbe
from warden.runner import UpgradeOutcome, UpgradeResult
from warden.state import IncidentState, StatusStore
from warden.watcher import Version


class TestCLI:

    @pytest.fixture
    def env_file(self, tmp_path):
        env_file = tmp_path / "toolkit.conf"
        env_file.write_text(f"CANTON_DIR={tmp_path}\nMODE=manual\nNETWORK=testnet\n")
        return env_file

    def invoke(self, tmp_path, env_file, *args, **kwargs):
        return CliRunner().invoke(
            cli, ['--config', str(tmp_path / "warden.yaml"), '--env-file', str(env_file), *args],
            **kwargs
        )

    def test_invalid_config_exits(self, tmp_path):
        env_file = tmp_path / "toolkit.conf"
        env_file.write_text(f"CANTON_DIR={tmp_path / 'missing'}\n")

        result = self.invoke(tmp_path, env_file, 'history')

        assert result.exit_code == 1

    def test_auto_upgrade_disabled_in_manual_mode(self, tmp_path, env_file):
        with patch('warden.__main__.UpgradeOrchestrator.run') as mock_run:
            result = self.invoke(tmp_path, env_file, 'auto-upgrade')

        assert result.exit_code == 0
        mock_run.assert_not_called()

    def test_upgrade_with_target(self, tmp_path, env_file):
        outcome = UpgradeOutcome(UpgradeResult.COMMITTED, Version(0, 5, 9), Version(0, 5, 10))
        with patch('warden.__main__.UpgradeOrchestrator.run', return_value=outcome) as mock_run:
            result = self.invoke(tmp_path, env_file, 'upgrade', '--target', '0.5.10', '--yes')

        assert result.exit_code == 0
        assert "0.5.9 → 0.5.10" in result.output
        args, kwargs = mock_run.call_args
        assert kwargs['target'] == Version(0, 5, 10)
        assert kwargs['backup'] is True

    def test_upgrade_invalid_target(self, tmp_path, env_file):
        result = self.invoke(tmp_path, env_file, 'upgrade', '--target', 'latest', '--yes')

        assert result.exit_code == 1

    def test_upgrade_failure_exit_code(self, tmp_path, env_file):
        outcome = UpgradeOutcome(UpgradeResult.ROLLED_BACK, Version(0, 5, 9), Version(0, 5, 10),
                                 message="unhealthy after upgrade")
        with patch('warden.__main__.UpgradeOrchestrator.run', return_value=outcome):
            result = self.invoke(tmp_path, env_file, 'upgrade', '--no-backup', '--yes')

        assert result.exit_code == 1

    def test_history_json(self, tmp_path, env_file):
        result = self.invoke(tmp_path, env_file, 'history', '--format', 'json')

        assert result.exit_code == 0
        assert result.output.strip().endswith("[]")

    def test_init(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CANTON_DIR", str(tmp_path / "canton"))
        env_file = tmp_path / "canton" / "toolkit.conf"

        result = self.invoke(tmp_path, env_file, 'init')

        assert result.exit_code == 0
        assert (tmp_path / "warden.yaml").exists()
        assert (tmp_path / "canton" / "toolkit.example").exists()

    def test_status_json(self, tmp_path, env_file):
        result = self.invoke(tmp_path, env_file, 'status', '--json')

        assert result.exit_code == 0
        assert '"network": "testnet"' in result.output
        assert '"bundles": []' in result.output

    def test_test_notify_without_channels(self, tmp_path, env_file):
        result = self.invoke(tmp_path, env_file, 'test-notify')

        assert result.exit_code == 1

    def test_check_health_disk_low_then_recovered(self, tmp_path, env_file):
        """Three low-disk cycles then a healthy one: one alert, one resolve."""
        gb = 1024 ** 3
        disk = [Mock(free=5 * gb)] * 3 + [Mock(free=500 * gb)]
        notifier = Mock()
        notifier.send_health_alert.return_value = 11
        store = StatusStore(tmp_path / "health" / "status.json")

        with patch('warden.__main__.NotificationManager', return_value=notifier), \
                patch.object(HealthProbe, 'check_containers', return_value=[]), \
                patch.object(HealthProbe, 'check_metrics', return_value=[]), \
                patch('warden.health.psutil.disk_usage', side_effect=disk):
            for _ in range(3):
                result = self.invoke(tmp_path, env_file, 'check-health')
                assert result.exit_code == 0
                assert store.load_incident().state == IncidentState.ACTIVE
                assert store.snapshot()['last_probe']['critical'] is True

            result = self.invoke(tmp_path, env_file, 'check-health')
            assert result.exit_code == 0

        notifier.send_health_alert.assert_called_once()
        assert "Disk free: 5GB" in notifier.send_health_alert.call_args[0][0]
        notifier.pin.assert_called_once_with(11)
        notifier.send_resolved.assert_called_once()
        notifier.unpin.assert_called_once_with(11)

        snapshot = store.snapshot()
        assert snapshot['incident']['state'] == "none"
        assert snapshot['last_probe']['issues'] == 0
        assert snapshot['last_probe']['critical'] is False
