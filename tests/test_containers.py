"""Tests for the docker-compose container lifecycle."""

import subprocess
import pytest
from unittest.mock import patch, MagicMock

from warden.config import Config, IdentityConfig
from warden.bundles import BundleStore
from warden.containers import ContainerError, ContainerStatus, DockerLifecycle
from warden.watcher import Version

V10 = Version(0, 5, 10)


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestDockerLifecycle:

    @pytest.fixture
    def bundles(self, tmp_path):
        bundles = BundleStore(Config(canton_dir=tmp_path))
        bundles.validator_dir(V10).mkdir(parents=True)
        return bundles

    @pytest.fixture
    def docker(self, bundles):
        return DockerLifecycle(Config(canton_dir=bundles.root), bundles)

    @patch('warden.containers.subprocess.run')
    def test_start_passes_identity(self, mock_run, docker, bundles):
        mock_run.return_value = completed()
        identity = IdentityConfig(sv_url="https://sv", scan_url="https://scan", party_hint="acme-1",
                                  migration_id="4", onboarding_secret="s3cret")

        docker.start(V10, identity)

        args = mock_run.call_args.args[0]
        assert args == ['./start.sh', '-s', "https://sv", '-c', "https://scan", '-p', "acme-1",
                        '-m', "4", '-o', "s3cret", '-w']
        assert mock_run.call_args.kwargs['cwd'] == str(bundles.validator_dir(V10))
        assert mock_run.call_args.kwargs['env']['IMAGE_TAG'] == "0.5.10"

    @patch('warden.containers.subprocess.run')
    def test_start_failure_raises(self, mock_run, docker):
        mock_run.return_value = completed(returncode=1, stderr="onboarding failed")

        with pytest.raises(ContainerError, match="onboarding failed"):
            docker.start(V10, IdentityConfig())

    @patch('warden.containers.subprocess.run')
    def test_start_timeout_raises(self, mock_run, docker):
        mock_run.side_effect = subprocess.TimeoutExpired(['./start.sh'], 600)

        with pytest.raises(ContainerError):
            docker.start(V10, IdentityConfig())

    @patch('warden.containers.subprocess.run')
    def test_stop_falls_back_to_compose_down(self, mock_run, docker):
        mock_run.side_effect = [completed(returncode=1), completed()]

        assert docker.stop(V10) is True
        assert mock_run.call_args.args[0] == ['docker', 'compose', 'down']

    def test_stop_without_bundle(self, docker):
        assert docker.stop(Version(0, 4, 0)) is False

    @patch('warden.containers.subprocess.run')
    def test_pull_failure_raises(self, mock_run, docker):
        mock_run.return_value = completed(returncode=1, stderr="manifest unknown")

        with pytest.raises(ContainerError):
            docker.pull(V10)

    @patch('warden.containers.subprocess.run')
    def test_find(self, mock_run, docker):
        mock_run.return_value = completed(stdout="splice-validator-postgres-splice-1\n"
                                                 "splice-validator-participant-1\n"
                                                 "splice-validator-validator-1\n")

        assert docker.find('validator') == "splice-validator-validator-1"
        assert docker.find('participant') == "splice-validator-participant-1"
        assert docker.find('nginx') is None

    @patch('warden.containers.subprocess.run')
    def test_status(self, mock_run, docker):
        mock_run.return_value = completed(stdout='{"Running": true, "Health": {"Status": "healthy"}}')
        assert docker.status("v-1") == ContainerStatus("v-1", True, "healthy")

        mock_run.return_value = completed(stdout='{"Running": false}')
        assert docker.status("v-1") == ContainerStatus("v-1", False, "")

        mock_run.return_value = completed(returncode=1)
        assert docker.status("v-1").running is False

    @patch('warden.containers.subprocess.run')
    def test_image_version(self, mock_run, docker):
        mock_run.return_value = completed(stdout="registry.example:5000/splice/validator-app:0.5.10\n")
        assert docker.image_version("v-1") == V10

        mock_run.return_value = completed(stdout="registry.example:5000/splice/validator-app\n")
        assert docker.image_version("v-1") is None

    def test_is_healthy(self, docker):
        with patch.object(docker, 'find', return_value="v-1"), \
                patch.object(docker, 'status', return_value=ContainerStatus("v-1", True, "starting")):
            assert docker.is_healthy() is False

        with patch.object(docker, 'find', return_value=None):
            assert docker.is_healthy() is False
