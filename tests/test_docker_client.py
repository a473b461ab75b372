# =============================================================================
# TOLLGATE DOCKER CLIENT TESTS
# =============================================================================
# Tests for the Docker infrastructure client.
# =============================================================================

import os
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, DockerException

from tollgate.infra.docker_client import DockerProvider, DockerProviderError


class TestDockerProvider:
    """Test DockerProvider class."""

    def test_injected_client(self):
        client = MagicMock()
        provider = DockerProvider(client=client)

        assert provider.get_client() is client
        assert provider.is_connected()

    def test_lazy_connect(self):
        provider = DockerProvider(connect=False)
        assert not provider.is_connected()

    @patch("tollgate.infra.docker_client.time.sleep")
    @patch("tollgate.infra.docker_client.docker.from_env")
    def test_unreachable_engine(self, mock_from_env, mock_sleep):
        mock_from_env.side_effect = DockerException("connection refused")

        with pytest.raises(DockerProviderError):
            DockerProvider()

        assert mock_from_env.call_count == 3

    @patch("tollgate.infra.docker_client.docker.from_env")
    def test_reconnects_after_lost_connection(self, mock_from_env):
        stale = MagicMock()
        stale.ping.side_effect = DockerException("daemon restarted")
        fresh = MagicMock()
        mock_from_env.return_value = fresh

        provider = DockerProvider(client=stale)

        assert provider.get_client() is fresh


class TestRegistryCredentials:
    def test_no_credentials(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("REGISTRY_USERNAME", None)
            os.environ.pop("REGISTRY_PASSWORD", None)
            provider = DockerProvider(client=MagicMock())

        assert provider.auth_config() is None
        assert provider.login() is False

    def test_login(self):
        client = MagicMock()
        env = {"REGISTRY_USERNAME": "ci", "REGISTRY_PASSWORD": "secret", "REGISTRY_URL": "ghcr.io"}
        with patch.dict(os.environ, env):
            provider = DockerProvider(client=client)

        assert provider.auth_config() == {"username": "ci", "password": "secret"}
        assert provider.login() is True
        client.login.assert_called_once_with(username="ci", password="secret", registry="ghcr.io")

    def test_login_rejected(self):
        client = MagicMock()
        client.login.side_effect = APIError("unauthorized")
        with patch.dict(os.environ, {"REGISTRY_USERNAME": "ci", "REGISTRY_PASSWORD": "bad"}):
            provider = DockerProvider(client=client)

        assert provider.login() is False
