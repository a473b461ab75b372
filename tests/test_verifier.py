# =============================================================================
# TOLLGATE VERIFIER TESTS
# =============================================================================
# Tests for sync polling and the ArgoCD probe.
# =============================================================================

from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import FakeDescriptorRepository, FakeProbe
from tollgate.core.retry import CancelToken
from tollgate.core.verifier import ArgoCDProbe, ProbeError, SyncTimeout, SyncUnhealthy, SyncVerifier
from tollgate.domain.errors import RunCancelled
from tollgate.domain.models import SyncStatus


@pytest.fixture
def probe():
    return FakeProbe(FakeDescriptorRepository({"prod": "registry/app:aaa"}))


def _verifier(probe, timeout=0.2):
    return SyncVerifier(probe, default_timeout=timeout, poll_interval=0.01)


class TestSyncVerifier:
    """Test convergence polling."""

    def test_synced_on_first_poll(self, probe):
        result = _verifier(probe).verify_sync("prod", "registry/app:aaa")

        assert result.status == SyncStatus.SYNCED
        assert result.polls == 1
        assert result.reference == "registry/app:aaa"

    def test_never_converges(self, probe):
        """A reference that never shows up is out of sync."""
        probe.never_converge = True

        with pytest.raises(SyncTimeout) as exc:
            _verifier(probe, timeout=0.05).verify_sync("prod", "registry/app:aaa")

        assert exc.value.retryable
        assert exc.value.details["status"] == "OUT_OF_SYNC"
        assert exc.value.details["observed"] == ["registry/app:old"]
        assert probe.calls > 1

    def test_converged_but_unhealthy(self, probe):
        probe.healthy = False

        with pytest.raises(SyncUnhealthy) as exc:
            _verifier(probe, timeout=0.05).verify_sync("prod", "registry/app:aaa")

        assert exc.value.details["status"] == "DEGRADED"
        assert exc.value.details["health"] == "Degraded"

    def test_probe_errors_count_as_not_converged(self, probe):
        probe.errors = 2

        result = _verifier(probe, timeout=5).verify_sync("prod", "registry/app:aaa")

        assert result.polls == 3

    def test_explicit_timeout_overrides_default(self, probe):
        probe.never_converge = True

        with pytest.raises(SyncTimeout) as exc:
            _verifier(probe, timeout=30).verify_sync("prod", "registry/app:aaa", timeout=0.05)
        assert exc.value.details["timeout_seconds"] == 0.05

    def test_cancelled_between_polls(self, probe):
        probe.never_converge = True
        token = CancelToken()
        token.cancel("operator stop")

        with pytest.raises(RunCancelled):
            _verifier(probe, timeout=30).verify_sync("prod", "registry/app:aaa", token=token)
        assert probe.calls == 0


class TestArgoCDProbe:
    """Test ArgoCD application parsing with mocked requests."""

    APP = {
        "status": {
            "sync": {"status": "Synced"},
            "health": {"status": "Healthy"},
            "summary": {"images": ["registry/app:aaa", "envoy:1.29"]},
        }
    }

    def _probe(self, **kwargs):
        return ArgoCDProbe(base_url="https://argocd.test", token="t", **kwargs)

    @patch("tollgate.core.verifier.requests.get")
    def test_observe(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200, json=lambda: self.APP)

        obs = self._probe().observe("prod")

        assert obs.references == ("registry/app:aaa", "envoy:1.29")
        assert obs.healthy
        assert obs.sync_status == "Synced"
        assert mock_get.call_args.args[0] == "https://argocd.test/api/v1/applications/prod"

    @patch("tollgate.core.verifier.requests.get")
    def test_application_mapping(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200, json=lambda: self.APP)

        self._probe(applications={"prod": "app-prod"}).observe("prod")

        assert mock_get.call_args.args[0].endswith("/applications/app-prod")

    def test_application_template(self):
        probe = self._probe(app_template="shop-{environment}")
        assert probe.application_for("staging") == "shop-staging"

    @patch("tollgate.core.verifier.requests.get")
    def test_progressing_is_not_healthy(self, mock_get):
        app = {"status": {"health": {"status": "Progressing"}, "summary": {}}}
        mock_get.return_value = MagicMock(status_code=200, json=lambda: app)

        obs = self._probe().observe("prod")

        assert not obs.healthy
        assert obs.references == ()

    @patch("tollgate.core.verifier.requests.get")
    def test_http_error(self, mock_get):
        mock_get.return_value = MagicMock(status_code=403)

        with pytest.raises(ProbeError):
            self._probe().observe("prod")

    @patch("tollgate.core.verifier.requests.get")
    def test_connection_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(ProbeError):
            self._probe().observe("prod")
