# =============================================================================
# TOLLGATE PUBLISHER TESTS
# =============================================================================
# Tests for idempotent registry publishing.
# =============================================================================

from unittest.mock import MagicMock

import pytest
import requests
from docker.errors import APIError, NotFound

from tollgate.core.publisher import ArtifactPublisher, PublishRejected, TransientPublishError
from tollgate.domain.models import Artifact, Revision


@pytest.fixture
def artifact():
    return Artifact(
        digest="sha256:aaa",
        revision=Revision(commit_id="abc123", environment="prod"),
        repository="registry/app",
    )


@pytest.fixture
def client():
    client = MagicMock()
    client.images.get_registry_data.side_effect = NotFound("manifest unknown")
    client.images.push.return_value = iter(
        [
            {"status": "Pushing"},
            {"aux": {"Tag": "aaa", "Digest": "sha256:registry", "Size": 1024}},
        ]
    )
    return client


@pytest.fixture
def publisher(client):
    provider = MagicMock()
    provider.get_client.return_value = client
    provider.auth_config.return_value = {"username": "ci", "password": "secret"}
    return ArtifactPublisher(provider)


class TestPublish:
    """Test publish with a mocked Docker client."""

    def test_push_new_artifact(self, publisher, client, artifact):
        ref = publisher.publish(artifact)

        assert ref.reference == "registry/app:aaa"
        assert ref.registry_digest == "sha256:registry"
        assert not ref.already_published
        client.images.push.assert_called_once()
        assert client.images.push.call_args.args[0] == "registry/app"
        assert client.images.push.call_args.kwargs["tag"] == "aaa"

    def test_already_published_is_not_pushed(self, publisher, client, artifact):
        """Publishing the same digest twice returns the existing reference."""
        client.images.get_registry_data.side_effect = None
        client.images.get_registry_data.return_value = MagicMock(id="sha256:registry")

        ref = publisher.publish(artifact)

        assert ref.already_published
        assert ref.reference == "registry/app:aaa"
        client.images.push.assert_not_called()

    def test_lookup_client_error_means_absent(self, publisher, client, artifact):
        client.images.get_registry_data.side_effect = APIError(
            "unauthorized", response=MagicMock(status_code=401)
        )

        assert publisher.lookup(artifact) is None

    def test_lookup_server_error_is_transient(self, publisher, client, artifact):
        client.images.get_registry_data.side_effect = APIError(
            "bad gateway", response=MagicMock(status_code=502)
        )

        with pytest.raises(TransientPublishError):
            publisher.publish(artifact)

    def test_push_denied_is_terminal(self, publisher, client, artifact):
        client.images.push.return_value = iter([{"error": "denied: requested access to the resource is denied"}])

        with pytest.raises(PublishRejected):
            publisher.publish(artifact)

    def test_interrupted_push_is_transient(self, publisher, client, artifact):
        client.images.push.return_value = iter([{"error": "net/http: TLS handshake timeout"}])

        with pytest.raises(TransientPublishError):
            publisher.publish(artifact)

    def test_connection_error_is_transient(self, publisher, client, artifact):
        client.images.push.side_effect = requests.exceptions.ConnectionError("reset")

        with pytest.raises(TransientPublishError):
            publisher.publish(artifact)
