# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


# -----------------------------------------------------------------------------
# THE PUBLISHER - REGISTRY PUSH
# -----------------------------------------------------------------------------
# Responsibility: Push built artifacts to the container registry.
#
# Publishing is idempotent: the registry is asked for the artifact's
# reference first, and an existing digest is returned as-is. Nothing is
# pushed twice.
#
# Errors:
# - Registry unreachable / push interrupted -> TransientPublishError (retry)
# - Registry denies the push                -> PublishRejected (terminal)
# -----------------------------------------------------------------------------

import requests
from docker.errors import APIError, NotFound
from rich.console import Console

from tollgate.domain.errors import TerminalError, TransientError
from tollgate.domain.models import Artifact, PublishedReference
from tollgate.infra.docker_client import DockerProvider, DockerProviderError

console = Console()

DENIAL_MARKERS = ("denied", "unauthorized", "authentication required")


class TransientPublishError(TransientError):
    """Raised when the registry is unreachable. Retryable."""

    pass


class PublishRejected(TerminalError):
    """Raised when the registry refuses the push (credentials, permissions)."""

    pass


class ArtifactPublisher:
    """
    Pushes artifacts and returns immutable registry references.

    Flow:
    1. Look up `repository:tag` in the registry
    2. If present: return the existing reference (no push)
    3. Else: push and return the new reference
    """

    def __init__(self, docker: DockerProvider) -> None:
        self._docker = docker

    def _client(self):
        try:
            return self._docker.get_client()
        except DockerProviderError as e:
            raise TransientPublishError(str(e))

    def lookup(self, artifact: Artifact) -> str | None:
        """
        Ask the registry for an already-published artifact.

        Returns:
            The registry digest if the reference exists, None otherwise.

        Raises:
            TransientPublishError: If the registry cannot be queried.
        """
        client = self._client()
        try:
            data = client.images.get_registry_data(
                artifact.reference, auth_config=self._docker.auth_config()
            )
            return data.id
        except NotFound:
            return None
        except APIError as e:
            if e.status_code is not None and e.status_code < 500:
                # Most registries answer unknown manifests with 401/403/404
                return None
            raise TransientPublishError(f"Registry lookup failed: {e.explanation}")
        except requests.exceptions.ConnectionError as e:
            raise TransientPublishError(f"Registry unreachable: {e}")

    def publish(self, artifact: Artifact) -> PublishedReference:
        """
        Publish an artifact.

        Returns:
            PublishedReference (already_published=True when nothing was pushed).

        Raises:
            TransientPublishError: Registry unreachable or push interrupted.
            PublishRejected: Registry refused the push.
        """
        existing = self.lookup(artifact)
        if existing:
            console.print(f"[green][PUBLISHER] Already published: {artifact.reference[:60]}[/green]")
            return PublishedReference(
                reference=artifact.reference,
                digest=artifact.digest,
                registry_digest=existing,
                already_published=True,
            )

        console.print(f"[cyan][PUBLISHER] Pushing {artifact.reference[:60]}[/cyan]")
        client = self._client()
        registry_digest = None

        try:
            for line in client.images.push(
                artifact.repository,
                tag=artifact.tag,
                stream=True,
                decode=True,
                auth_config=self._docker.auth_config(),
            ):
                if "error" in line:
                    self._raise_push_error(line["error"])
                aux = line.get("aux") or {}
                registry_digest = aux.get("Digest", registry_digest)
        except APIError as e:
            raise TransientPublishError(f"Registry push failed: {e.explanation}")
        except requests.exceptions.ConnectionError as e:
            raise TransientPublishError(f"Registry unreachable: {e}")

        console.print(f"[green][PUBLISHER] Published {artifact.reference[:60]}[/green]")
        return PublishedReference(
            reference=artifact.reference,
            digest=artifact.digest,
            registry_digest=registry_digest,
            already_published=False,
        )

    def _raise_push_error(self, message: str) -> None:
        if any(marker in message.lower() for marker in DENIAL_MARKERS):
            console.print(f"[red][PUBLISHER] Push denied: {message[:200]}[/red]")
            raise PublishRejected(f"Registry denied push: {message}")
        raise TransientPublishError(f"Push interrupted: {message}")
