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
# THE BUILDER - CONTENT-ADDRESSED IMAGES
# -----------------------------------------------------------------------------
# Responsibility: Turn a source revision into an immutable container image.
#
# The artifact digest is a function of the build inputs only:
#   commit id + Dockerfile name + build args + every file in the context.
# Rebuilding an unchanged revision therefore yields the same digest, and an
# image already tagged with that digest is reused instead of rebuilt.
#
# The context is checked out at the revision before hashing, and one build
# runs at a time since every lane shares the checkout.
#
# Build errors are surfaced verbatim (compiler output is the evidence).
# -----------------------------------------------------------------------------

import hashlib
import os
import threading
from pathlib import Path

from docker.errors import APIError, BuildError, ImageNotFound
from rich.console import Console

from tollgate.domain.errors import TerminalError, TransientError
from tollgate.domain.models import Artifact, Revision
from tollgate.infra.docker_client import DockerProvider, DockerProviderError
from tollgate.infra.git_client import GitError, GitProvider

console = Console()

# Directories never hashed into the digest
IGNORED_DIRS = {".git", "__pycache__", "node_modules", ".venv"}

# Image labels written on every build
LABEL_REVISION = "org.tollgate.revision"
LABEL_DIGEST = "org.tollgate.digest"


class BuildFailure(TerminalError):
    """Compilation or packaging error. Not retryable; `log` is the raw output."""

    def __init__(self, message: str, log: str = "") -> None:
        super().__init__(message, details={"build_log": log})
        self.log = log


class BuilderUnavailable(TransientError):
    """Raised when the Docker daemon cannot be reached for a build."""

    pass


def _iter_context_files(context_dir: Path):
    for root, dirs, files in os.walk(context_dir):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
        for name in sorted(files):
            yield Path(root) / name


def compute_digest(
    revision: Revision,
    context_dir: Path,
    dockerfile: str = "Dockerfile",
    build_args: dict[str, str] | None = None,
) -> str:
    """
    Compute the content digest of a build.

    Args:
        revision: Source revision being built.
        context_dir: Build context directory.
        dockerfile: Dockerfile path relative to the context.
        build_args: Docker build arguments.

    Returns:
        "sha256:<hex>" digest, identical for identical inputs.
    """
    sha = hashlib.sha256()
    sha.update(f"commit:{revision.commit_id}\n".encode())
    sha.update(f"dockerfile:{dockerfile}\n".encode())
    for key, value in sorted((build_args or {}).items()):
        sha.update(f"arg:{key}={value}\n".encode())

    for path in _iter_context_files(context_dir):
        relative = path.relative_to(context_dir).as_posix()
        file_sha = hashlib.sha256(path.read_bytes()).hexdigest()
        sha.update(f"file:{relative}:{file_sha}\n".encode())

    return f"sha256:{sha.hexdigest()}"


class ArtifactBuilder:
    """
    Builds container images for revisions.

    Requirements:
    - A git checkout of the source repository in `context_dir`
    - A reachable Docker daemon (via DockerProvider)
    """

    def __init__(
        self,
        docker: DockerProvider,
        repository: str | None = None,
        context_dir: str | Path | None = None,
        dockerfile: str = "Dockerfile",
        build_args: dict[str, str] | None = None,
        git: GitProvider | None = None,
    ) -> None:
        self._docker = docker
        self._repository = repository or os.getenv("REGISTRY_REPOSITORY", "registry/app")
        self._context_dir = Path(context_dir or os.getenv("BUILD_CONTEXT", "."))
        self._dockerfile = dockerfile
        self._build_args = dict(build_args or {})
        self._git = git or GitProvider(str(self._context_dir))
        self._lock = threading.Lock()

    @property
    def repository(self) -> str:
        return self._repository

    def build(self, revision: Revision) -> Artifact:
        """
        Build (or reuse) the image for a revision.

        Returns:
            Artifact whose digest is derived from the build inputs.

        Raises:
            BuildFailure: The revision cannot be checked out, the build
                          context is missing, or the build failed.
            BuilderUnavailable: The source repository or the Docker daemon
                                could not be used.
        """
        with self._lock:
            self._checkout(revision)
            return self._build_checked_out(revision)

    def _checkout(self, revision: Revision) -> None:
        try:
            head = self._git.checkout(revision.commit_id)
        except GitError as e:
            raise BuilderUnavailable(f"Checkout of {revision.short_id} failed: {e}")

        if not head.startswith(revision.commit_id):
            raise BuildFailure(
                f"Build context is at {head[:12]}, not {revision.short_id}",
                log=f"expected {revision.commit_id}, HEAD is {head}",
            )

    def _build_checked_out(self, revision: Revision) -> Artifact:
        if not (self._context_dir / self._dockerfile).is_file():
            raise BuildFailure(
                f"Build context invalid: {self._dockerfile} not found in {self._context_dir}"
            )

        digest = compute_digest(revision, self._context_dir, self._dockerfile, self._build_args)
        artifact = Artifact(digest=digest, revision=revision, repository=self._repository)
        tag = artifact.reference

        console.print(f"[cyan][BUILDER] {revision.short_id} -> {tag[:60]}[/cyan]")

        try:
            client = self._docker.get_client()
        except DockerProviderError as e:
            raise BuilderUnavailable(str(e))

        try:
            existing = client.images.get(tag)
            console.print(f"[green][BUILDER] Reusing image for {digest[:19]}[/green]")
            return artifact.model_copy(update={"image_id": existing.id})
        except ImageNotFound:
            pass
        except APIError as e:
            raise BuilderUnavailable(f"Docker image lookup failed: {e.explanation}")

        try:
            image, _logs = client.images.build(
                path=str(self._context_dir),
                dockerfile=self._dockerfile,
                tag=tag,
                buildargs=self._build_args,
                labels={LABEL_REVISION: revision.commit_id, LABEL_DIGEST: digest},
                rm=True,
            )
        except BuildError as e:
            log = "".join(chunk.get("stream", "") or chunk.get("error", "") for chunk in e.build_log)
            console.print(f"[red][BUILDER] Build failed for {revision.short_id}: {e.msg}[/red]")
            raise BuildFailure(f"Build failed: {e.msg}", log=log)
        except APIError as e:
            raise BuilderUnavailable(f"Docker build API error: {e.explanation}")

        console.print(f"[green][BUILDER] Built {revision.short_id} ({image.short_id})[/green]")
        return artifact.model_copy(update={"image_id": image.id})
