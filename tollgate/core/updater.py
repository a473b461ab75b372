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
# THE UPDATER - GITOPS DESIRED STATE
# -----------------------------------------------------------------------------
# Responsibility: Point an environment at a new image reference by rewriting
# its descriptor in the GitOps repository, then move the environment pointer.
#
# Two layers of mutual exclusion:
# - an in-process lock per environment (lanes in this process never race)
# - compare-and-swap on the versioned pointer and a non-forced git push
#   (other processes lose with ConcurrentUpdateConflict and retry)
#
# A re-run after a crash is safe: a descriptor that already holds the target
# reference is not committed again, and a pointer this same run already moved
# returns that change. A pointer left at the target by anyone else yields an
# unrecorded no-op change whose previous reference is the pointer as found.
# -----------------------------------------------------------------------------

import os
import threading

import yaml
from rich.console import Console

from tollgate.core.store import RunStore
from tollgate.domain.errors import TerminalError, TransientError
from tollgate.domain.models import ChangeKind, DesiredStateChange
from tollgate.infra.git_client import GitError, GitProvider, PushRejected

console = Console()

DESCRIPTOR_TEMPLATE = os.getenv("GITOPS_DESCRIPTOR", "environments/{environment}/values.yaml")


class ConcurrentUpdateConflict(TransientError):
    """Another writer moved the environment first. Re-read and reapply."""

    pass


class DescriptorError(TerminalError):
    """The descriptor file is missing or malformed."""

    pass


class DescriptorUnavailable(TransientError):
    """The GitOps repository could not be reached."""

    pass


def split_reference(reference: str) -> tuple[str, str]:
    """
    Split "registry/app:tag" into ("registry/app", "tag").

    The last colon after the final slash separates the tag, so registry ports
    ("host:5000/app:tag") are preserved.
    """
    name, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        raise DescriptorError(f"Reference has no tag: {reference}")
    return name, tag


class GitDescriptorRepository:
    """
    Read-modify-write of Helm-style values files in the GitOps repository.

    Descriptor shape (image key configurable):

        image:
          repository: registry/app
          tag: aaa
    """

    def __init__(
        self,
        git: GitProvider,
        branch: str | None = None,
        path_template: str = DESCRIPTOR_TEMPLATE,
        image_key: str = "image",
    ) -> None:
        self._git = git
        self._branch = branch or os.getenv("GITOPS_BRANCH", "main")
        self._path_template = path_template
        self._image_key = image_key

    def _path(self, environment: str) -> str:
        return self._path_template.format(environment=environment)

    def _load(self, environment: str) -> dict:
        path = self._git.workspace / self._path(environment)
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise DescriptorError(f"Descriptor {path.name} is not valid YAML: {e}")
        if not isinstance(data, dict):
            raise DescriptorError(f"Descriptor {self._path(environment)} must be a mapping")
        return data

    def _reference_in(self, data: dict) -> str | None:
        image = data.get(self._image_key) or {}
        if image.get("repository") and image.get("tag"):
            return f"{image['repository']}:{image['tag']}"
        return None

    def _sync(self) -> str:
        try:
            return self._git.sync(self._branch)
        except GitError as e:
            raise DescriptorUnavailable(f"GitOps repository unavailable: {e}")

    def write(
        self, environment: str, expected_previous: str | None, new_reference: str, message: str
    ) -> str:
        """
        Rewrite the descriptor if it still holds `expected_previous`.

        Returns:
            Commit id holding the new reference.

        Raises:
            ConcurrentUpdateConflict: Descriptor changed underneath us, or push rejected.
            DescriptorUnavailable: Repository unreachable.
            DescriptorError: Descriptor malformed.
        """
        head = self._sync()
        data = self._load(environment)
        current = self._reference_in(data)

        if current == new_reference:
            console.print(f"[yellow][UPDATER] {environment} already at target, no commit[/yellow]")
            return head
        if current != expected_previous:
            raise ConcurrentUpdateConflict(
                f"Descriptor for {environment} moved: expected {expected_previous}, found {current}",
                details={"expected": expected_previous, "found": current},
            )

        repository, tag = split_reference(new_reference)
        image = dict(data.get(self._image_key) or {})
        image.update({"repository": repository, "tag": tag})
        data[self._image_key] = image

        relative = self._path(environment)
        path = self._git.workspace / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        try:
            commit_id = self._git.commit([relative], message)
            self._git.push(self._branch)
        except PushRejected as e:
            self._sync()
            raise ConcurrentUpdateConflict(f"Push for {environment} lost the race: {e}")
        except GitError as e:
            self._sync()
            raise DescriptorUnavailable(f"Descriptor commit failed: {e}")

        return commit_id


class DescriptorUpdater:
    """
    Moves environment pointers.

    The store's pointer is the single "current" desired state per
    environment; the descriptor commit is its mirror in Git.
    """

    def __init__(self, descriptors, store: RunStore) -> None:
        """
        Initialize the updater.

        Args:
            descriptors: Object exposing write(environment, expected_previous,
                         new_reference, message) -> commit_id.
            store: RunStore holding the versioned pointers.
        """
        self._descriptors = descriptors
        self._store = store
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, environment: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(environment, threading.Lock())

    def update_desired_state(
        self,
        environment: str,
        reference: str,
        run_id: str | None = None,
        kind: ChangeKind = ChangeKind.PROMOTE,
    ) -> DesiredStateChange:
        """
        Point an environment at `reference`.

        Returns:
            The DesiredStateChange this run is responsible for. When the
            pointer already holds `reference` and this run did not move it,
            the change is not recorded and its previous reference is
            `reference` itself.

        Raises:
            ConcurrentUpdateConflict: Lost the compare-and-swap (retryable).
        """
        with self._lock_for(environment):
            pointer = self._store.get_pointer(environment)
            previous = pointer.reference if pointer else None
            version = pointer.version if pointer else 0

            if pointer is not None and previous == reference:
                current = self._store.current_change(environment)
                if (
                    current is not None
                    and run_id is not None
                    and current.run_id == run_id
                    and current.kind == kind
                ):
                    console.print(
                        f"[yellow][UPDATER] {environment} already moved to {reference[:60]} by this run[/yellow]"
                    )
                    return current

                console.print(
                    f"[yellow][UPDATER] {environment} already points at {reference[:60]}, no change[/yellow]"
                )
                return DesiredStateChange(
                    environment=environment,
                    previous_reference=reference,
                    new_reference=reference,
                    commit_id=pointer.commit_id,
                    version=pointer.version,
                    kind=kind,
                    run_id=run_id,
                )

            console.print(
                f"[cyan][UPDATER] {kind.value} {environment}: {previous or '(none)'} -> {reference[:60]}[/cyan]"
            )

            verb = "Roll back" if kind == ChangeKind.ROLLBACK else "Promote"
            commit_id = self._descriptors.write(
                environment, previous, reference, f"{verb} {environment} to {reference}"
            )

            change = DesiredStateChange(
                environment=environment,
                previous_reference=previous,
                new_reference=reference,
                commit_id=commit_id,
                version=version + 1,
                kind=kind,
                run_id=run_id,
            )

            if not self._store.swap_pointer(environment, version, change):
                console.print(f"[yellow][UPDATER] Pointer for {environment} moved (v{version})[/yellow]")
                raise ConcurrentUpdateConflict(
                    f"Pointer for {environment} moved past v{version}",
                    details={"expected_version": version},
                )

            console.print(f"[green][UPDATER] {environment} -> v{change.version} ({commit_id[:8]})[/green]")
            return change
