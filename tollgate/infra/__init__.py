# -----------------------------------------------------------------------------
# INFRASTRUCTURE LAYER
# -----------------------------------------------------------------------------
# Contains low-level infrastructure wrappers:
# - DockerProvider: Docker SDK wrapper used to build and push images
# - GitProvider: git CLI wrapper for the desired-state repository
# -----------------------------------------------------------------------------

from .docker_client import DockerProvider, DockerProviderError
from .git_client import GitError, GitProvider, PushRejected

__all__ = ["DockerProvider", "DockerProviderError", "GitError", "GitProvider", "PushRejected"]
