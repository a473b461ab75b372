"""
Pytest configuration and fixtures for Tollgate tests.
"""

import os
from types import SimpleNamespace

import pytest

# Set test environment variables
os.environ.setdefault("DB_HOST", "localhost")
os.environ.setdefault("DB_PORT", "5432")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test_db")
os.environ.setdefault("TOLLGATE_STORE", "memory")
os.environ.setdefault("TOLLGATE_RESUME_ON_START", "false")
os.environ.setdefault("SONAR_TOKEN", "test-sonar-token")
os.environ.setdefault("SONAR_PROJECT_KEY", "acme_app")
os.environ.setdefault("ARGOCD_TOKEN", "test-argocd-token")

from tollgate.core.config import EnvironmentConfig, PipelineConfig
from tollgate.core.quality_gate import BackendUnavailable, QualityGateEvaluator
from tollgate.core.retry import RetryPolicy
from tollgate.core.store import MemoryRunStore
from tollgate.core.updater import ConcurrentUpdateConflict, DescriptorUpdater
from tollgate.core.verifier import ProbeError, SyncVerifier
from tollgate.domain.models import (
    Artifact,
    DesiredStateChange,
    GateMetrics,
    GateRuleset,
    Observation,
    PublishedReference,
    Revision,
)

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0)


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================


class FakeGateBackend:
    """Returns canned metrics per commit id; optionally fails first."""

    def __init__(self, metrics: dict[str, GateMetrics] | None = None, failures: int = 0) -> None:
        self.metrics = dict(metrics or {})
        self.failures = failures
        self.calls = 0

    def fetch_metrics(self, revision, timeout=None):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise BackendUnavailable("analysis backend down")
        return self.metrics.get(revision.commit_id, GateMetrics(coverage=90.0, new_bugs=0))


class FakeBuilder:
    """Digest 'sha256:<hex>' derived from the commit id (or given explicitly)."""

    def __init__(self, repository: str = "registry/app", digests: dict[str, str] | None = None) -> None:
        self.repository = repository
        self.digests = dict(digests or {})
        self.calls = 0

    def build(self, revision):
        self.calls += 1
        digest = self.digests.get(revision.commit_id) or "sha256:" + revision.commit_id.encode().hex()
        return Artifact(digest=digest, revision=revision, repository=self.repository)


class FakePublisher:
    def __init__(self) -> None:
        self.published: dict[str, PublishedReference] = {}
        self.pushes = 0

    def publish(self, artifact):
        if artifact.reference in self.published:
            return self.published[artifact.reference].model_copy(update={"already_published": True})
        self.pushes += 1
        ref = PublishedReference(reference=artifact.reference, digest=artifact.digest)
        self.published[artifact.reference] = ref
        return ref


class FakeDescriptorRepository:
    """In-memory GitOps repository: one reference per environment."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.current: dict[str, str] = dict(initial or {})
        self.commits: list[tuple[str, str, str]] = []
        self.fail_writes = 0
        self.fail_all = False

    def write(self, environment, expected_previous, new_reference, message):
        if self.fail_all:
            raise ConcurrentUpdateConflict("remote keeps moving")
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise ConcurrentUpdateConflict("push rejected")
        current = self.current.get(environment)
        if current == new_reference:
            return f"c{len(self.commits):07d}"
        if current != expected_previous:
            raise ConcurrentUpdateConflict(f"expected {expected_previous}, found {current}")
        self.current[environment] = new_reference
        commit_id = f"c{len(self.commits) + 1:07d}"
        self.commits.append((environment, new_reference, message))
        return commit_id


class FakeProbe:
    """Reports whatever the descriptor repository says, unless told otherwise."""

    def __init__(self, descriptors: FakeDescriptorRepository | None = None) -> None:
        self.descriptors = descriptors
        self.healthy = True
        self.never_converge = False
        self.errors = 0
        self.calls = 0

    def observe(self, environment):
        self.calls += 1
        if self.errors > 0:
            self.errors -= 1
            raise ProbeError("argocd down")
        if self.never_converge or self.descriptors is None:
            return Observation(references=("registry/app:old",), healthy=True, health_status="Healthy")
        ref = self.descriptors.current.get(environment)
        return Observation(
            references=(ref,) if ref else (),
            healthy=self.healthy,
            sync_status="Synced",
            health_status="Healthy" if self.healthy else "Degraded",
        )


class RecordingNotifier:
    """Synchronous notifier that records every event."""

    def __init__(self, fail: bool = False) -> None:
        self.events = []
        self.fail = fail

    def notify(self, event):
        self.events.append(event)
        if self.fail:
            raise RuntimeError("slack is down")

    def close(self, timeout=None):
        pass


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def revision():
    return Revision(commit_id="abc123", environment="prod")


@pytest.fixture
def fast_retry():
    return FAST_RETRY


@pytest.fixture
def memory_store():
    return MemoryRunStore()


@pytest.fixture
def pipeline_config():
    """Two environments with fast retries and short sync timeouts."""
    return PipelineConfig(
        max_attempts=3,
        base_delay_seconds=0,
        max_delay_seconds=0,
        default_timeout_seconds=0.05,
        run_timeout_seconds=60,
        poll_interval_seconds=0.01,
        environments={
            "prod": EnvironmentConfig(ruleset=GateRuleset(min_coverage=80, max_new_bugs=5)),
            "staging": EnvironmentConfig(
                ruleset=GateRuleset(min_coverage=70, max_new_bugs=10, max_security_hotspots=2),
                verify_sync=False,
            ),
        },
    )


@pytest.fixture
def pipeline(memory_store, pipeline_config):
    """
    A fully wired orchestrator over in-memory fakes.

    Returns a namespace exposing the orchestrator and each fake.
    """
    from tollgate.core.orchestrator import PipelineOrchestrator

    descriptors = FakeDescriptorRepository()
    probe = FakeProbe(descriptors)
    backend = FakeGateBackend()
    builder = FakeBuilder()
    publisher = FakePublisher()
    notifier = RecordingNotifier()
    updater = DescriptorUpdater(descriptors, memory_store)

    orchestrator = PipelineOrchestrator(
        store=memory_store,
        evaluator=QualityGateEvaluator(backend, retry_policy=RetryPolicy(max_attempts=1)),
        builder=builder,
        publisher=publisher,
        updater=updater,
        verifier=SyncVerifier(probe, default_timeout=0.05, poll_interval=0.01),
        notifier=notifier,
        config=pipeline_config,
    )

    return SimpleNamespace(
        orchestrator=orchestrator,
        store=memory_store,
        descriptors=descriptors,
        probe=probe,
        backend=backend,
        builder=builder,
        publisher=publisher,
        notifier=notifier,
        updater=updater,
    )


@pytest.fixture
def seed_pointer():
    """Record an initial desired state: seed_pointer(store, environment, reference)."""

    def _seed(store, environment: str, reference: str) -> DesiredStateChange:
        change = DesiredStateChange(
            environment=environment,
            previous_reference=None,
            new_reference=reference,
            commit_id="c0000000",
            version=1,
        )
        assert store.swap_pointer(environment, 0, change)
        return change

    return _seed
