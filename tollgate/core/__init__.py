# -----------------------------------------------------------------------------
# CORE LAYER
# -----------------------------------------------------------------------------
# The business logic of the release pipeline:
# - QualityGateEvaluator: static-analysis gate
# - ArtifactBuilder / ArtifactPublisher: image build and registry push
# - DescriptorUpdater: GitOps desired-state pointer
# - SyncVerifier: sync and health verification
# - Notifier: Slack alerts
# - PipelineOrchestrator: the run state machine
# - Store / DB: PostgreSQL run persistence
# -----------------------------------------------------------------------------

from .builder import ArtifactBuilder, BuildFailure, BuilderUnavailable
from .config import PipelineConfig, UnknownEnvironment, load_config
from .notifier import DeliveryError, Notifier, SlackChannel
from .orchestrator import PipelineOrchestrator, RollbackFailed
from .publisher import ArtifactPublisher, PublishRejected, TransientPublishError
from .quality_gate import AnalysisUnavailable, GateRejected, QualityGateEvaluator, SonarCloudBackend
from .retry import CancelToken, RetryExhausted, RetryPolicy, call_with_retry
from .store import MemoryRunStore, PostgresRunStore, RunStore, create_store
from .updater import ConcurrentUpdateConflict, DescriptorUpdater, GitDescriptorRepository
from .verifier import ArgoCDProbe, SyncTimeout, SyncUnhealthy, SyncVerifier

__all__ = [
    "ArtifactBuilder", "BuildFailure", "BuilderUnavailable",
    "PipelineConfig", "UnknownEnvironment", "load_config",
    "DeliveryError", "Notifier", "SlackChannel",
    "PipelineOrchestrator", "RollbackFailed",
    "ArtifactPublisher", "PublishRejected", "TransientPublishError",
    "AnalysisUnavailable", "GateRejected", "QualityGateEvaluator", "SonarCloudBackend",
    "CancelToken", "RetryExhausted", "RetryPolicy", "call_with_retry",
    "MemoryRunStore", "PostgresRunStore", "RunStore", "create_store",
    "ConcurrentUpdateConflict", "DescriptorUpdater", "GitDescriptorRepository",
    "ArgoCDProbe", "SyncTimeout", "SyncUnhealthy", "SyncVerifier",
]
