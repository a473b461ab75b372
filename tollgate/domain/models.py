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
# DOMAIN MODELS - RELEASE PIPELINE RECORDS
# -----------------------------------------------------------------------------
# These Pydantic models describe everything that flows through a release:
# the Revision that triggered it, the PipelineRun and its StageResults, and
# the value objects each stage hands back to the Orchestrator.
#
# Only the Orchestrator mutates a PipelineRun. Everything a component returns
# (Artifact, QualityGateVerdict, DesiredStateChange, ...) is frozen.
# -----------------------------------------------------------------------------

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every record."""
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Overall status of a PipelineRun."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK})


class StageStatus(str, Enum):
    """Status of a single stage inside a run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class StageName(str, Enum):
    """The stages of a release, in execution order."""

    GATE = "GATE"
    BUILD = "BUILD"
    PUBLISH = "PUBLISH"
    UPDATE_DESIRED_STATE = "UPDATE_DESIRED_STATE"
    VERIFY_SYNC = "VERIFY_SYNC"


STAGE_SEQUENCE: tuple[StageName, ...] = (
    StageName.GATE,
    StageName.BUILD,
    StageName.PUBLISH,
    StageName.UPDATE_DESIRED_STATE,
    StageName.VERIFY_SYNC,
)

# Stages an environment may switch off. Everything else is mandatory.
OPTIONAL_STAGES = frozenset({StageName.VERIFY_SYNC})


class Severity(str, Enum):
    """Notification severity. CRITICAL is reserved for human intervention."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class ChangeKind(str, Enum):
    PROMOTE = "PROMOTE"
    ROLLBACK = "ROLLBACK"


class SyncStatus(str, Enum):
    SYNCED = "SYNCED"
    OUT_OF_SYNC = "OUT_OF_SYNC"
    DEGRADED = "DEGRADED"


class StageOrderError(ValueError):
    """Raised when a stage result would break the run's stage ordering."""

    pass


# =============================================================================
# TRIGGER
# =============================================================================


class Revision(BaseModel):
    """
    An immutable unit of source change that triggers a run.

    `source` names the application/repository and `environment` the target
    the revision is promoted to. Together they form the run's lane: at most
    one run per lane is active at any time.
    """

    commit_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$",
        description="Commit identifier (sha or short sha)",
    )
    source: str = Field(default="app", min_length=1, max_length=128)
    environment: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=r"^[a-z0-9][a-z0-9-]*$",
        description="Target environment label (e.g. 'staging', 'prod')",
    )
    branch: str | None = None
    author: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True
        str_strip_whitespace = True

    @property
    def lane(self) -> tuple[str, str]:
        return (self.source, self.environment)

    @property
    def short_id(self) -> str:
        return self.commit_id[:8]


# =============================================================================
# STAGE VALUE OBJECTS
# =============================================================================


class GateRuleset(BaseModel):
    """
    Quality gate thresholds. Configured per environment (prod is stricter).
    """

    min_coverage: float = Field(default=80.0, ge=0, le=100)
    max_new_bugs: int = Field(default=5, ge=0)
    max_security_hotspots: int = Field(default=0, ge=0)

    class Config:
        frozen = True


class GateMetrics(BaseModel):
    """Static-analysis measures for one revision."""

    coverage: float = Field(..., ge=0, le=100)
    new_bugs: int = Field(..., ge=0)
    security_hotspots: int = Field(default=0, ge=0)

    class Config:
        frozen = True


class RuleViolation(BaseModel):
    rule: str
    threshold: float
    actual: float
    message: str

    class Config:
        frozen = True


class QualityGateVerdict(BaseModel):
    """
    Pass/fail verdict for a revision against a ruleset.

    Immutable once rendered. Re-evaluating produces a new verdict object.
    """

    commit_id: str
    metrics: GateMetrics
    ruleset: GateRuleset
    passed: bool
    violations: tuple[RuleViolation, ...] = ()

    class Config:
        frozen = True

    def summary(self) -> str:
        if self.passed:
            return f"Quality gate passed (coverage {self.metrics.coverage:g}%)"
        return "Quality gate failed: " + "; ".join(v.message for v in self.violations)


class Artifact(BaseModel):
    """
    A content-addressed build output (container image).

    The digest is derived from the build inputs, so the registry tag is stable:
    digest `sha256:aaa` in repository `registry/app` is `registry/app:aaa`.
    """

    digest: str = Field(..., pattern=r"^sha256:[0-9a-f]+$")
    revision: Revision
    repository: str = Field(..., min_length=1)
    image_id: str | None = None

    class Config:
        frozen = True

    @property
    def tag(self) -> str:
        return self.digest.split(":", 1)[1]

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


class PublishedReference(BaseModel):
    """Immutable registry reference for a published artifact."""

    reference: str
    digest: str
    registry_digest: str | None = None
    already_published: bool = False

    class Config:
        frozen = True


class DesiredStateChange(BaseModel):
    """
    One commit to the GitOps source of truth.

    `version` is the environment pointer version this change produced. The
    change history per environment is append-only.
    """

    environment: str
    previous_reference: str | None = None
    new_reference: str
    commit_id: str
    version: int = Field(..., ge=1)
    kind: ChangeKind = ChangeKind.PROMOTE
    run_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True


class EnvironmentPointer(BaseModel):
    """The single 'current' desired-state reference of an environment."""

    environment: str
    reference: str
    commit_id: str
    version: int = Field(..., ge=1)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True


class Observation(BaseModel):
    """What the cluster reports for an environment at one point in time."""

    references: tuple[str, ...] = ()
    healthy: bool = False
    sync_status: str | None = None
    health_status: str | None = None

    class Config:
        frozen = True

    def matches(self, expected_reference: str) -> bool:
        return expected_reference in self.references


class SyncResult(BaseModel):
    environment: str
    reference: str
    status: SyncStatus = SyncStatus.SYNCED
    polls: int = 1
    elapsed_seconds: float = 0.0

    class Config:
        frozen = True


class NotificationEvent(BaseModel):
    """
    A pipeline outcome to deliver to the notification channel.

    `attempts` counts delivery attempts; it is the only field the Notifier
    touches.
    """

    run_id: str
    stage: StageName | None = None
    status: str
    summary: str
    severity: Severity = Severity.INFO
    environment: str | None = None
    commit_id: str | None = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# RUN RECORDS
# =============================================================================


class StageResult(BaseModel):
    """
    Outcome of one stage within a run.

    Errors stay attached to the stage that produced them (`error`,
    `error_type` and anything structured in `detail`).
    """

    stage: StageName
    status: StageStatus = StageStatus.PENDING
    detail: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)

    @property
    def is_finished(self) -> bool:
        return self.status in (StageStatus.PASSED, StageStatus.FAILED, StageStatus.SKIPPED)


class PipelineRun(BaseModel):
    """
    One execution of the pipeline for a Revision.

    Stage results are strictly ordered and append-only: a stage can only be
    started once every earlier stage has PASSED. The Orchestrator is the only
    writer of this record.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    revision: Revision
    status: RunStatus = RunStatus.PENDING
    current_stage: StageName | None = None
    stages: list[StageResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    abort_reason: str | None = None

    @property
    def lane(self) -> tuple[str, str]:
        return self.revision.lane

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def stage_result(self, stage: StageName) -> StageResult | None:
        for result in self.stages:
            if result.stage == stage:
                return result
        return None

    def next_stage(self) -> StageName | None:
        """
        The stage the run should execute next.

        A result left RUNNING (process died mid-stage) is re-entered rather
        than appended again.
        """
        if self.stages and self.stages[-1].status == StageStatus.RUNNING:
            return self.stages[-1].stage
        if any(r.status == StageStatus.FAILED for r in self.stages):
            return None
        if len(self.stages) >= len(STAGE_SEQUENCE):
            return None
        return STAGE_SEQUENCE[len(self.stages)]

    def _check_order(self, stage: StageName) -> None:
        expected = STAGE_SEQUENCE[len(self.stages)] if len(self.stages) < len(STAGE_SEQUENCE) else None
        if stage != expected:
            raise StageOrderError(
                f"Stage {stage.value} out of order (expected {expected.value if expected else 'none'})"
            )
        for prior in self.stages:
            if prior.status != StageStatus.PASSED:
                raise StageOrderError(
                    f"Stage {stage.value} cannot start: {prior.stage.value} is {prior.status.value}"
                )

    def begin_stage(self, stage: StageName) -> StageResult:
        """Append (or re-enter) the RUNNING result for `stage`."""
        if self.stages and self.stages[-1].stage == stage and self.stages[-1].status == StageStatus.RUNNING:
            result = self.stages[-1]
        else:
            self._check_order(stage)
            result = StageResult(stage=stage)
            self.stages.append(result)

        result.status = StageStatus.RUNNING
        result.started_at = result.started_at or utcnow()
        self.current_stage = stage
        return result

    def skip_stage(self, stage: StageName, reason: str) -> StageResult:
        """Record an optional stage as SKIPPED."""
        if stage not in OPTIONAL_STAGES:
            raise StageOrderError(f"Stage {stage.value} is mandatory and cannot be skipped")
        self._check_order(stage)
        now = utcnow()
        result = StageResult(
            stage=stage,
            status=StageStatus.SKIPPED,
            detail={"reason": reason},
            started_at=now,
            finished_at=now,
        )
        self.stages.append(result)
        self.current_stage = stage
        return result
