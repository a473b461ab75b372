# =============================================================================
# TOLLGATE MODELS TESTS
# =============================================================================
# Tests for Pydantic domain models and the run's stage ordering rules.
# =============================================================================

import pytest
from pydantic import ValidationError

from tollgate.domain.models import (
    Artifact,
    GateMetrics,
    GateRuleset,
    Observation,
    PipelineRun,
    Revision,
    RunStatus,
    StageName,
    StageOrderError,
    StageStatus,
)


class TestRevision:
    """Test Revision model."""

    def test_valid_revision(self):
        """Revision should accept a commit id and environment."""
        revision = Revision(commit_id="abc123", environment="prod")
        assert revision.source == "app"
        assert revision.lane == ("app", "prod")
        assert revision.short_id == "abc123"

    def test_revision_is_frozen(self):
        """Revision is immutable once created."""
        revision = Revision(commit_id="abc123", environment="prod")
        with pytest.raises(ValidationError):
            revision.commit_id = "def456"

    def test_rejects_bad_commit_id(self):
        """Commit ids with shell characters are rejected."""
        with pytest.raises(ValidationError):
            Revision(commit_id="abc; rm -rf /", environment="prod")

    def test_rejects_bad_environment(self):
        """Environment labels are lowercase slugs."""
        with pytest.raises(ValidationError):
            Revision(commit_id="abc123", environment="Prod Env")

    def test_short_id_truncates(self):
        revision = Revision(commit_id="0123456789abcdef", environment="prod")
        assert revision.short_id == "01234567"


class TestArtifact:
    """Test Artifact references."""

    def test_reference_uses_digest_hex(self):
        """Digest sha256:aaa in registry/app is registry/app:aaa."""
        artifact = Artifact(
            digest="sha256:aaa",
            revision=Revision(commit_id="abc123", environment="prod"),
            repository="registry/app",
        )
        assert artifact.tag == "aaa"
        assert artifact.reference == "registry/app:aaa"

    def test_rejects_non_sha_digest(self):
        with pytest.raises(ValidationError):
            Artifact(
                digest="md5:abc",
                revision=Revision(commit_id="abc123", environment="prod"),
                repository="registry/app",
            )


class TestGateModels:
    """Test gate ruleset defaults and metric bounds."""

    def test_ruleset_defaults(self):
        ruleset = GateRuleset()
        assert ruleset.min_coverage == 80
        assert ruleset.max_new_bugs == 5
        assert ruleset.max_security_hotspots == 0

    def test_coverage_is_a_percentage(self):
        with pytest.raises(ValidationError):
            GateMetrics(coverage=120, new_bugs=0)


class TestObservation:
    def test_matches_expected_reference(self):
        obs = Observation(references=("registry/app:aaa", "sidecar:1"), healthy=True)
        assert obs.matches("registry/app:aaa")
        assert not obs.matches("registry/app:bbb")


class TestPipelineRunOrdering:
    """Stage results are appended strictly in order."""

    def _run(self) -> PipelineRun:
        return PipelineRun(revision=Revision(commit_id="abc123", environment="prod"))

    def test_new_run_is_pending(self):
        run = self._run()
        assert run.status == RunStatus.PENDING
        assert run.next_stage() == StageName.GATE
        assert not run.is_terminal

    def test_begin_stage_appends_running_result(self):
        run = self._run()
        result = run.begin_stage(StageName.GATE)
        assert result.status == StageStatus.RUNNING
        assert result.started_at is not None
        assert run.current_stage == StageName.GATE

    def test_cannot_skip_ahead(self):
        """BUILD cannot start before GATE."""
        run = self._run()
        with pytest.raises(StageOrderError):
            run.begin_stage(StageName.BUILD)

    def test_cannot_start_after_failure(self):
        """A failed stage blocks every later stage."""
        run = self._run()
        run.begin_stage(StageName.GATE).status = StageStatus.FAILED
        assert run.next_stage() is None
        with pytest.raises(StageOrderError):
            run.begin_stage(StageName.BUILD)

    def test_running_stage_is_reentered(self):
        """A RUNNING result left by a crash is reused, not duplicated."""
        run = self._run()
        first = run.begin_stage(StageName.GATE)
        assert run.next_stage() == StageName.GATE
        again = run.begin_stage(StageName.GATE)
        assert again is first
        assert len(run.stages) == 1

    def test_only_optional_stages_can_be_skipped(self):
        run = self._run()
        with pytest.raises(StageOrderError):
            run.skip_stage(StageName.GATE, "not wanted")

    def test_skip_verify_sync_after_update(self):
        run = self._run()
        for stage in list(StageName)[:4]:
            run.begin_stage(stage).status = StageStatus.PASSED
        result = run.skip_stage(StageName.VERIFY_SYNC, "disabled")
        assert result.status == StageStatus.SKIPPED
        assert result.is_finished
        assert run.next_stage() is None
