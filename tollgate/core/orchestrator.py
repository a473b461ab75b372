# -----------------------------------------------------------------------------
# THE ORCHESTRATOR - PIPELINE STATE MACHINE
# -----------------------------------------------------------------------------
# Drives every PipelineRun through the release stages:
#
#   GATE -> BUILD -> PUBLISH -> UPDATE_DESIRED_STATE -> VERIFY_SYNC
#
# - Every stage runs under the shared RetryPolicy (transient errors retried,
#   terminal errors abort the run)
# - The run record is persisted before each stage and after each retry, so a
#   restarted process resumes at the first stage that has not PASSED
# - VERIFY_SYNC exhausting its retries reverts the environment pointer to the
#   previous reference and the run ends ROLLED_BACK
# - At most one run per (source, environment) lane is active; later revisions
#   for the same lane wait in a FIFO queue
# -----------------------------------------------------------------------------

import threading
import time
import traceback
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from rich.console import Console

from tollgate.core.config import PipelineConfig, UnknownEnvironment, default_config
from tollgate.core.quality_gate import GateRejected
from tollgate.core.retry import CancelToken, RetryExhausted, call_with_retry
from tollgate.core.store import RunStore
from tollgate.core.verifier import SyncTimeout, SyncUnhealthy
from tollgate.domain.errors import PipelineError, RunCancelled, TerminalError
from tollgate.domain.models import (
    Artifact,
    ChangeKind,
    DesiredStateChange,
    EnvironmentPointer,
    NotificationEvent,
    PipelineRun,
    PublishedReference,
    QualityGateVerdict,
    Revision,
    RunStatus,
    Severity,
    StageName,
    StageResult,
    StageStatus,
    utcnow,
)

console = Console()

ROLLBACK_PENDING = "PENDING"
ROLLBACK_DONE = "DONE"
ROLLBACK_FAILED = "FAILED"


class RollbackFailed(TerminalError):
    """The previous reference could not be restored. Needs a human."""

    pass


@dataclass
class _RunContext:
    """Values handed from one stage to the next."""

    verdict: QualityGateVerdict | None = None
    artifact: Artifact | None = None
    published: PublishedReference | None = None
    change: DesiredStateChange | None = None


class PipelineOrchestrator:
    """
    The release state machine.

    Pipeline: Revision -> Store -> Gate -> Build -> Publish -> Update -> Verify
    Each lane runs on its own worker thread.
    """

    def __init__(
        self,
        store: RunStore,
        evaluator,
        builder,
        publisher,
        updater,
        verifier,
        notifier=None,
        config: PipelineConfig | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            store: Run and pointer persistence.
            evaluator: QualityGateEvaluator (evaluate(revision, ruleset, timeout)).
            builder: ArtifactBuilder (build(revision)).
            publisher: ArtifactPublisher (publish(artifact)).
            updater: DescriptorUpdater (update_desired_state(...)).
            verifier: SyncVerifier (verify_sync(...)).
            notifier: Notifier (notify(event)); None logs only.
            config: Pipeline configuration; built-in defaults if omitted.
        """
        self._store = store
        self._evaluator = evaluator
        self._builder = builder
        self._publisher = publisher
        self._updater = updater
        self._verifier = verifier
        self._notifier = notifier
        self._config = config or default_config()
        self._policy = self._config.retry_policy()

        self._lock = threading.Lock()
        self._queues: dict[tuple[str, str], deque[str]] = {}
        self._workers: dict[tuple[str, str], threading.Thread] = {}
        self._active: dict[tuple[str, str], str] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._done: dict[str, threading.Event] = {}

        self._handlers: dict[StageName, Callable[[PipelineRun, _RunContext, CancelToken], dict]] = {
            StageName.GATE: self._stage_gate,
            StageName.BUILD: self._stage_build,
            StageName.PUBLISH: self._stage_publish,
            StageName.UPDATE_DESIRED_STATE: self._stage_update,
            StageName.VERIFY_SYNC: self._stage_verify,
        }

        console.print(
            f"[green][ORCHESTRATOR] Online ({len(self._config.environments)} environments, "
            f"{self._policy.max_attempts} attempts per stage)[/green]"
        )

    @property
    def config(self) -> PipelineConfig:
        return self._config

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def start_run(self, revision: Revision) -> PipelineRun:
        """
        Create a run for `revision` and queue it on its lane.

        Returns immediately with the PENDING run.

        Raises:
            UnknownEnvironment: If the revision targets an unconfigured environment.
        """
        self._config.environment(revision.environment)

        run = PipelineRun(revision=revision)
        self._store.save_run(run)
        console.print(
            f"[cyan][ORCHESTRATOR] Run {run.id[:8]} queued: {revision.short_id} -> "
            f"{revision.environment} (lane {revision.source}/{revision.environment})[/cyan]"
        )
        self._enqueue(run)
        return run

    def get_run(self, run_id: str) -> PipelineRun | None:
        return self._store.get_run(run_id)

    def list_runs(self, limit: int = 50, statuses: list[RunStatus] | None = None) -> list[PipelineRun]:
        return self._store.list_runs(limit=limit, statuses=statuses)

    def get_pointer(self, environment: str) -> EnvironmentPointer | None:
        self._config.environment(environment)
        return self._store.get_pointer(environment)

    def list_changes(self, environment: str, limit: int = 50) -> list[DesiredStateChange]:
        self._config.environment(environment)
        return self._store.list_changes(environment, limit)

    def wait(self, run_id: str, timeout: float | None = None) -> PipelineRun | None:
        """Block until a queued run finishes (or the timeout passes)."""
        with self._lock:
            event = self._done.get(run_id)
        if event is not None:
            event.wait(timeout)
        return self._store.get_run(run_id)

    def abort(self, run_id: str, reason: str = "aborted by operator") -> PipelineRun | None:
        """
        Request cancellation of a run.

        A queued run is removed from its lane and marked FAILED at once. An
        active run observes the request before its next attempt, during
        backoff, or between sync polls.

        Returns:
            The run as currently persisted, or None if unknown.
        """
        run = self._store.get_run(run_id)
        if run is None or run.is_terminal:
            return run

        with self._lock:
            queue = self._queues.get(run.lane)
            queued = queue is not None and run_id in queue
            if queued:
                queue.remove(run_id)
            active = self._active.get(run.lane) == run_id
            if active:
                self._tokens[run_id].cancel(reason)

        if active:
            console.print(f"[yellow][ORCHESTRATOR] Run {run_id[:8]} cancellation requested: {reason}[/yellow]")
            return self._store.get_run(run_id)

        if not queued:
            # The lane may have finished it between the first read and the lock.
            run = self._store.get_run(run_id)
            if run is None or run.is_terminal:
                return run

        console.print(f"[yellow][ORCHESTRATOR] Run {run_id[:8]} aborted before start: {reason}[/yellow]")
        run.abort_reason = reason
        run = self._finish(run, RunStatus.FAILED, f"Run aborted: {reason}")
        self._mark_done(run_id)
        return run

    def resume_incomplete(self) -> list[str]:
        """
        Re-queue every PENDING/RUNNING run found in the store.

        Used after a restart. Each run continues at its first stage that has
        not PASSED.
        """
        resumed = []
        for run in self._store.list_incomplete_runs():
            with self._lock:
                tracked = run.id in self._done
            if tracked:
                continue
            self._enqueue(run)
            resumed.append(run.id)

        if resumed:
            console.print(f"[cyan][ORCHESTRATOR] Resuming {len(resumed)} incomplete runs[/cyan]")
        return resumed

    def shutdown(self, timeout: float = 10.0) -> None:
        """Flush pending notifications, stop the notifier worker and close the store."""
        if self._notifier is not None and hasattr(self._notifier, "close"):
            self._notifier.close(timeout=timeout)
        self._store.close()

    # =========================================================================
    # LANES
    # =========================================================================

    def _new_token(self) -> CancelToken:
        return CancelToken(deadline=time.monotonic() + self._config.run_timeout_seconds)

    def _enqueue(self, run: PipelineRun) -> None:
        lane = run.lane
        with self._lock:
            self._done.setdefault(run.id, threading.Event())
            self._queues.setdefault(lane, deque()).append(run.id)
            worker = self._workers.get(lane)
            if worker is None or not worker.is_alive():
                worker = threading.Thread(
                    target=self._lane_worker,
                    args=(lane,),
                    daemon=True,
                    name=f"lane-{lane[0]}-{lane[1]}",
                )
                self._workers[lane] = worker
                worker.start()

    def _lane_worker(self, lane: tuple[str, str]) -> None:
        """Run the lane's queue one run at a time until it is empty."""
        while True:
            with self._lock:
                queue = self._queues.get(lane)
                if not queue:
                    self._workers.pop(lane, None)
                    self._queues.pop(lane, None)
                    return
                run_id = queue.popleft()
                self._active[lane] = run_id
                self._tokens[run_id] = self._new_token()

            try:
                self.execute(run_id)
            except Exception as e:
                console.print(f"[red][ORCHESTRATOR] Run {run_id[:8]} crashed: {e}[/red]")
                console.print(f"[dim]{traceback.format_exc()}[/dim]")
            finally:
                with self._lock:
                    self._active.pop(lane, None)
                    self._tokens.pop(run_id, None)
                self._mark_done(run_id)

    def _mark_done(self, run_id: str) -> None:
        """Wake the run's waiters and stop tracking it."""
        with self._lock:
            event = self._done.pop(run_id, None)
        if event is not None:
            event.set()

    # =========================================================================
    # RUN EXECUTION
    # =========================================================================

    def execute(self, run_id: str) -> PipelineRun:
        """
        Drive one run to a terminal state in the calling thread.

        Raises:
            KeyError: If the run does not exist.
        """
        run = self._store.get_run(run_id)
        if run is None:
            raise KeyError(run_id)
        if run.is_terminal:
            return run

        try:
            env = self._config.environment(run.revision.environment)
        except UnknownEnvironment as e:
            return self._finish(run, RunStatus.FAILED, str(e))

        # Lane workers register the token so abort() can reach it.
        with self._lock:
            token = self._tokens.get(run.id) or self._new_token()

        resuming = run.status == RunStatus.RUNNING
        run.status = RunStatus.RUNNING
        self._store.save_run(run)
        console.print(
            f"[cyan][ORCHESTRATOR] Run {run.id[:8]} {'resumed' if resuming else 'started'} "
            f"({run.revision.short_id} -> {run.revision.environment})[/cyan]"
        )

        ctx = self._restore_context(run)
        failed = next((r for r in run.stages if r.status == StageStatus.FAILED), None)
        if failed is not None:
            status = self._recover_failed(run, failed, ctx)
            return self._finish(run, status, self._summary(run, status))

        status = RunStatus.SUCCEEDED
        while (stage := run.next_stage()) is not None:
            if stage == StageName.VERIFY_SYNC and not env.verify_sync:
                run.skip_stage(stage, f"sync verification disabled for {run.revision.environment}")
                self._store.save_run(run)
                console.print(f"[yellow][ORCHESTRATOR] Run {run.id[:8]} {stage.value} skipped[/yellow]")
                continue

            try:
                self._run_stage(run, stage, ctx, token)
            except PipelineError as e:
                status = self._on_stage_failure(run, stage, ctx, e)
                break

        return self._finish(run, status, self._summary(run, status))

    def _run_stage(
        self, run: PipelineRun, stage: StageName, ctx: _RunContext, token: CancelToken
    ) -> StageResult:
        """
        Execute one stage under the retry policy and record its result.

        Raises:
            PipelineError: The stage FAILED (already recorded on the run).
        """
        result = run.begin_stage(stage)
        self._store.save_run(run)
        console.print(f"[cyan][ORCHESTRATOR] Run {run.id[:8]} {stage.value}...[/cyan]")

        def _on_retry(attempt: int, error: PipelineError, delay: float) -> None:
            result.retry_count = attempt
            result.error = str(error)
            result.error_type = type(error).__name__
            self._store.save_run(run)

        handler = self._handlers[stage]
        try:
            detail, attempts = call_with_retry(
                lambda: handler(run, ctx, token),
                self._policy,
                token=token,
                on_retry=_on_retry,
                label=f"{stage.value} {run.revision.short_id}",
            )
        except RetryExhausted as e:
            self._fail_stage(run, result, e, error_type=type(e.last_error).__name__)
            raise
        except PipelineError as e:
            self._fail_stage(run, result, e)
            raise
        except Exception as e:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
            wrapped = TerminalError(
                f"Unexpected error in {stage.value}: {e}",
                details={"exception": type(e).__name__},
            )
            self._fail_stage(run, result, wrapped, error_type=type(e).__name__)
            raise wrapped from e

        result.status = StageStatus.PASSED
        result.detail.update(detail)
        result.retry_count = attempts - 1
        result.error = None
        result.error_type = None
        result.finished_at = utcnow()
        self._store.save_run(run)
        console.print(f"[green][ORCHESTRATOR] Run {run.id[:8]} {stage.value} PASSED[/green]")
        return result

    def _fail_stage(
        self,
        run: PipelineRun,
        result: StageResult,
        error: PipelineError,
        error_type: str | None = None,
    ) -> None:
        result.status = StageStatus.FAILED
        result.error = str(error)
        result.error_type = error_type or type(error).__name__
        result.detail.update(error.details)
        if isinstance(error, RetryExhausted):
            result.retry_count = error.attempts - 1
            result.detail["attempts"] = error.attempts
        result.finished_at = utcnow()
        self._store.save_run(run)
        console.print(
            f"[red][ORCHESTRATOR] Run {run.id[:8]} {result.stage.value} FAILED "
            f"({result.error_type}): {error}[/red]"
        )

    # =========================================================================
    # STAGES
    # =========================================================================

    def _stage_gate(self, run: PipelineRun, ctx: _RunContext, token: CancelToken) -> dict:
        environment = run.revision.environment
        verdict = self._evaluator.evaluate(
            run.revision,
            self._config.environment(environment).ruleset,
            timeout=self._config.gate_timeout(environment),
        )
        if not verdict.passed:
            raise GateRejected(verdict)
        ctx.verdict = verdict
        return {"verdict": verdict.model_dump(mode="json")}

    def _stage_build(self, run: PipelineRun, ctx: _RunContext, token: CancelToken) -> dict:
        artifact = self._builder.build(run.revision)
        ctx.artifact = artifact
        return {"artifact": artifact.model_dump(mode="json")}

    def _stage_publish(self, run: PipelineRun, ctx: _RunContext, token: CancelToken) -> dict:
        published = self._publisher.publish(ctx.artifact)
        ctx.published = published
        return {"published": published.model_dump(mode="json")}

    def _stage_update(self, run: PipelineRun, ctx: _RunContext, token: CancelToken) -> dict:
        change = self._updater.update_desired_state(
            run.revision.environment, ctx.published.reference, run_id=run.id
        )
        ctx.change = change
        return {"change": change.model_dump(mode="json")}

    def _stage_verify(self, run: PipelineRun, ctx: _RunContext, token: CancelToken) -> dict:
        environment = run.revision.environment
        result = self._verifier.verify_sync(
            environment,
            ctx.published.reference,
            timeout=self._config.sync_timeout(environment),
            token=token,
        )
        return {"sync": result.model_dump(mode="json")}

    def _restore_context(self, run: PipelineRun) -> _RunContext:
        """Rebuild inter-stage values from persisted stage details."""
        ctx = _RunContext()
        for result in run.stages:
            if result.status != StageStatus.PASSED:
                continue
            detail = result.detail
            if "verdict" in detail:
                ctx.verdict = QualityGateVerdict.model_validate(detail["verdict"])
            if "artifact" in detail:
                ctx.artifact = Artifact.model_validate(detail["artifact"])
            if "published" in detail:
                ctx.published = PublishedReference.model_validate(detail["published"])
            if "change" in detail:
                ctx.change = DesiredStateChange.model_validate(detail["change"])
        return ctx

    # =========================================================================
    # FAILURE & ROLLBACK
    # =========================================================================

    def _on_stage_failure(
        self, run: PipelineRun, stage: StageName, ctx: _RunContext, error: PipelineError
    ) -> RunStatus:
        """Notify the stage failure and decide the run's terminal status."""
        result = run.stage_result(stage)
        self._notify(
            run,
            stage,
            StageStatus.FAILED.value,
            f"{stage.value} failed for {run.revision.short_id}: {error}",
            Severity.WARNING,
        )

        if isinstance(error, RunCancelled):
            run.abort_reason = error.details.get("reason") or str(error)
            return RunStatus.FAILED

        if (
            stage == StageName.VERIFY_SYNC
            and isinstance(error, RetryExhausted)
            and isinstance(error.last_error, (SyncTimeout, SyncUnhealthy))
        ):
            return self._rollback(run, ctx, result)

        return RunStatus.FAILED

    def _recover_failed(self, run: PipelineRun, failed: StageResult, ctx: _RunContext) -> RunStatus:
        """Finish a resumed run whose last stage already FAILED."""
        rollback = failed.detail.get("rollback") or {}
        state = rollback.get("status")
        if state == ROLLBACK_PENDING:
            console.print(f"[yellow][ORCHESTRATOR] Run {run.id[:8]} resuming interrupted rollback[/yellow]")
            return self._rollback(run, ctx, failed)
        if state == ROLLBACK_DONE:
            return RunStatus.ROLLED_BACK
        return RunStatus.FAILED

    def _rollback(self, run: PipelineRun, ctx: _RunContext, result: StageResult) -> RunStatus:
        """
        Revert the environment to the reference it had before this run.

        Success ends the run ROLLED_BACK. A failed revert ends it FAILED with
        `rollback_failed` set, which the terminal notification escalates.
        """
        environment = run.revision.environment
        previous = ctx.change.previous_reference if ctx.change else None

        result.detail["rollback"] = {"status": ROLLBACK_PENDING, "target": previous}
        self._store.save_run(run)
        console.print(
            f"[yellow][ORCHESTRATOR] Run {run.id[:8]} rolling back {environment} to "
            f"{previous or '(none)'}[/yellow]"
        )

        try:
            if previous is None:
                raise RollbackFailed(
                    f"No previous reference recorded for {environment}",
                    details={"environment": environment},
                )
            # Not bound to the run's token: a revert must run even after a timeout.
            change, _ = call_with_retry(
                lambda: self._updater.update_desired_state(
                    environment, previous, run_id=run.id, kind=ChangeKind.ROLLBACK
                ),
                self._policy,
                label=f"rollback {environment}",
            )
        except PipelineError as e:
            error = e if isinstance(e, RollbackFailed) else RollbackFailed(f"Rollback failed: {e}")
            result.detail["rollback"] = {
                "status": ROLLBACK_FAILED,
                "target": previous,
                "error": str(error),
            }
            result.detail["rollback_failed"] = True
            self._store.save_run(run)
            console.print(f"[bold red][ORCHESTRATOR] Run {run.id[:8]} ROLLBACK FAILED: {error}[/bold red]")
            return RunStatus.FAILED

        result.detail["rollback"] = {
            "status": ROLLBACK_DONE,
            "target": previous,
            "change": change.model_dump(mode="json"),
        }
        self._store.save_run(run)
        console.print(f"[yellow][ORCHESTRATOR] Run {run.id[:8]} rolled back to {previous}[/yellow]")
        return RunStatus.ROLLED_BACK

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    def _summary(self, run: PipelineRun, status: RunStatus) -> str:
        revision = run.revision
        if status == RunStatus.SUCCEEDED:
            published = run.stage_result(StageName.PUBLISH)
            reference = (published.detail.get("published") or {}).get("reference") if published else None
            return f"{revision.short_id} released to {revision.environment} ({reference})"
        if status == RunStatus.ROLLED_BACK:
            return f"{revision.short_id} rolled back in {revision.environment}: sync verification failed"

        failed = next((r for r in run.stages if r.status == StageStatus.FAILED), None)
        if failed is not None and failed.detail.get("rollback_failed"):
            return (
                f"{revision.short_id} ROLLBACK FAILED in {revision.environment}, "
                f"manual intervention required: {failed.detail['rollback'].get('error')}"
            )
        if failed is not None:
            return f"{revision.short_id} failed at {failed.stage.value}: {failed.error}"
        return f"{revision.short_id} failed"

    def _finish(self, run: PipelineRun, status: RunStatus, summary: str) -> PipelineRun:
        """Persist the terminal state and send the run's single terminal notification."""
        run.status = status
        run.completed_at = utcnow()
        self._store.save_run(run)

        if status == RunStatus.SUCCEEDED:
            severity = Severity.INFO
            console.print(f"[green][ORCHESTRATOR] Run {run.id[:8]} SUCCEEDED: {summary}[/green]")
        elif any(r.detail.get("rollback_failed") for r in run.stages):
            severity = Severity.CRITICAL
            console.print(f"[bold red][ORCHESTRATOR] Run {run.id[:8]} FAILED: {summary}[/bold red]")
        else:
            severity = Severity.WARNING
            console.print(f"[red][ORCHESTRATOR] Run {run.id[:8]} {status.value}: {summary}[/red]")

        self._notify(run, None, status.value, summary, severity)
        return run

    def _notify(
        self,
        run: PipelineRun,
        stage: StageName | None,
        status: str,
        summary: str,
        severity: Severity,
    ) -> None:
        if self._notifier is None:
            return

        event = NotificationEvent(
            run_id=run.id,
            stage=stage,
            status=status,
            summary=summary,
            severity=severity,
            environment=run.revision.environment,
            commit_id=run.revision.commit_id,
        )
        try:
            self._notifier.notify(event)
        except Exception as e:
            console.print(f"[yellow][ORCHESTRATOR] Notification for run {run.id[:8]} not queued: {e}[/yellow]")
