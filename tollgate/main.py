# -----------------------------------------------------------------------------
# TOLLGATE - FASTAPI INTERFACE
# -----------------------------------------------------------------------------
# Operator API for the release pipeline.
#
# Endpoints:
# - GET  /health                              : Health check
# - POST /runs                                : Submit a revision
# - GET  /runs                                : List recent runs
# - GET  /runs/{run_id}                       : Run detail with stage results
# - POST /runs/{run_id}/abort                 : Cooperative abort
# - GET  /environments/{environment}/pointer  : Current desired state
# - GET  /environments/{environment}/history  : Desired-state change log
# -----------------------------------------------------------------------------

import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError
from rich.console import Console
from rich.panel import Panel

from tollgate import __version__
from tollgate.core.builder import ArtifactBuilder
from tollgate.core.config import UnknownEnvironment, load_config
from tollgate.core.notifier import Notifier, SlackChannel
from tollgate.core.orchestrator import PipelineOrchestrator
from tollgate.core.publisher import ArtifactPublisher
from tollgate.core.quality_gate import QualityGateEvaluator, SonarCloudBackend
from tollgate.core.retry import RetryPolicy
from tollgate.core.store import create_store
from tollgate.core.updater import DescriptorUpdater, GitDescriptorRepository
from tollgate.core.verifier import ArgoCDProbe, SyncVerifier
from tollgate.domain.models import Revision, RunStatus
from tollgate.infra.docker_client import DockerProvider
from tollgate.infra.git_client import GitProvider

PROJECT_ROOT = Path(__file__).parent.parent

load_dotenv(PROJECT_ROOT / ".env")

console = Console()


# =============================================================================
# WIRING
# =============================================================================


def build_orchestrator() -> PipelineOrchestrator:
    """Assemble the orchestrator and its collaborators from the environment."""
    config = load_config()
    store = create_store()

    docker = DockerProvider(connect=False)

    branch = os.getenv("GITOPS_BRANCH", "main")
    git = GitProvider(
        os.getenv("GITOPS_WORKSPACE", str(PROJECT_ROOT / "gitops")),
        token=os.getenv("GITOPS_TOKEN"),
    )
    remote = os.getenv("GITOPS_REMOTE")
    if remote:
        git.clone(remote, branch)
        git.configure_user()

    probe = ArgoCDProbe(
        applications={
            name: env.argocd_application
            for name, env in config.environments.items()
            if env.argocd_application
        }
    )

    notifier = Notifier(
        SlackChannel(),
        policy=RetryPolicy(max_attempts=config.notification_attempts, base_delay_seconds=1.0),
    )

    return PipelineOrchestrator(
        store=store,
        evaluator=QualityGateEvaluator(SonarCloudBackend()),
        builder=ArtifactBuilder(docker),
        publisher=ArtifactPublisher(docker),
        updater=DescriptorUpdater(GitDescriptorRepository(git, branch=branch), store),
        verifier=SyncVerifier(
            probe,
            default_timeout=config.default_timeout_seconds,
            poll_interval=config.poll_interval_seconds,
        ),
        notifier=notifier,
        config=config,
    )


# Orchestrator (lazy init)
_orchestrator: PipelineOrchestrator | None = None


def get_orchestrator() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    print_banner()

    orchestrator = None
    if os.getenv("TOLLGATE_RESUME_ON_START", "true").lower() == "true":
        orchestrator = app.dependency_overrides.get(get_orchestrator, get_orchestrator)()
        orchestrator.resume_incomplete()

    console.print("[green]TOLLGATE ONLINE[/green]")

    yield

    console.print("[yellow]TOLLGATE SHUTTING DOWN[/yellow]")
    if orchestrator is not None:
        orchestrator.shutdown()


app = FastAPI(
    title="Tollgate",
    description="Quality-gated release pipeline controller",
    version=__version__,
    lifespan=lifespan,
)

Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================


class RunRequest(BaseModel):
    commit_id: str
    environment: str
    source: str = "app"
    branch: str | None = None
    author: str | None = None


class AbortRequest(BaseModel):
    reason: str = Field(default="aborted via API", max_length=200)


class RunSummary(BaseModel):
    run_id: str
    status: RunStatus
    commit_id: str
    source: str
    environment: str
    current_stage: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


def _summary(run) -> RunSummary:
    return RunSummary(
        run_id=run.id,
        status=run.status,
        commit_id=run.revision.commit_id,
        source=run.revision.source,
        environment=run.revision.environment,
        current_stage=run.current_stage.value if run.current_stage else None,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


# =============================================================================
# ENDPOINTS
# =============================================================================


@app.get("/health")
async def health_check():
    """Health check for Docker and load balancers."""
    return {"status": "online", "service": "tollgate", "version": __version__}


@app.post("/runs", response_model=RunSummary, status_code=status.HTTP_202_ACCEPTED)
def submit_run(request: RunRequest, orchestrator: Orchestrator):
    """Submit a revision. The run is queued on its (source, environment) lane."""
    try:
        revision = Revision(**request.model_dump(exclude_none=True))
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        )

    try:
        run = orchestrator.start_run(revision)
    except UnknownEnvironment as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    console.print(f"[cyan][API] Run {run.id[:8]} accepted for {revision.environment}[/cyan]")
    return _summary(run)


@app.get("/runs")
def list_runs(
    orchestrator: Orchestrator,
    limit: int = Query(default=20, ge=1, le=200),
    run_status: Annotated[list[RunStatus] | None, Query(alias="status")] = None,
):
    """List recent runs, newest first."""
    runs = orchestrator.list_runs(limit=limit, statuses=run_status)
    return {"count": len(runs), "runs": [_summary(r).model_dump(mode="json") for r in runs]}


@app.get("/runs/{run_id}")
def get_run(run_id: str, orchestrator: Orchestrator):
    """Get a run with its ordered stage results."""
    run = orchestrator.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.model_dump(mode="json")


@app.post("/runs/{run_id}/abort", response_model=RunSummary)
def abort_run(run_id: str, orchestrator: Orchestrator, request: AbortRequest | None = None):
    """Request cooperative cancellation of a queued or active run."""
    run = orchestrator.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run already finished ({run.status.value})",
        )

    reason = request.reason if request else AbortRequest().reason
    console.print(f"[yellow][API] Abort requested for run {run_id[:8]}: {reason}[/yellow]")
    return _summary(orchestrator.abort(run_id, reason))


@app.get("/environments/{environment}/pointer")
def get_pointer(environment: str, orchestrator: Orchestrator):
    """Current desired-state reference of an environment."""
    try:
        pointer = orchestrator.get_pointer(environment)
    except UnknownEnvironment as e:
        raise HTTPException(status_code=404, detail=str(e))
    if pointer is None:
        raise HTTPException(status_code=404, detail="No desired state recorded")
    return pointer.model_dump(mode="json")


@app.get("/environments/{environment}/history")
def get_history(
    environment: str,
    orchestrator: Orchestrator,
    limit: int = Query(default=20, ge=1, le=200),
):
    """Desired-state changes of an environment, newest first."""
    try:
        changes = orchestrator.list_changes(environment, limit)
    except UnknownEnvironment as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"count": len(changes), "changes": [c.model_dump(mode="json") for c in changes]}


# =============================================================================
# BANNER
# =============================================================================


def print_banner() -> None:
    """Print the Tollgate startup banner."""
    banner = f"""
    ╔═══════════════════════════════════════════════════╗
    ║              TOLLGATE v{__version__:<27}║
    ║  • Quality gate -> build -> publish               ║
    ║  • GitOps promotion with sync verification        ║
    ║  • Automatic rollback & Slack alerts              ║
    ╚═══════════════════════════════════════════════════╝
    """
    console.print(Panel(banner, border_style="cyan"))


# =============================================================================
# MAIN
# =============================================================================


def main() -> None:
    import uvicorn

    port = int(os.getenv("TOLLGATE_PORT", "5050"))
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
