# -----------------------------------------------------------------------------
# DOMAIN LAYER
# -----------------------------------------------------------------------------
# Contains the pipeline records (Pydantic models) exchanged between the
# Orchestrator and the stage components, plus the shared error taxonomy.
# -----------------------------------------------------------------------------

from .errors import MalformedRevision, PipelineError, RunCancelled, TerminalError, TransientError
from .models import (
    STAGE_SEQUENCE,
    Artifact,
    DesiredStateChange,
    GateRuleset,
    NotificationEvent,
    PipelineRun,
    QualityGateVerdict,
    Revision,
    RunStatus,
    StageName,
    StageResult,
    StageStatus,
)

__all__ = [
    "STAGE_SEQUENCE",
    "Artifact",
    "DesiredStateChange",
    "GateRuleset",
    "NotificationEvent",
    "PipelineRun",
    "QualityGateVerdict",
    "Revision",
    "RunStatus",
    "StageName",
    "StageResult",
    "StageStatus",
    "PipelineError",
    "TransientError",
    "TerminalError",
    "MalformedRevision",
    "RunCancelled",
]
