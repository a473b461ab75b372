# -----------------------------------------------------------------------------
# PIPELINE CONFIGURATION
# -----------------------------------------------------------------------------
# Responsibility: Load pipeline.yaml into a validated PipelineConfig.
#
# Quality gate thresholds are keyed by environment: production runs a
# stricter ruleset than staging. Timeouts are optional per environment and
# fall back to the global default.
# -----------------------------------------------------------------------------

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from rich.console import Console

from tollgate.core.retry import RetryPolicy
from tollgate.domain.errors import MalformedRevision
from tollgate.domain.models import GateRuleset

console = Console()

# Config file location (overridable for deployments)
CONFIG_PATH = Path(
    os.getenv("TOLLGATE_PIPELINE_CONFIG", str(Path(__file__).parent.parent.parent / "pipeline.yaml"))
)


class UnknownEnvironment(MalformedRevision):
    """Raised when a revision targets an environment with no configuration."""

    pass


class EnvironmentConfig(BaseModel):
    """Per-environment gate thresholds, verification switch and timeouts."""

    ruleset: GateRuleset = Field(default_factory=GateRuleset)
    verify_sync: bool = True
    sync_timeout_seconds: float | None = Field(default=None, gt=0)
    gate_timeout_seconds: float | None = Field(default=None, gt=0)
    argocd_application: str | None = None


class PipelineConfig(BaseModel):
    """
    Pydantic model for the pipeline configuration.

    Loaded from pipeline.yaml at startup.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    default_timeout_seconds: float = Field(default=300.0, gt=0)
    run_timeout_seconds: float = Field(default=3600.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, ge=0)
    notification_attempts: int = Field(default=3, ge=1)
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
            max_delay_seconds=self.max_delay_seconds,
        )

    def environment(self, name: str) -> EnvironmentConfig:
        """
        Get the configuration of an environment.

        Raises:
            UnknownEnvironment: If the environment is not configured.
        """
        try:
            return self.environments[name]
        except KeyError:
            raise UnknownEnvironment(
                f"Environment '{name}' is not configured",
                details={"configured": sorted(self.environments)},
            ) from None

    def sync_timeout(self, name: str) -> float:
        return self.environment(name).sync_timeout_seconds or self.default_timeout_seconds

    def gate_timeout(self, name: str) -> float:
        return self.environment(name).gate_timeout_seconds or self.default_timeout_seconds


def default_config() -> PipelineConfig:
    """Built-in configuration used when pipeline.yaml is absent."""
    return PipelineConfig(
        environments={
            "staging": EnvironmentConfig(
                ruleset=GateRuleset(min_coverage=70.0, max_new_bugs=10, max_security_hotspots=2),
            ),
            "prod": EnvironmentConfig(
                ruleset=GateRuleset(min_coverage=80.0, max_new_bugs=5, max_security_hotspots=0),
                sync_timeout_seconds=300.0,
            ),
        }
    )


def load_config(config_path: Path = CONFIG_PATH) -> PipelineConfig:
    """
    Load pipeline configuration from YAML.

    Args:
        config_path: Path to the pipeline YAML file.

    Returns:
        PipelineConfig with validated settings.
    """
    if not config_path.exists():
        console.print("[yellow][CONFIG] Pipeline file not found, using defaults[/yellow]")
        return default_config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    config = PipelineConfig(**data)
    console.print(
        f"[green][CONFIG] Pipeline loaded: {len(config.environments)} environments "
        f"({', '.join(sorted(config.environments))})[/green]"
    )
    return config
