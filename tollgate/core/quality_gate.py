# -----------------------------------------------------------------------------
# THE QUALITY GATE - STATIC ANALYSIS VERDICTS
# -----------------------------------------------------------------------------
# Responsibility: Fetch static-analysis measures for a revision and render a
# pass/fail verdict against the environment's ruleset.
#
# Rules:
# - coverage >= min_coverage
# - new_bugs <= max_new_bugs
# - security_hotspots <= max_security_hotspots
#
# "Backend down" is NOT a failed gate. When SonarCloud cannot be reached the
# evaluator raises AnalysisUnavailable and the Orchestrator retries the stage.
# -----------------------------------------------------------------------------

import os

import requests
from rich.console import Console

from tollgate.core.retry import RetryExhausted, RetryPolicy, call_with_retry
from tollgate.domain.errors import TerminalError, TransientError
from tollgate.domain.models import (
    GateMetrics,
    GateRuleset,
    QualityGateVerdict,
    Revision,
    RuleViolation,
)

console = Console()

SONAR_URL = os.getenv("SONAR_URL", "https://sonarcloud.io")
METRIC_KEYS = ("coverage", "new_bugs", "security_hotspots")

# Backend retries inside one Gate attempt (the stage itself is retried too)
BACKEND_RETRY = RetryPolicy(max_attempts=2, base_delay_seconds=1.0)


class BackendUnavailable(TransientError):
    """Raised when a single request to the analysis backend fails."""

    pass


class AnalysisUnavailable(TransientError):
    """
    Raised when no verdict can be rendered because the backend is unreachable
    (or has not analysed the revision yet). This is not a verdict.
    """

    pass


class GateConfigurationError(TerminalError):
    """Raised when the backend rejects our credentials or project key."""

    pass


class GateRejected(TerminalError):
    """Raised by the pipeline when a verdict did not pass."""

    def __init__(self, verdict: QualityGateVerdict) -> None:
        super().__init__(
            verdict.summary(),
            details={"verdict": verdict.model_dump(mode="json")},
        )
        self.verdict = verdict


def render_verdict(commit_id: str, metrics: GateMetrics, ruleset: GateRuleset) -> QualityGateVerdict:
    """
    Apply the ruleset to the measures. Pure and deterministic.

    Args:
        commit_id: Revision the measures belong to.
        metrics: Measured values.
        ruleset: Thresholds to check.

    Returns:
        A new, frozen QualityGateVerdict.
    """
    violations: list[RuleViolation] = []

    if metrics.coverage < ruleset.min_coverage:
        violations.append(
            RuleViolation(
                rule="min_coverage",
                threshold=ruleset.min_coverage,
                actual=metrics.coverage,
                message=f"coverage {metrics.coverage:g}% < {ruleset.min_coverage:g}%",
            )
        )

    if metrics.new_bugs > ruleset.max_new_bugs:
        violations.append(
            RuleViolation(
                rule="max_new_bugs",
                threshold=ruleset.max_new_bugs,
                actual=metrics.new_bugs,
                message=f"{metrics.new_bugs} new bugs > {ruleset.max_new_bugs}",
            )
        )

    if metrics.security_hotspots > ruleset.max_security_hotspots:
        violations.append(
            RuleViolation(
                rule="max_security_hotspots",
                threshold=ruleset.max_security_hotspots,
                actual=metrics.security_hotspots,
                message=(
                    f"{metrics.security_hotspots} security hotspots > "
                    f"{ruleset.max_security_hotspots}"
                ),
            )
        )

    return QualityGateVerdict(
        commit_id=commit_id,
        metrics=metrics,
        ruleset=ruleset,
        passed=not violations,
        violations=tuple(violations),
    )


class SonarCloudBackend:
    """
    SonarCloud Web API client.

    Reads the measures of the latest analysis, but only after confirming that
    analysis was made for the revision being gated.
    """

    def __init__(
        self,
        project_key: str | None = None,
        token: str | None = None,
        base_url: str = SONAR_URL,
        timeout: float = 30.0,
    ) -> None:
        self._project_key = project_key or os.getenv("SONAR_PROJECT_KEY", "")
        self._token = token or os.getenv("SONAR_TOKEN")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

        if not self._token:
            console.print("[yellow][GATE] SONAR_TOKEN not set - anonymous API access[/yellow]")

    def _get(self, path: str, params: dict, timeout: float | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            response = requests.get(
                f"{self._base_url}{path}",
                params=params,
                headers=headers,
                timeout=timeout or self._timeout,
            )
        except requests.RequestException as e:
            raise BackendUnavailable(f"SonarCloud request failed: {e}")

        if response.status_code in (401, 403):
            raise GateConfigurationError(
                f"SonarCloud rejected credentials ({response.status_code})",
                details={"path": path},
            )
        if response.status_code == 404:
            raise BackendUnavailable(f"No analysis found for {self._project_key}")
        if response.status_code >= 500:
            raise BackendUnavailable(f"SonarCloud error {response.status_code}")
        if response.status_code != 200:
            raise GateConfigurationError(
                f"SonarCloud API error {response.status_code}: {response.text[:200]}"
            )

        return response.json()

    def fetch_metrics(self, revision: Revision, timeout: float | None = None) -> GateMetrics:
        """
        Fetch the measures for a revision.

        Raises:
            BackendUnavailable: Backend unreachable or revision not analysed yet.
            GateConfigurationError: Credentials or project rejected.
        """
        scope = {"branch": revision.branch} if revision.branch else {}

        analyses = self._get(
            "/api/project_analyses/search",
            {"project": self._project_key, "ps": 1, **scope},
            timeout,
        ).get("analyses", [])
        latest = analyses[0].get("revision") if analyses else None
        if not latest or not latest.startswith(revision.commit_id):
            raise BackendUnavailable(
                f"Analysis for {revision.short_id} not available yet (latest: {latest})"
            )

        data = self._get(
            "/api/measures/component",
            {"component": self._project_key, "metricKeys": ",".join(METRIC_KEYS), **scope},
            timeout,
        )
        values = self._parse_measures(data.get("component", {}).get("measures", []))
        missing = [key for key in METRIC_KEYS if key not in values]
        if missing:
            raise BackendUnavailable(
                f"Analysis for {revision.short_id} is missing measures: {', '.join(missing)}",
                details={"missing": missing},
            )

        return GateMetrics(
            coverage=float(values["coverage"]),
            new_bugs=int(float(values["new_bugs"])),
            security_hotspots=int(float(values["security_hotspots"])),
        )

    def _parse_measures(self, measures: list[dict]) -> dict[str, str]:
        """
        Flatten SonarCloud measures. New-code metrics ("new_*") report their
        value under `period` (or the legacy `periods` list).
        """
        values: dict[str, str] = {}
        for measure in measures:
            metric = measure.get("metric")
            if "value" in measure:
                values[metric] = measure["value"]
            elif "period" in measure:
                values[metric] = measure["period"].get("value", "0")
            elif measure.get("periods"):
                values[metric] = measure["periods"][0].get("value", "0")
        return values


class QualityGateEvaluator:
    """
    Renders QualityGateVerdicts.

    Stateless: the only output of evaluate() is the returned verdict.
    """

    def __init__(self, backend, retry_policy: RetryPolicy = BACKEND_RETRY) -> None:
        """
        Initialize the evaluator.

        Args:
            backend: Object exposing fetch_metrics(revision, timeout) -> GateMetrics.
            retry_policy: Bounded retry applied to backend calls.
        """
        self._backend = backend
        self._retry_policy = retry_policy

    def evaluate(
        self, revision: Revision, ruleset: GateRuleset, timeout: float | None = None
    ) -> QualityGateVerdict:
        """
        Evaluate a revision against a ruleset.

        Raises:
            AnalysisUnavailable: If the backend could not produce measures.
            GateConfigurationError: If the backend rejects the configuration.
        """
        console.print(f"[cyan][GATE] Evaluating {revision.short_id}[/cyan]")

        try:
            metrics, _ = call_with_retry(
                lambda: self._backend.fetch_metrics(revision, timeout),
                self._retry_policy,
                label=f"analysis fetch {revision.short_id}",
            )
        except RetryExhausted as e:
            raise AnalysisUnavailable(
                f"Analysis backend unavailable for {revision.short_id}: {e.last_error}",
                details={"attempts": e.attempts},
            ) from e

        verdict = render_verdict(revision.commit_id, metrics, ruleset)
        if verdict.passed:
            console.print(f"[green][GATE] PASS {revision.short_id}: {verdict.summary()}[/green]")
        else:
            console.print(f"[red][GATE] FAIL {revision.short_id}: {verdict.summary()}[/red]")
        return verdict
