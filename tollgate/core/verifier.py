# -----------------------------------------------------------------------------
# THE VERIFIER - SYNC & HEALTH
# -----------------------------------------------------------------------------
# Responsibility: Confirm the GitOps controller applied the new desired state
# and the workload is healthy.
#
# Polls the live state until the expected reference is observed AND health
# is green, or the timeout elapses:
# - never converged             -> SyncTimeout
# - converged but still unhealthy -> SyncUnhealthy
# Both are retryable; the Orchestrator rolls back once retries run out.
# -----------------------------------------------------------------------------

import os
import time

import requests
from rich.console import Console

from tollgate.core.retry import CancelToken
from tollgate.domain.errors import TransientError
from tollgate.domain.models import Observation, SyncResult, SyncStatus

console = Console()

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_POLL_SECONDS = 5.0


class ProbeError(TransientError):
    """Raised when the live state cannot be read."""

    pass


class SyncTimeout(TransientError):
    """The observed state never converged to the expected reference."""

    pass


class SyncUnhealthy(TransientError):
    """The expected reference is running but its health probe is not green."""

    pass


class ArgoCDProbe:
    """
    Reads application state from the ArgoCD REST API.

    Observed references come from `status.summary.images`; the workload is
    healthy when `status.health.status` is "Healthy".
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        app_template: str = "{environment}",
        applications: dict[str, str] | None = None,
        verify_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = (base_url or os.getenv("ARGOCD_URL", "https://localhost:8080")).rstrip("/")
        self._token = token or os.getenv("ARGOCD_TOKEN")
        self._app_template = app_template
        self._applications = dict(applications or {})
        self._verify_tls = verify_tls
        self._timeout = timeout

        if not self._token:
            console.print("[yellow][VERIFIER] ARGOCD_TOKEN not set - API calls will be rejected[/yellow]")

    def application_for(self, environment: str) -> str:
        return self._applications.get(environment) or self._app_template.format(
            environment=environment
        )

    def observe(self, environment: str) -> Observation:
        """
        Read the live state of an environment.

        Raises:
            ProbeError: If ArgoCD cannot be queried.
        """
        app = self.application_for(environment)
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}

        try:
            response = requests.get(
                f"{self._base_url}/api/v1/applications/{app}",
                headers=headers,
                timeout=self._timeout,
                verify=self._verify_tls,
            )
        except requests.RequestException as e:
            raise ProbeError(f"ArgoCD request failed: {e}")

        if response.status_code != 200:
            raise ProbeError(f"ArgoCD returned {response.status_code} for {app}")

        status = response.json().get("status", {})
        health = (status.get("health") or {}).get("status")
        sync = (status.get("sync") or {}).get("status")
        images = tuple((status.get("summary") or {}).get("images") or ())

        return Observation(
            references=images,
            healthy=health == "Healthy",
            sync_status=sync,
            health_status=health,
        )


class SyncVerifier:
    """
    Polls a probe until an environment converges.

    A probe error counts as "not converged" for that poll.
    """

    def __init__(
        self,
        probe,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        """
        Initialize the verifier.

        Args:
            probe: Object exposing observe(environment) -> Observation.
            default_timeout: Used when verify_sync() gets no timeout.
            poll_interval: Seconds between polls.
        """
        self._probe = probe
        self._default_timeout = default_timeout
        self._poll_interval = poll_interval

    def verify_sync(
        self,
        environment: str,
        expected_reference: str,
        timeout: float | None = None,
        token: CancelToken | None = None,
    ) -> SyncResult:
        """
        Wait for `environment` to run `expected_reference` healthily.

        Returns:
            SyncResult with status SYNCED.

        Raises:
            SyncTimeout: Never observed the expected reference.
            SyncUnhealthy: Observed it, but health never went green.
            RunCancelled: The token was cancelled between polls.
        """
        timeout = timeout or self._default_timeout
        start = time.monotonic()
        deadline = start + timeout
        polls = 0
        last: Observation | None = None

        console.print(
            f"[cyan][VERIFIER] Waiting for {environment} to run {expected_reference[:60]} "
            f"(timeout {timeout:g}s)[/cyan]"
        )

        while True:
            if token is not None:
                token.raise_if_cancelled()

            polls += 1
            try:
                last = self._probe.observe(environment)
            except ProbeError as e:
                console.print(f"[yellow][VERIFIER] Probe failed (poll {polls}): {e}[/yellow]")
                last = None

            if last is not None and last.matches(expected_reference) and last.healthy:
                elapsed = time.monotonic() - start
                console.print(
                    f"[green][VERIFIER] {environment} synced and healthy after {elapsed:.1f}s[/green]"
                )
                return SyncResult(
                    environment=environment,
                    reference=expected_reference,
                    status=SyncStatus.SYNCED,
                    polls=polls,
                    elapsed_seconds=elapsed,
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            wait = min(self._poll_interval, remaining)
            if token is not None:
                if token.wait(wait):
                    token.raise_if_cancelled()
            elif wait > 0:
                time.sleep(wait)

        details = {
            "environment": environment,
            "expected": expected_reference,
            "observed": list(last.references) if last else None,
            "health": last.health_status if last else None,
            "polls": polls,
            "timeout_seconds": timeout,
        }

        if last is not None and last.matches(expected_reference):
            console.print(f"[red][VERIFIER] {environment} converged but unhealthy ({last.health_status})[/red]")
            raise SyncUnhealthy(
                f"{environment} runs {expected_reference} but health is {last.health_status}",
                details={**details, "status": SyncStatus.DEGRADED.value},
            )

        console.print(f"[red][VERIFIER] {environment} did not converge within {timeout:g}s[/red]")
        raise SyncTimeout(
            f"{environment} did not converge to {expected_reference} within {timeout:g}s",
            details={**details, "status": SyncStatus.OUT_OF_SYNC.value},
        )
