# -----------------------------------------------------------------------------
# THE NOTIFIER - SLACK ALERTS
# -----------------------------------------------------------------------------
# Responsibility: Deliver pipeline outcomes to the team channel.
#
# Best effort, at least once:
# - notify() only enqueues; a background worker delivers
# - each event is retried a bounded number of times
# - an undeliverable event is logged locally and dropped
# A notification failure never reaches the Orchestrator and never changes a
# run's status.
# -----------------------------------------------------------------------------

import os
import queue
import threading
import time
from collections import deque

import requests
from rich.console import Console

from tollgate.core.retry import RetryExhausted, RetryPolicy, call_with_retry
from tollgate.domain.errors import TransientError
from tollgate.domain.models import NotificationEvent, Severity

console = Console()

SEVERITY_COLORS = {
    Severity.INFO: "#2eb886",
    Severity.WARNING: "#daa038",
    Severity.CRITICAL: "#a30200",
}

DEFAULT_DELIVERY_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0)

# Recent outcomes kept for inspection; older entries fall off.
OUTCOME_HISTORY = 200


class DeliveryError(TransientError):
    """Raised when one delivery attempt fails."""

    pass


def format_slack_payload(event: NotificationEvent) -> dict:
    """Build the incoming-webhook payload for an event."""
    stage = event.stage.value if event.stage else "RUN"
    headline = f"[{event.status}] {stage} - {event.summary}"
    if event.severity == Severity.CRITICAL:
        headline = f":rotating_light: <!channel> MANUAL INTERVENTION REQUIRED - {headline}"

    fields = [
        {"title": "Run", "value": event.run_id, "short": True},
        {"title": "Stage", "value": stage, "short": True},
    ]
    if event.environment:
        fields.append({"title": "Environment", "value": event.environment, "short": True})
    if event.commit_id:
        fields.append({"title": "Commit", "value": event.commit_id[:12], "short": True})

    return {
        "text": headline,
        "attachments": [
            {
                "color": SEVERITY_COLORS[event.severity],
                "fields": fields,
                "footer": "tollgate",
                "ts": int(event.created_at.timestamp()),
            }
        ],
    }


class SlackChannel:
    """Slack incoming-webhook sink."""

    def __init__(self, webhook_url: str | None = None, timeout: float = 10.0) -> None:
        self._webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")
        self._timeout = timeout

        if self._webhook_url:
            console.print("[green][NOTIFIER] Slack webhook configured[/green]")
        else:
            console.print("[yellow][NOTIFIER] SLACK_WEBHOOK_URL not set - alerts are log-only[/yellow]")

    def send(self, event: NotificationEvent) -> None:
        """
        Post one event.

        Raises:
            DeliveryError: If the webhook cannot be reached or rejects the payload.
        """
        if not self._webhook_url:
            return

        try:
            response = requests.post(
                self._webhook_url, json=format_slack_payload(event), timeout=self._timeout
            )
        except requests.RequestException as e:
            raise DeliveryError(f"Slack webhook unreachable: {e}")

        if not 200 <= response.status_code < 300:
            raise DeliveryError(f"Slack webhook returned {response.status_code}: {response.text[:100]}")


class Notifier:
    """
    Asynchronous, best-effort event delivery.

    Message passing: the Orchestrator hands events to a queue and moves on.
    """

    def __init__(
        self, channel, policy: RetryPolicy = DEFAULT_DELIVERY_POLICY, history: int = OUTCOME_HISTORY
    ) -> None:
        """
        Initialize the notifier.

        Args:
            channel: Object exposing send(event); raises DeliveryError on failure.
            policy: Bounded retry for each event.
            history: How many delivered and dropped events to remember.
        """
        self._channel = channel
        self._policy = policy
        self._queue: queue.Queue[NotificationEvent | None] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._worker_lock = threading.Lock()
        self.delivered: deque[NotificationEvent] = deque(maxlen=history)
        self.dropped: deque[NotificationEvent] = deque(maxlen=history)

    def notify(self, event: NotificationEvent) -> None:
        """Queue an event for delivery. Never raises."""
        self._ensure_worker()
        self._queue.put(event)

    def deliver(self, event: NotificationEvent) -> bool:
        """
        Deliver one event with bounded retries.

        Returns:
            True if delivered, False if dropped.
        """

        def _attempt() -> None:
            event.attempts += 1
            self._channel.send(event)

        try:
            call_with_retry(_attempt, self._policy, label=f"notify {event.run_id[:8]}")
        except RetryExhausted as e:
            console.print(
                f"[red][NOTIFIER] Dropped {event.severity.value} event for run {event.run_id[:8]} "
                f"after {event.attempts} attempts: {e.last_error}[/red]"
            )
            self.dropped.append(event)
            return False
        except Exception as e:
            console.print(f"[red][NOTIFIER] Dropped event for run {event.run_id[:8]}: {e}[/red]")
            self.dropped.append(event)
            return False

        self.delivered.append(event)
        return True

    def flush(self, timeout: float = 30.0) -> bool:
        """
        Wait until every queued event was delivered or dropped.

        Returns:
            True if the queue drained within the timeout.
        """
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 30.0) -> None:
        """Drain the queue and stop the worker."""
        if not self.flush(timeout):
            console.print(
                f"[yellow][NOTIFIER] {self._queue.unfinished_tasks} events still pending at shutdown[/yellow]"
            )
        with self._worker_lock:
            worker = self._worker
            if worker is None:
                return
            self._queue.put(None)
            worker.join(timeout=timeout)
            self._worker = None

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._run, daemon=True, name="tollgate-notifier"
                )
                self._worker.start()

    def _run(self) -> None:
        """Background delivery loop."""
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                if event.severity == Severity.CRITICAL:
                    console.print(f"[bold red][NOTIFIER] CRITICAL: {event.summary}[/bold red]")
                self.deliver(event)
            finally:
                self._queue.task_done()
