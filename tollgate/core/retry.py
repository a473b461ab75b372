# -----------------------------------------------------------------------------
# RETRY POLICY & CANCELLATION
# -----------------------------------------------------------------------------
# Responsibility: One bounded-retry policy shared by every stage, plus the
# cooperative cancellation token a run carries.
#
# Transient errors are retried with exponential backoff until max_attempts.
# Terminal errors propagate immediately. Cancellation is only observed
# between attempts and during backoff, so the attempt in flight always
# finishes its unit of work.
# -----------------------------------------------------------------------------

import threading
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field
from rich.console import Console

from tollgate.domain.errors import RunCancelled, TerminalError, TransientError

console = Console()

T = TypeVar("T")


class RetryExhausted(TerminalError):
    """Raised when a transient error survives every attempt."""

    def __init__(self, message: str, last_error: TransientError, attempts: int) -> None:
        super().__init__(message, details=dict(last_error.details))
        self.last_error = last_error
        self.attempts = attempts


class RetryPolicy(BaseModel):
    """
    Bounded retry with exponential backoff.

    delay(n) = min(base_delay_seconds * backoff_multiplier ** (n - 1), max_delay_seconds)
    where n is the attempt that just failed.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay_seconds: float = Field(default=60.0, ge=0)

    class Config:
        frozen = True

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay_seconds)


class CancelToken:
    """
    Cooperative cancellation for one run.

    Cancelled either explicitly (abort request) or implicitly once the run's
    deadline (time.monotonic based) has passed.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._reason: str | None = None

    def cancel(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("run timeout exceeded")
            return True
        return False

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking early on cancellation.

        Returns:
            True if the token is cancelled when the wait ends.
        """
        if self._deadline is not None:
            seconds = max(0.0, min(seconds, self._deadline - time.monotonic()))
        self._event.wait(seconds)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(f"Run cancelled: {self._reason}", details={"reason": self._reason})


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    token: CancelToken | None = None,
    on_retry: Callable[[int, TransientError, float], None] | None = None,
    label: str = "operation",
) -> tuple[T, int]:
    """
    Run `fn` under the retry policy.

    Args:
        fn: Zero-argument callable performing one attempt.
        policy: Attempt bound and backoff.
        token: Optional cancellation token checked before every attempt.
        on_retry: Called as on_retry(attempt, error, delay) after a transient
                  failure that will be retried.
        label: Name used in log lines.

    Returns:
        Tuple of (result, attempts_used).

    Raises:
        RetryExhausted: If every attempt failed with a TransientError.
        TerminalError: Propagated unchanged from `fn`.
        RunCancelled: If the token is cancelled before an attempt or during backoff.
    """
    for attempt in range(1, policy.max_attempts + 1):
        if token is not None:
            token.raise_if_cancelled()

        try:
            return fn(), attempt
        except TransientError as e:
            if attempt >= policy.max_attempts:
                console.print(
                    f"[red][RETRY] {label} exhausted after {attempt} attempts: {e}[/red]"
                )
                raise RetryExhausted(
                    f"{label} failed after {attempt} attempts: {e}", last_error=e, attempts=attempt
                ) from e

            delay = policy.delay_for(attempt)
            console.print(
                f"[yellow][RETRY] {label} attempt {attempt}/{policy.max_attempts} failed: {e} "
                f"(retrying in {delay:.1f}s)[/yellow]"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)

            if token is not None:
                if token.wait(delay):
                    token.raise_if_cancelled()
            elif delay > 0:
                time.sleep(delay)

    # max_attempts >= 1, the loop always returns or raises
    raise AssertionError("unreachable")
