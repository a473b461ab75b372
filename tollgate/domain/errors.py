# -----------------------------------------------------------------------------
# ERROR TAXONOMY
# -----------------------------------------------------------------------------
# Every failure a stage can raise is either Transient (retry it) or Terminal
# (abort the run). Concrete errors live next to the component that raises them;
# only the shared roots live here.
# -----------------------------------------------------------------------------


class PipelineError(Exception):
    """
    Base class for every pipeline failure.

    `details` carries structured context that is attached to the StageResult.
    """

    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class TransientError(PipelineError):
    """Backend unavailable, lock contention, not converged yet. Retry it."""

    retryable = True


class TerminalError(PipelineError):
    """Gate failure, build failure, malformed input. Never retried."""

    retryable = False


class MalformedRevision(TerminalError):
    """Raised when a revision cannot be accepted (e.g. unknown environment)."""

    pass


class RunCancelled(TerminalError):
    """Raised when a run observes an abort request or its run timeout."""

    pass
