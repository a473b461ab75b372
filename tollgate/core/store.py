# -----------------------------------------------------------------------------
# RUN STORE
# -----------------------------------------------------------------------------
# Responsibility: The persistence seam the Orchestrator and Updater write
# through. Two backends share one interface:
#
# - PostgresRunStore: production, backed by core/db.py (survives restarts)
# - MemoryRunStore: single-process mode (TOLLGATE_STORE=memory) and tests
#
# Both hand out copies, so a caller can never mutate stored state in place,
# and both implement the environment pointer as a versioned record updated
# with compare-and-swap.
# -----------------------------------------------------------------------------

import os
import threading
from datetime import datetime

from rich.console import Console

from tollgate.core import db
from tollgate.domain.models import (
    TERMINAL_RUN_STATUSES,
    DesiredStateChange,
    EnvironmentPointer,
    PipelineRun,
    RunStatus,
)

console = Console()


class RunStore:
    """Interface shared by the store backends."""

    def save_run(self, run: PipelineRun) -> None:
        raise NotImplementedError

    def get_run(self, run_id: str) -> PipelineRun | None:
        raise NotImplementedError

    def list_runs(self, limit: int = 50, statuses: list[RunStatus] | None = None) -> list[PipelineRun]:
        raise NotImplementedError

    def list_incomplete_runs(self) -> list[PipelineRun]:
        raise NotImplementedError

    def purge_runs(self, before: datetime) -> int:
        raise NotImplementedError

    def get_pointer(self, environment: str) -> EnvironmentPointer | None:
        raise NotImplementedError

    def swap_pointer(self, environment: str, expected_version: int, change: DesiredStateChange) -> bool:
        raise NotImplementedError

    def list_changes(self, environment: str, limit: int = 50) -> list[DesiredStateChange]:
        raise NotImplementedError

    def current_change(self, environment: str) -> DesiredStateChange | None:
        """The change that produced the current pointer."""
        pointer = self.get_pointer(environment)
        if pointer is None:
            return None
        for change in self.list_changes(environment, limit=5):
            if change.version == pointer.version:
                return change
        return None

    def close(self) -> None:
        """Release backend resources."""
        pass


class PostgresRunStore(RunStore):
    """Store backed by PostgreSQL (see core/db.py)."""

    def __init__(self, initialize: bool = True) -> None:
        if initialize:
            db.init_db()

    def save_run(self, run: PipelineRun) -> None:
        db.save_run(run)

    def get_run(self, run_id: str) -> PipelineRun | None:
        return db.get_run(run_id)

    def list_runs(self, limit: int = 50, statuses: list[RunStatus] | None = None) -> list[PipelineRun]:
        return db.list_runs(limit, [s.value for s in statuses] if statuses else None)

    def list_incomplete_runs(self) -> list[PipelineRun]:
        return db.list_incomplete_runs()

    def purge_runs(self, before: datetime) -> int:
        return db.purge_runs(before)

    def get_pointer(self, environment: str) -> EnvironmentPointer | None:
        return db.get_pointer(environment)

    def swap_pointer(self, environment: str, expected_version: int, change: DesiredStateChange) -> bool:
        return db.swap_pointer(environment, expected_version, change)

    def list_changes(self, environment: str, limit: int = 50) -> list[DesiredStateChange]:
        return db.list_changes(environment, limit)

    def close(self) -> None:
        db.close_pool()


class MemoryRunStore(RunStore):
    """In-process store. State is lost when the process exits."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, PipelineRun] = {}
        self._pointers: dict[str, EnvironmentPointer] = {}
        self._changes: dict[str, list[DesiredStateChange]] = {}

    def save_run(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs[run.id] = run.model_copy(deep=True)

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def list_runs(self, limit: int = 50, statuses: list[RunStatus] | None = None) -> list[PipelineRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if not statuses or r.status in statuses]
            runs.sort(key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in runs[:limit]]

    def list_incomplete_runs(self) -> list[PipelineRun]:
        with self._lock:
            runs = [
                r for r in self._runs.values() if r.status in (RunStatus.PENDING, RunStatus.RUNNING)
            ]
            runs.sort(key=lambda r: r.created_at)
            return [r.model_copy(deep=True) for r in runs]

    def purge_runs(self, before: datetime) -> int:
        with self._lock:
            doomed = [
                run_id
                for run_id, run in self._runs.items()
                if run.status in TERMINAL_RUN_STATUSES
                and run.completed_at is not None
                and run.completed_at < before
            ]
            for run_id in doomed:
                del self._runs[run_id]
        console.print(f"[cyan][STORE] Purged {len(doomed)} runs[/cyan]")
        return len(doomed)

    def get_pointer(self, environment: str) -> EnvironmentPointer | None:
        with self._lock:
            return self._pointers.get(environment)

    def swap_pointer(self, environment: str, expected_version: int, change: DesiredStateChange) -> bool:
        with self._lock:
            current = self._pointers.get(environment)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False

            self._pointers[environment] = EnvironmentPointer(
                environment=environment,
                reference=change.new_reference,
                commit_id=change.commit_id,
                version=change.version,
                updated_at=change.created_at,
            )
            self._changes.setdefault(environment, []).append(change)
            return True

    def list_changes(self, environment: str, limit: int = 50) -> list[DesiredStateChange]:
        with self._lock:
            return list(reversed(self._changes.get(environment, [])))[:limit]


def create_store(kind: str | None = None) -> RunStore:
    """
    Build the store selected by TOLLGATE_STORE ("postgres" or "memory").
    """
    kind = (kind or os.getenv("TOLLGATE_STORE", "postgres")).lower()
    if kind == "memory":
        console.print("[yellow][STORE] In-memory store - runs will not survive a restart[/yellow]")
        return MemoryRunStore()
    return PostgresRunStore()
