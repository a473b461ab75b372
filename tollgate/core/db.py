# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


# -----------------------------------------------------------------------------
# RUN DATABASE (PostgreSQL)
# -----------------------------------------------------------------------------
# Responsibility: Persistent storage for pipeline runs and environment
# pointers using PostgreSQL with connection pooling.
#
# Layout:
# - pipeline_runs: one row per run, stage results as an ordered JSONB list
# - environment_pointers: the single versioned "current" reference per env
# - desired_state_changes: append-only history of every pointer move
#
# The pointer is updated with compare-and-swap on its version column, never
# overwritten blindly.
# -----------------------------------------------------------------------------

import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from rich.console import Console

from tollgate.domain.models import (
    DesiredStateChange,
    EnvironmentPointer,
    PipelineRun,
    Revision,
    RunStatus,
    StageResult,
)

console = Console()

# Database configuration from environment
DB_CONFIG = {
    "host": os.getenv("DB_HOST", "localhost"),
    "port": int(os.getenv("DB_PORT", "5432")),
    "user": os.getenv("DB_USER", "tollgate"),
    "password": os.getenv("DB_PASSWORD", "securepass"),
    "database": os.getenv("DB_NAME", "tollgate"),
    # Connection and query timeouts to prevent pool exhaustion
    "connect_timeout": 10,  # 10s connection timeout
    "options": "-c statement_timeout=30000",  # 30s query timeout (in ms)
}

# Connection pool (initialized on first use, under _pool_lock)
_pool: ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ThreadedConnectionPool:
    """
    Get or create the connection pool.

    Threaded pool: every pipeline lane runs on its own thread.
    """
    global _pool

    with _pool_lock:
        if _pool is None:
            try:
                _pool = ThreadedConnectionPool(
                    minconn=1,
                    maxconn=10,
                    host=DB_CONFIG["host"],
                    port=DB_CONFIG["port"],
                    user=DB_CONFIG["user"],
                    password=DB_CONFIG["password"],
                    database=DB_CONFIG["database"],
                    connect_timeout=DB_CONFIG["connect_timeout"],
                    options=DB_CONFIG["options"],
                )
                console.print(
                    f"[green][DB] Connection pool created: {DB_CONFIG['host']}:{DB_CONFIG['port']} "
                    f"(timeout: {DB_CONFIG['connect_timeout']}s)[/green]"
                )
            except psycopg2.Error as e:
                console.print(f"[red][DB] Failed to create connection pool: {e}[/red]")
                raise

        return _pool


@contextmanager
def get_connection():
    """
    Context manager for database connections from the pool.

    Commits on success, rolls back on any exception.
    """
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def init_db() -> None:
    """
    Create the tables if they do not exist. Safe to call multiple times.
    """
    with get_connection() as conn, conn.cursor() as cursor:
        cursor.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_runs (
                    id UUID PRIMARY KEY,
                    source VARCHAR(128) NOT NULL,
                    environment VARCHAR(64) NOT NULL,
                    commit_id VARCHAR(64) NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                    current_stage VARCHAR(32),
                    revision JSONB NOT NULL,
                    stages JSONB NOT NULL DEFAULT '[]'::jsonb,
                    abort_reason TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)

        cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_status
                ON pipeline_runs(status)
            """)

        cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_created_at
                ON pipeline_runs(created_at DESC)
            """)

        cursor.execute("""
                CREATE TABLE IF NOT EXISTS environment_pointers (
                    environment VARCHAR(64) PRIMARY KEY,
                    reference TEXT NOT NULL,
                    commit_id VARCHAR(64) NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)

        cursor.execute("""
                CREATE TABLE IF NOT EXISTS desired_state_changes (
                    id SERIAL PRIMARY KEY,
                    environment VARCHAR(64) NOT NULL,
                    version INTEGER NOT NULL,
                    previous_reference TEXT,
                    new_reference TEXT NOT NULL,
                    commit_id VARCHAR(64) NOT NULL,
                    kind VARCHAR(16) NOT NULL,
                    run_id UUID,
                    created_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (environment, version)
                )
            """)

    console.print(f"[green][DB] Database initialized: {DB_CONFIG['database']}[/green]")


def _row_to_run(row: dict) -> PipelineRun:
    """Rebuild a PipelineRun from a pipeline_runs row."""
    return PipelineRun(
        id=str(row["id"]),
        revision=Revision.model_validate(row["revision"]),
        status=RunStatus(row["status"]),
        current_stage=row["current_stage"],
        stages=[StageResult.model_validate(s) for s in row["stages"] or []],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
        abort_reason=row["abort_reason"],
    )


def save_run(run: PipelineRun) -> None:
    """
    Insert or update a run together with its ordered stage results.

    Args:
        run: The run to persist.
    """
    revision = run.revision.model_dump(mode="json")
    stages = [s.model_dump(mode="json") for s in run.stages]

    with get_connection() as conn, conn.cursor() as cursor:
        cursor.execute(
            """
                INSERT INTO pipeline_runs
                    (id, source, environment, commit_id, status, current_stage,
                     revision, stages, abort_reason, created_at, completed_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, CURRENT_TIMESTAMP)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    current_stage = EXCLUDED.current_stage,
                    stages = EXCLUDED.stages,
                    abort_reason = EXCLUDED.abort_reason,
                    completed_at = EXCLUDED.completed_at,
                    updated_at = CURRENT_TIMESTAMP
                """,
            (
                run.id,
                run.revision.source,
                run.revision.environment,
                run.revision.commit_id,
                run.status.value,
                run.current_stage.value if run.current_stage else None,
                json.dumps(revision),
                json.dumps(stages),
                run.abort_reason,
                run.created_at,
                run.completed_at,
            ),
        )


def get_run(run_id: str) -> PipelineRun | None:
    """
    Retrieve a run by ID.

    Returns:
        PipelineRun if found, None otherwise.
    """
    with get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute("SELECT * FROM pipeline_runs WHERE id = %s", (run_id,))
        row = cursor.fetchone()

        if row is None:
            return None

        return _row_to_run(row)


def list_runs(limit: int = 50, statuses: list[str] | None = None) -> list[PipelineRun]:
    """
    List recent runs, most recent first.

    Args:
        limit: Maximum number of runs to return.
        statuses: Optional status filter.
    """
    with get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
        if statuses:
            cursor.execute(
                """
                    SELECT * FROM pipeline_runs
                    WHERE status = ANY(%s)
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                (list(statuses), limit),
            )
        else:
            cursor.execute(
                """
                    SELECT * FROM pipeline_runs
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                (limit,),
            )
        return [_row_to_run(row) for row in cursor.fetchall()]


def list_incomplete_runs() -> list[PipelineRun]:
    """Runs a restarted process must pick up again, oldest first."""
    with get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(
            """
                SELECT * FROM pipeline_runs
                WHERE status IN ('PENDING', 'RUNNING')
                ORDER BY created_at ASC
                """
        )
        return [_row_to_run(row) for row in cursor.fetchall()]


def purge_runs(before: datetime) -> int:
    """
    Delete terminal runs completed before a cutoff.

    Returns:
        Number of runs deleted.
    """
    with get_connection() as conn, conn.cursor() as cursor:
        cursor.execute(
            """
                DELETE FROM pipeline_runs
                WHERE status IN ('SUCCEEDED', 'FAILED', 'ROLLED_BACK')
                AND completed_at < %s
                """,
            (before,),
        )
        count = cursor.rowcount
    console.print(f"[cyan][DB] Purged {count} runs[/cyan]")
    return count


def get_pointer(environment: str) -> EnvironmentPointer | None:
    """Current desired-state pointer of an environment."""
    with get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute("SELECT * FROM environment_pointers WHERE environment = %s", (environment,))
        row = cursor.fetchone()

        if row is None:
            return None

        return EnvironmentPointer(**row)


def swap_pointer(environment: str, expected_version: int, change: DesiredStateChange) -> bool:
    """
    Compare-and-swap the environment pointer and append the change.

    Args:
        environment: Environment to move.
        expected_version: Version the caller read (0 = no pointer yet).
        change: The change that becomes current (change.version must be
                expected_version + 1).

    Returns:
        True if the swap won, False if another writer moved the pointer first.
    """
    with get_connection() as conn, conn.cursor() as cursor:
        if expected_version == 0:
            cursor.execute(
                """
                    INSERT INTO environment_pointers (environment, reference, commit_id, version, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (environment) DO NOTHING
                    """,
                (environment, change.new_reference, change.commit_id, change.version, change.created_at),
            )
        else:
            cursor.execute(
                """
                    UPDATE environment_pointers
                    SET reference = %s, commit_id = %s, version = %s, updated_at = %s
                    WHERE environment = %s AND version = %s
                    """,
                (
                    change.new_reference,
                    change.commit_id,
                    change.version,
                    change.created_at,
                    environment,
                    expected_version,
                ),
            )

        if cursor.rowcount != 1:
            return False

        cursor.execute(
            """
                INSERT INTO desired_state_changes
                    (environment, version, previous_reference, new_reference, commit_id, kind, run_id, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
            (
                environment,
                change.version,
                change.previous_reference,
                change.new_reference,
                change.commit_id,
                change.kind.value,
                change.run_id,
                change.created_at,
            ),
        )

    console.print(f"[cyan][DB] Pointer {environment} -> v{change.version}[/cyan]")
    return True


def list_changes(environment: str, limit: int = 50) -> list[DesiredStateChange]:
    """Change history of an environment, newest first."""
    with get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(
            """
                SELECT * FROM desired_state_changes
                WHERE environment = %s
                ORDER BY version DESC
                LIMIT %s
                """,
            (environment, limit),
        )
        rows = cursor.fetchall()

        return [
            DesiredStateChange(
                environment=row["environment"],
                previous_reference=row["previous_reference"],
                new_reference=row["new_reference"],
                commit_id=row["commit_id"],
                version=row["version"],
                kind=row["kind"],
                run_id=str(row["run_id"]) if row["run_id"] else None,
                created_at=row["created_at"],
            )
            for row in rows
        ]


def close_pool() -> None:
    """
    Close all connections in the pool.

    Call this on application shutdown for clean cleanup.
    """
    global _pool

    with _pool_lock:
        if _pool is None:
            return
        _pool.closeall()
        _pool = None
    console.print("[cyan][DB] Connection pool closed[/cyan]")
