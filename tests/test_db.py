# =============================================================================
# TOLLGATE DATABASE MODULE TESTS
# =============================================================================
# Tests for database configuration and the pointer compare-and-swap SQL.
# =============================================================================

import threading
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from tollgate.core import db
from tollgate.core.db import DB_CONFIG
from tollgate.domain.models import DesiredStateChange, RunStatus


@pytest.fixture
def cursor():
    """Patch get_connection() and yield the cursor every query runs on."""
    cursor = MagicMock()
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    with patch("tollgate.core.db.get_connection") as mock_conn:
        mock_conn.return_value.__enter__.return_value = conn
        yield cursor


def _change(version):
    return DesiredStateChange(
        environment="prod",
        previous_reference="registry/app:old" if version > 1 else None,
        new_reference="registry/app:aaa",
        commit_id="c0ffee00",
        version=version,
    )


class TestDBConfig:
    """Test database configuration."""

    def test_config_has_required_keys(self):
        """DB config should have all required keys."""
        for key in ["host", "port", "user", "password", "database"]:
            assert key in DB_CONFIG

    def test_port_is_integer(self):
        assert isinstance(DB_CONFIG["port"], int)

    def test_statement_timeout_configured(self):
        assert "statement_timeout" in DB_CONFIG["options"]


class TestSwapPointer:
    """Test compare-and-swap against a mocked cursor."""

    def test_first_pointer_is_inserted(self, cursor):
        cursor.rowcount = 1

        assert db.swap_pointer("prod", 0, _change(1)) is True

        first_sql = cursor.execute.call_args_list[0].args[0]
        assert "INSERT INTO environment_pointers" in first_sql
        assert "ON CONFLICT (environment) DO NOTHING" in first_sql
        history_sql = cursor.execute.call_args_list[1].args[0]
        assert "INSERT INTO desired_state_changes" in history_sql

    def test_update_checks_version(self, cursor):
        cursor.rowcount = 1

        assert db.swap_pointer("prod", 1, _change(2)) is True

        sql, params = cursor.execute.call_args_list[0].args
        assert "WHERE environment = %s AND version = %s" in sql
        assert params[-2:] == ("prod", 1)

    def test_lost_race_appends_nothing(self, cursor):
        """A stale version leaves both tables untouched."""
        cursor.rowcount = 0

        assert db.swap_pointer("prod", 1, _change(2)) is False
        assert cursor.execute.call_count == 1


class TestRunQueries:
    """Test run row mapping."""

    def test_get_missing_run(self, cursor):
        cursor.fetchone.return_value = None
        assert db.get_run("0b7c6f1e-0000-0000-0000-000000000000") is None

    def test_row_to_run(self, cursor):
        now = datetime.now(timezone.utc)
        cursor.fetchone.return_value = {
            "id": "0b7c6f1e-0000-0000-0000-000000000000",
            "revision": {"commit_id": "abc123", "environment": "prod", "source": "app"},
            "status": "RUNNING",
            "current_stage": "BUILD",
            "stages": [
                {"stage": "GATE", "status": "PASSED", "detail": {}},
                {"stage": "BUILD", "status": "RUNNING", "detail": {}},
            ],
            "created_at": now,
            "completed_at": None,
            "abort_reason": None,
        }

        run = db.get_run("0b7c6f1e-0000-0000-0000-000000000000")

        assert run.status == RunStatus.RUNNING
        assert run.revision.commit_id == "abc123"
        assert [s.stage.value for s in run.stages] == ["GATE", "BUILD"]
        assert run.next_stage().value == "BUILD"

    def test_purge_returns_rowcount(self, cursor):
        cursor.rowcount = 7
        assert db.purge_runs(datetime.now(timezone.utc)) == 7


class TestPool:
    def test_close_pool(self):
        pool = MagicMock()
        with patch.object(db, "_pool", pool):
            db.close_pool()
            assert db._pool is None
        pool.closeall.assert_called_once()

    def test_pool_created_once_across_threads(self):
        """Lanes opening their first connection together share one pool."""
        barrier = threading.Barrier(8)
        pools = []

        def _slow_pool(**kwargs):
            time.sleep(0.05)
            return MagicMock()

        def _open():
            barrier.wait(timeout=5)
            pools.append(db._get_pool())

        with patch.object(db, "_pool", None), patch(
            "tollgate.core.db.ThreadedConnectionPool", side_effect=_slow_pool
        ) as factory:
            threads = [threading.Thread(target=_open) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        assert factory.call_count == 1
        assert len(pools) == 8
        assert all(pool is pools[0] for pool in pools)
